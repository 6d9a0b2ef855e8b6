"""
devradar/realtime/connection.py
One authenticated socket and its per-connection state.

Writes always run on the event loop that accepted the socket; a send issued
from another loop is marshalled there.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, FrozenSet, Optional

from devradar.core.auth import Credential
from devradar.core.metrics import ws_messages_sent_total


class ConnectionState:
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    def __init__(
        self,
        transport,
        *,
        user_id: str,
        connection_id: str,
        friend_ids: FrozenSet[str],
        credential: Credential,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.transport = transport
        self.user_id = user_id
        self.connection_id = connection_id
        self.friend_ids = frozenset(friend_ids)
        self.credential = credential
        self.connected_at = time_fn()
        self.last_heartbeat_at = self.connected_at
        self.state = ConnectionState.ACTIVE
        self.close_code: Optional[int] = None
        # Evicted by a newer connection for the same user: no grace timer.
        self.superseded = False
        self.torn_down = False
        self.logger = logger or logging.getLogger("devradar.realtime")
        self._loop = asyncio.get_running_loop()
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id} user={self.user_id} state={self.state}>"

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.ACTIVE

    def touch(self, now: float) -> None:
        self.last_heartbeat_at = now

    async def _on_owner_loop(self, coro) -> Any:
        if asyncio.get_running_loop() is self._loop:
            return await coro
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return await asyncio.wrap_future(future)

    async def _write(self, text: str) -> None:
        async with self._send_lock:
            await self.transport.send_text(text)

    async def send(self, message: Dict[str, Any]) -> bool:
        """Best-effort write. False when the socket is closed or the write fails."""
        if not self.is_open:
            return False
        try:
            await self._on_owner_loop(self._write(json.dumps(message)))
        except Exception as e:
            self.logger.debug(f"[WS] send to {self.connection_id} failed: {e}")
            return False
        ws_messages_sent_total.inc(labels={"event_type": str(message.get("type", "unknown"))})
        return True

    async def close(self, code: int, reason: str = "") -> bool:
        """Start a server-side close. Only the first call has any effect."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return False
        self.state = ConnectionState.CLOSING
        self.close_code = code
        try:
            await self._on_owner_loop(self.transport.close(code=code, reason=reason))
        except Exception as e:
            # The peer may already be gone.
            self.logger.debug(f"[WS] close of {self.connection_id} failed: {e}")
        return True

    def mark_closed(self, code: Optional[int]) -> None:
        if self.close_code is None:
            self.close_code = code
        self.state = ConnectionState.CLOSED
