"""
Device-side connection manager.

Keeps one socket to the presence gateway alive:

- no token, no attempt
- reconnects with capped, jittered exponential backoff; gives up after the
  configured attempts and reports the failure once
- 1000 is a clean close (no reconnect); 4001/4002/4003 mean the credential
  was rejected (no reconnect); any other close schedules one reconnect
- sends HEARTBEAT every interval and force-closes with 4000 when nothing
  (PONG or HEARTBEAT) came back for two intervals
- queues sends while disconnected and flushes them, in order, before any new
  live send
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed

from devradar.client.backoff import ReconnectPolicy
from devradar.client.config import ClientSettings
from devradar.client.queue import OutboundQueue
from devradar.core.errors import CloseCode
from devradar.models.protocol import MessageType

CREDENTIAL_REJECTED = frozenset({CloseCode.UNAUTHORIZED, CloseCode.INVALID_TOKEN, CloseCode.TOKEN_EXPIRED})

Connector = Callable[[str], Awaitable[Any]]


class ConnectionState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


async def websocket_connector(url: str):
    return await websockets.connect(url, open_timeout=10)


class ConnectionManager:
    def __init__(
        self,
        settings: ClientSettings,
        *,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        connector: Connector = websocket_connector,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        policy: Optional[ReconnectPolicy] = None,
        queue: Optional[OutboundQueue] = None,
        on_message: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_state_change: Optional[Callable[[str], None]] = None,
        on_failure: Optional[Callable[[], None]] = None,
        on_credential_rejected: Optional[Callable[[int], None]] = None,
        auto_heartbeat: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.token_provider = token_provider or (lambda: settings.token)
        self.connector = connector
        self.sleep = sleep
        self.clock = clock
        self.policy = policy or ReconnectPolicy.from_settings(settings)
        self.queue = queue or OutboundQueue(settings.queue_max_size, settings.queue_max_age_seconds, clock=clock)
        self.on_message = on_message
        self.on_state_change = on_state_change
        self.on_failure = on_failure
        self.on_credential_rejected = on_credential_rejected
        self.auto_heartbeat = auto_heartbeat
        self.logger = logger or logging.getLogger("devradar.client")

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.last_pong_at = 0.0
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._failure_reported = False
        self._send_lock = asyncio.Lock()

    # State -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._ws is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def _set_state(self, state: str) -> None:
        if self.state == state:
            return
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _url(self, token: str) -> str:
        return f"{self.settings.ws_url}?token={quote(token, safe='')}"

    # Connect / disconnect --------------------------------------------

    async def connect(self) -> None:
        """User-initiated connect. Starts a fresh reconnect budget."""
        self._cancel_reconnect()
        self.attempts = 0
        self._failure_reported = False
        await self._open()

    async def _open(self) -> None:
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self.logger.debug("[client] already connected or connecting")
            return

        token = self.token_provider()
        if not token:
            self.logger.warning("[client] cannot connect: no auth token")
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self.connector(self._url(token))
        except Exception as e:
            self.logger.warning(f"[client] connect failed: {e}")
            self._schedule_reconnect()
            return

        self._ws = ws
        self.attempts = 0
        self._failure_reported = False
        self.last_pong_at = self.clock()
        self._set_state(ConnectionState.CONNECTED)
        self.logger.info("[client] connected")
        self._reader_task = asyncio.create_task(self._read(ws), name="devradar-client-reader")
        if self.auto_heartbeat:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="devradar-client-heartbeat")
        await self.flush()

    async def disconnect(self) -> None:
        """User-initiated close with 1000. Cancels any pending reconnect."""
        self._cancel_reconnect()
        self.attempts = 0
        self._stop_heartbeat()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=CloseCode.NORMAL, reason="Client disconnect")
            except Exception as e:
                self.logger.debug(f"[client] close failed: {e}")
        self._set_state(ConnectionState.DISCONNECTED)

    # Inbound ---------------------------------------------------------

    async def _read(self, ws) -> None:
        try:
            async for raw in ws:
                self.handle_raw(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            self.logger.warning(f"[client] read failed: {e}")
        await self.handle_close(ws, ws.close_code)

    def handle_raw(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.logger.error(f"[client] failed to parse message: {e}")
            return
        if not isinstance(message, dict):
            return
        if message.get("type") in (MessageType.PONG, MessageType.HEARTBEAT):
            self.last_pong_at = self.clock()
            return
        if self.on_message is not None:
            self.on_message(message)

    async def handle_close(self, ws, code: Optional[int]) -> None:
        if ws is not self._ws:
            # Already replaced or closed on purpose.
            return
        self._ws = None
        self._stop_heartbeat()
        self.logger.info(f"[client] socket closed with {code}")

        if code in CREDENTIAL_REJECTED:
            self._set_state(ConnectionState.DISCONNECTED)
            if self.on_credential_rejected is not None:
                self.on_credential_rejected(code)
            return
        if code == CloseCode.NORMAL:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._schedule_reconnect()

    # Reconnect -------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self.reconnect_pending:
            return
        if self.policy.exhausted(self.attempts):
            self.logger.error("[client] max reconnection attempts reached")
            self._set_state(ConnectionState.DISCONNECTED)
            if not self._failure_reported:
                self._failure_reported = True
                if self.on_failure is not None:
                    self.on_failure()
            return

        self._set_state(ConnectionState.RECONNECTING)
        delay = self.policy.delay(self.attempts)
        self.logger.info(f"[client] reconnect attempt {self.attempts + 1} in {delay:.2f}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="devradar-client-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        await self.sleep(delay)
        self.attempts += 1
        self._reconnect_task = None
        await self._open()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # Heartbeat -------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        # Exits once _stop_heartbeat detaches this task.
        while self._heartbeat_task is asyncio.current_task():
            await self.sleep(self.settings.heartbeat_interval_seconds)
            await self.check_heartbeat()

    async def check_heartbeat(self) -> None:
        if not self.is_connected:
            return
        silence = self.clock() - self.last_pong_at
        if silence > self.settings.heartbeat_interval_seconds * 2:
            self.logger.warning("[client] no heartbeat response; closing")
            ws = self._ws
            try:
                await ws.close(code=CloseCode.HEARTBEAT_TIMEOUT, reason="No heartbeat response")
            except Exception as e:
                self.logger.debug(f"[client] close failed: {e}")
            await self.handle_close(ws, CloseCode.HEARTBEAT_TIMEOUT)
            return
        await self.send(MessageType.HEARTBEAT, {"ping": True})

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # Outbound --------------------------------------------------------

    async def send(self, message_type: str, payload: Any) -> bool:
        """Send now, or queue when the socket is down. True when written."""
        message = {"type": message_type, "payload": payload, "timestamp": int(time.time() * 1000)}
        async with self._send_lock:
            if not self.is_connected:
                self.queue.enqueue(message)
                return False
            try:
                await self._ws.send(json.dumps(message))
                return True
            except Exception as e:
                self.logger.warning(f"[client] send failed, queued: {e}")
                self.queue.enqueue(message)
                return False

    async def flush(self) -> int:
        """Send queued messages oldest first. Unsent ones go back in front."""
        async with self._send_lock:
            entries = self.queue.drain()
            sent = 0
            for index, entry in enumerate(entries):
                if not self.is_connected:
                    self.queue.restore(entries[index:])
                    break
                try:
                    await self._ws.send(json.dumps(entry.message))
                    sent += 1
                except Exception as e:
                    self.logger.warning(f"[client] flush failed: {e}")
                    self.queue.restore(entries[index:])
                    break
            if entries:
                self.logger.info(f"[client] flushed {sent}/{len(entries)} queued messages")
            return sent

    async def send_status_update(self, status: str, activity: Optional[Dict[str, Any]] = None) -> bool:
        payload: Dict[str, Any] = {"status": status}
        if activity is not None:
            payload["activity"] = activity
        return await self.send(MessageType.STATUS_UPDATE, payload)

    async def send_poke(self, to_user_id: str, message: Optional[str] = None) -> bool:
        payload: Dict[str, Any] = {"toUserId": to_user_id}
        if message is not None:
            payload["message"] = message
        return await self.send(MessageType.POKE, payload)

    async def close(self) -> None:
        await self.disconnect()
        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
