"""
devradar/realtime/gateway.py
Presence gateway: authenticated sockets, one per user.

Lifecycle of a socket:

- accept, rate limit the client address (4029), verify the token
  (4001 missing / 4002 invalid or revoked / 4003 expired)
- activate: evict the user's previous socket (1001), register, subscribe to
  each friend's presence channel, send CONNECTED and one FRIEND_STATUS per
  friend
- read loop: validate every text frame before dispatch; binary frames close
  with 1003
- teardown: unregister, unsubscribe, and start the grace timer that marks the
  user offline unless they reconnect first

A watchdog closes sockets whose heartbeat went silent (4000) or whose token
expired (4003) or was revoked (4002) while connected.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from devradar.core.auth import Credential, CredentialVerifier
from devradar.core.clock import epoch_ms
from devradar.core.config import settings
from devradar.core.errors import AuthenticationError, CloseCode
from devradar.core.logging import log_event
from devradar.core.metrics import (
    ratelimit_block_total,
    ws_connections_total,
    ws_errors_total,
    ws_messages_received_total,
)
from devradar.core.ratelimit import InMemoryRateLimiter, RateLimitConfig
from devradar.features.social.graph import SocialGraph
from devradar.models.presence import PresenceRecord
from devradar.models.protocol import (
    ConnectedPayload,
    ErrorCode,
    MessageType,
    ProtocolError,
    envelope,
    error_envelope,
    parse_inbound,
)
from devradar.realtime.connection import Connection
from devradar.realtime.dispatcher import MessageDispatcher
from devradar.realtime.registry import ConnectionRegistry
from devradar.realtime.router import FanoutRouter
from devradar.stores.base import PresenceStore


class PresenceGateway:
    def __init__(
        self,
        *,
        verifier: CredentialVerifier,
        store: PresenceStore,
        graph: SocialGraph,
        registry: Optional[ConnectionRegistry] = None,
        router: Optional[FanoutRouter] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        settings_obj=None,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.verifier = verifier
        self.store = store
        self.graph = graph
        self.settings = settings_obj or settings
        self.time_fn = time_fn
        self.logger = logger or logging.getLogger("devradar.realtime")
        self.registry = registry or ConnectionRegistry()
        self.router = router or FanoutRouter(store, self.registry, self.logger)
        self.dispatcher = dispatcher or MessageDispatcher(
            store=store, registry=self.registry, time_fn=time_fn, logger=self.logger
        )
        self.connect_limiter = InMemoryRateLimiter(RateLimitConfig(enabled=True))
        self.message_limiter = InMemoryRateLimiter(RateLimitConfig(enabled=True))
        self._grace_timers: Dict[str, asyncio.Task] = {}
        self._watchdog: Optional[asyncio.Task] = None
        self._shutting_down = False

    # Lifecycle -------------------------------------------------------

    async def start(self) -> None:
        self._shutting_down = False
        if self._watchdog is None or self._watchdog.done():
            self._watchdog = asyncio.create_task(self._watchdog_loop(), name="presence-watchdog")

    async def shutdown(self) -> None:
        self._shutting_down = True
        if self._watchdog is not None:
            self._watchdog.cancel()
            try:
                await self._watchdog
            except asyncio.CancelledError:
                pass
            self._watchdog = None
        for user_id in list(self._grace_timers):
            self._cancel_grace_timer(user_id)
        for conn in self.registry.connections():
            await conn.close(CloseCode.GOING_AWAY, "Server shutting down")

    # Socket handling -------------------------------------------------

    async def handle(self, websocket) -> None:
        """Serve one socket until it closes."""
        connection_id = uuid4().hex
        client_host = websocket.client.host if websocket.client else "unknown"
        await websocket.accept()

        cfg = self.settings
        if not self.connect_limiter.allow(
            f"ws-connect:{client_host}", per_minute=cfg.WS_CONNECT_PER_MINUTE, burst=cfg.WS_CONNECT_BURST
        ):
            ratelimit_block_total.inc(labels={"scope": "ws_connect"})
            ws_connections_total.inc(labels={"outcome": "rate_limited"})
            log_event(
                "warning",
                "ws.connect_rate_limited",
                logger=self.logger,
                event_type="ws.rate_limited",
                extra={"connection_id": connection_id, "client": client_host},
            )
            await self._close_quietly(websocket, CloseCode.RATE_LIMITED, "Too many connection attempts")
            return

        try:
            credential = self.verifier.verify(websocket.query_params.get("token"))
        except AuthenticationError as e:
            ws_connections_total.inc(labels={"outcome": e.code})
            log_event(
                "info",
                "ws.unauthorized",
                logger=self.logger,
                event_type="ws.unauthorized",
                error_code=e.code,
                extra={"connection_id": connection_id},
            )
            await self._close_quietly(websocket, e.close_code, e.message)
            return

        try:
            friend_ids = await run_in_threadpool(self.graph.get_friend_ids, credential.user_id)
        except Exception as e:
            ws_connections_total.inc(labels={"outcome": "error"})
            log_event(
                "error",
                "ws.friend_lookup_failed",
                logger=self.logger,
                user_id=credential.user_id,
                error_code="friend_lookup_failed",
                extra={"connection_id": connection_id, "error": repr(e)},
            )
            await self._close_quietly(websocket, CloseCode.SERVER_ERROR, "Internal error")
            return

        conn = Connection(
            websocket,
            user_id=credential.user_id,
            connection_id=connection_id,
            friend_ids=frozenset(friend_ids),
            credential=credential,
            time_fn=self.time_fn,
            logger=self.logger,
        )

        close_code: Optional[int] = None
        try:
            await self._activate(conn)
            ws_connections_total.inc(labels={"outcome": "accepted"})
            log_event(
                "info",
                "ws.connected",
                logger=self.logger,
                user_id=conn.user_id,
                event_type="ws.connected",
                extra={"connection_id": connection_id, "friends": len(conn.friend_ids)},
            )
            close_code = await self._read_loop(conn, websocket)
        except Exception as e:
            ws_errors_total.inc(labels={"code": "server_error"})
            log_event(
                "error",
                "ws.loop_error",
                logger=self.logger,
                user_id=conn.user_id,
                error_code="server_error",
                extra={"connection_id": connection_id, "error": repr(e)},
            )
            await conn.close(CloseCode.SERVER_ERROR, "Internal error")
        finally:
            await self._finish(conn, close_code)

    async def _activate(self, conn: Connection) -> None:
        self._cancel_grace_timer(conn.user_id)
        previous = self.registry.register(conn)
        if previous is not None:
            previous.superseded = True
            await previous.close(CloseCode.GOING_AWAY, "New connection established")
            await self._teardown(previous)

        await self.router.subscribe_many(conn.user_id, conn.friend_ids)
        await conn.send(
            envelope(
                MessageType.CONNECTED,
                ConnectedPayload(user_id=conn.user_id, friend_count=len(conn.friend_ids)),
            )
        )

        known = await self.store.get_presences(conn.friend_ids)
        now = epoch_ms(self.time_fn())
        for friend_id in sorted(conn.friend_ids):
            record = known.get(friend_id) or PresenceRecord.offline(friend_id, now)
            await conn.send(envelope(MessageType.FRIEND_STATUS, record))

    async def _read_loop(self, conn: Connection, websocket) -> int:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return int(message.get("code") or CloseCode.NORMAL)
            if not conn.is_open:
                # Closed by us; wait for the peer's close.
                continue
            text = message.get("text")
            if text is None:
                ws_errors_total.inc(labels={"code": "binary_frame"})
                await conn.close(CloseCode.INVALID_DATA, "Binary frames are not supported")
                continue
            await self.handle_frame(conn, text)

    async def handle_frame(self, conn: Connection, text: str) -> None:
        cfg = self.settings
        if len(text.encode("utf-8")) > cfg.WS_MAX_MESSAGE_BYTES:
            await self._reject(conn, ErrorCode.PAYLOAD_TOO_LARGE, "Message too large")
            return

        if not self.message_limiter.allow(
            f"ws-msg:{conn.connection_id}", per_minute=cfg.WS_MESSAGES_PER_MINUTE, burst=cfg.WS_MESSAGE_BURST
        ):
            ratelimit_block_total.inc(labels={"scope": "ws_message"})
            await self._reject(conn, ErrorCode.RATE_LIMITED, "Too many messages")
            return

        try:
            message = parse_inbound(text)
        except ProtocolError as e:
            await self._reject(conn, e.code, e.message, e.correlation_id)
            return

        ws_messages_received_total.inc(labels={"event_type": message.type})
        try:
            rejection = await self.dispatcher.dispatch(conn, message)
        except Exception as e:
            log_event(
                "error",
                "ws.dispatch_failed",
                logger=self.logger,
                user_id=conn.user_id,
                event_type=message.type,
                error_code=ErrorCode.INTERNAL_ERROR,
                extra={"connection_id": conn.connection_id, "error": repr(e)},
            )
            await self._reject(conn, ErrorCode.INTERNAL_ERROR, "Failed to process message", message.correlation_id)
            return
        if rejection is not None:
            await self._reject(conn, rejection.code, rejection.message, message.correlation_id)

    async def _reject(self, conn: Connection, code: str, message: str, correlation_id: Optional[str] = None) -> None:
        ws_errors_total.inc(labels={"code": code})
        log_event(
            "debug",
            "ws.message_rejected",
            logger=self.logger,
            user_id=conn.user_id,
            error_code=code,
            extra={"connection_id": conn.connection_id, "reason": message},
        )
        await conn.send(error_envelope(code, message, correlation_id))

    async def _teardown(self, conn: Connection) -> None:
        if conn.torn_down:
            return
        conn.torn_down = True
        self.registry.unregister(conn)
        self.message_limiter.forget(f"ws-msg:{conn.connection_id}")
        await self.router.unsubscribe_many(conn.user_id, conn.friend_ids)

    async def _finish(self, conn: Connection, close_code: Optional[int]) -> None:
        conn.mark_closed(close_code)
        await self._teardown(conn)
        if not conn.superseded and not self._shutting_down and self.registry.get(conn.user_id) is None:
            self._start_grace_timer(conn.user_id)
        log_event(
            "info",
            "ws.disconnected",
            logger=self.logger,
            user_id=conn.user_id,
            event_type="ws.disconnected",
            extra={"connection_id": conn.connection_id, "code": conn.close_code},
        )

    async def _close_quietly(self, websocket, code: int, reason: str) -> None:
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            self.logger.debug(f"[WS] close({code}) failed: {e}")

    # Grace period ----------------------------------------------------

    def _start_grace_timer(self, user_id: str) -> None:
        self._cancel_grace_timer(user_id)
        self._grace_timers[user_id] = asyncio.create_task(
            self._expire_after_grace(user_id), name=f"presence-grace-{user_id}"
        )

    def _cancel_grace_timer(self, user_id: str) -> None:
        task = self._grace_timers.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()

    def has_grace_timer(self, user_id: str) -> bool:
        return user_id in self._grace_timers

    async def _expire_after_grace(self, user_id: str) -> None:
        try:
            await asyncio.sleep(self.settings.PRESENCE_GRACE_SECONDS)
            if self.registry.get(user_id) is not None:
                return
            await self.store.clear_presence(user_id, epoch_ms(self.time_fn()))
            log_event("info", "presence.offline", logger=self.logger, user_id=user_id, event_type="presence.offline")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_event(
                "error",
                "presence.offline_failed",
                logger=self.logger,
                user_id=user_id,
                error_code="store_unavailable",
                extra={"error": repr(e)},
            )
        finally:
            if self._grace_timers.get(user_id) is asyncio.current_task():
                del self._grace_timers[user_id]

    # Watchdog --------------------------------------------------------

    def _close_reason(self, conn: Connection, now: float):
        if conn.credential.is_expired(now):
            return CloseCode.TOKEN_EXPIRED, "Token expired"
        if self.verifier.is_revoked(conn.credential):
            return CloseCode.INVALID_TOKEN, "Token revoked"
        if now - conn.last_heartbeat_at > self.settings.WS_IDLE_TIMEOUT_SECONDS:
            return CloseCode.HEARTBEAT_TIMEOUT, "Heartbeat timeout"
        return None

    async def sweep(self) -> int:
        """Close every socket that went silent or lost its credential. Returns closures."""
        now = self.time_fn()
        closed = 0
        for conn in self.registry.connections():
            if not conn.is_open:
                continue
            reason = self._close_reason(conn, now)
            if reason is None:
                continue
            code, text = reason
            log_event(
                "info",
                "ws.watchdog_close",
                logger=self.logger,
                user_id=conn.user_id,
                event_type="ws.watchdog",
                extra={"connection_id": conn.connection_id, "code": code},
            )
            if await conn.close(code, text):
                closed += 1
        return closed

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.WS_WATCHDOG_INTERVAL_SECONDS)
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error(f"[WS] watchdog sweep failed: {e}")

    # Out-of-band delivery -------------------------------------------

    async def broadcast(self, user_ids: Iterable[str], message: Dict[str, Any]) -> int:
        return await self.registry.broadcast(user_ids, message)

    async def revoke(self, credential: Credential) -> int:
        """Revoke a token and close the sockets opened with it."""
        if credential.token_id:
            self.verifier.revoke(credential.token_id, credential.expires_at)
        closed = 0
        for conn in self.registry.connections():
            if conn.credential.token_id and conn.credential.token_id == credential.token_id:
                if await conn.close(CloseCode.INVALID_TOKEN, "Token revoked"):
                    closed += 1
        return closed
