"""
devradar/realtime/dispatcher.py
Side effects for validated inbound messages.

Handlers return ``None`` on success or a ``Rejection`` the gateway turns into
an ERROR frame. Anything raised is an unexpected failure.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from devradar.core.clock import epoch_ms
from devradar.core.logging import log_event
from devradar.core.tasks import BestEffort
from devradar.models.presence import PresenceRecord
from devradar.models.protocol import (
    ErrorCode,
    HeartbeatMessage,
    MessageType,
    PokeDelivery,
    PokeMessage,
    PongPayload,
    StatusUpdateMessage,
    SubscriptionMessage,
    envelope,
)
from devradar.realtime.connection import Connection
from devradar.realtime.registry import ConnectionRegistry
from devradar.stores.base import PresenceStore


@dataclass(frozen=True)
class Rejection:
    code: str
    message: str


NOT_FRIEND = Rejection(ErrorCode.NOT_FRIEND, "You can only poke friends")
SUBSCRIPTIONS_FIXED = Rejection(
    ErrorCode.NOT_IMPLEMENTED,
    "Subscriptions follow your friend list and cannot be changed on a live connection",
)


class MessageDispatcher:
    def __init__(
        self,
        *,
        store: PresenceStore,
        registry: ConnectionRegistry,
        best_effort: Optional[BestEffort] = None,
        time_fn: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.registry = registry
        self.time_fn = time_fn
        self.logger = logger or logging.getLogger("devradar.realtime.dispatch")
        self.best_effort = best_effort or BestEffort(self.logger)

    async def dispatch(self, conn: Connection, message) -> Optional[Rejection]:
        if isinstance(message, HeartbeatMessage):
            return await self.handle_heartbeat(conn, message)
        if isinstance(message, StatusUpdateMessage):
            return await self.handle_status_update(conn, message)
        if isinstance(message, PokeMessage):
            return await self.handle_poke(conn, message)
        if isinstance(message, SubscriptionMessage):
            return SUBSCRIPTIONS_FIXED
        raise TypeError(f"no handler for {type(message).__name__}")

    async def handle_heartbeat(self, conn: Connection, message: HeartbeatMessage) -> Optional[Rejection]:
        now = self.time_fn()
        conn.touch(now)
        await self.best_effort.run("presence_touch", self.store.touch_presence(conn.user_id), user_id=conn.user_id)
        await conn.send(
            envelope(
                MessageType.PONG,
                PongPayload(timestamp=epoch_ms(now)),
                correlation_id=message.correlation_id,
            )
        )
        return None

    async def handle_status_update(self, conn: Connection, message: StatusUpdateMessage) -> Optional[Rejection]:
        record = PresenceRecord(
            user_id=conn.user_id,
            status=message.payload.status,
            activity=message.payload.activity,
            updated_at=epoch_ms(self.time_fn()),
        )
        # The store publishes the change; fanout happens through the router.
        await self.store.set_presence(record)
        return None

    async def handle_poke(self, conn: Connection, message: PokeMessage) -> Optional[Rejection]:
        target_id = message.payload.to_user_id
        if target_id not in conn.friend_ids:
            return NOT_FRIEND

        target = self.registry.get(target_id)
        if target is None or not target.is_open:
            log_event(
                "info",
                "ws.poke_dropped",
                logger=self.logger,
                user_id=conn.user_id,
                event_type=MessageType.POKE,
                extra={"to_user_id": target_id, "reason": "target_offline"},
            )
            return None
        if conn.user_id not in target.friend_ids:
            return NOT_FRIEND

        await target.send(
            envelope(
                MessageType.POKE,
                PokeDelivery(from_user_id=conn.user_id, to_user_id=target_id, message=message.payload.message),
            )
        )
        return None
