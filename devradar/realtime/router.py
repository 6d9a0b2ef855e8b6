"""
devradar/realtime/router.py
Presence fanout: publisher channel -> viewers.

The first viewer of a publisher attaches a listener to the store's change
feed; the last one leaving detaches it. A change event becomes one
FRIEND_STATUS frame per viewer that has a live connection.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set

from devradar.core.metrics import fanout_deliveries_total, presence_active_channels
from devradar.models.presence import PresenceRecord
from devradar.models.protocol import MessageType, envelope
from devradar.realtime.registry import ConnectionRegistry
from devradar.stores.base import PresenceStore


LOCK_SHARDS = 64


class FanoutRouter:
    def __init__(self, store: PresenceStore, registry: ConnectionRegistry, logger: Optional[logging.Logger] = None):
        self.store = store
        self.registry = registry
        self.logger = logger or logging.getLogger("devradar.realtime.router")
        # publisher -> viewer -> number of live subscriptions. A viewer may be
        # counted twice while an evicted connection is still tearing down.
        self._channels: Dict[str, Dict[str, int]] = {}
        # Attach and detach for one publisher are serialized; different
        # publishers do not wait on each other.
        self._locks = [asyncio.Lock() for _ in range(LOCK_SHARDS)]

    def _lock_for(self, publisher_id: str) -> asyncio.Lock:
        return self._locks[hash(publisher_id) % len(self._locks)]

    def subscribers(self, publisher_id: str) -> Set[str]:
        return set(self._channels.get(publisher_id, {}))

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def subscribe(self, viewer_id: str, publisher_id: str) -> None:
        async with self._lock_for(publisher_id):
            viewers = self._channels.get(publisher_id)
            if viewers is None:
                await self.store.subscribe(publisher_id, self._listener_for(publisher_id))
                viewers = self._channels[publisher_id] = {}
                presence_active_channels.set(len(self._channels))
            viewers[viewer_id] = viewers.get(viewer_id, 0) + 1

    async def unsubscribe(self, viewer_id: str, publisher_id: str) -> None:
        async with self._lock_for(publisher_id):
            viewers = self._channels.get(publisher_id)
            if viewers is None or viewer_id not in viewers:
                return
            viewers[viewer_id] -= 1
            if viewers[viewer_id] <= 0:
                del viewers[viewer_id]
            if not viewers:
                del self._channels[publisher_id]
                presence_active_channels.set(len(self._channels))
                await self.store.unsubscribe(publisher_id)

    async def subscribe_many(self, viewer_id: str, publisher_ids: Iterable[str]) -> None:
        for publisher_id in publisher_ids:
            await self.subscribe(viewer_id, publisher_id)

    async def unsubscribe_many(self, viewer_id: str, publisher_ids: Iterable[str]) -> None:
        for publisher_id in publisher_ids:
            try:
                await self.unsubscribe(viewer_id, publisher_id)
            except Exception as e:
                self.logger.warning(f"[fanout] unsubscribe {viewer_id} from {publisher_id} failed: {e}")

    def _listener_for(self, publisher_id: str):
        async def _on_change(record: PresenceRecord) -> None:
            await self.deliver(publisher_id, record)

        return _on_change

    async def deliver(self, publisher_id: str, record: PresenceRecord) -> int:
        message = envelope(MessageType.FRIEND_STATUS, record)
        delivered = 0
        for viewer_id in sorted(self.subscribers(publisher_id)):
            conn = self.registry.get(viewer_id)
            if conn is None or not conn.is_open:
                fanout_deliveries_total.inc(labels={"outcome": "offline"})
                continue
            try:
                ok = await conn.send(message)
            except Exception as e:
                ok = False
                self.logger.warning(f"[fanout] delivery of {publisher_id} to {viewer_id} failed: {e}")
            fanout_deliveries_total.inc(labels={"outcome": "sent" if ok else "failed"})
            delivered += int(ok)
        return delivered
