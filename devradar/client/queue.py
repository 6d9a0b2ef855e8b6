"""
Outbound messages held while the socket is down.

Bounded two ways: entries older than ``max_age`` are pruned on every enqueue
and drain, and a full queue evicts its oldest entry to make room.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List


@dataclass(frozen=True)
class QueuedMessage:
    message: Dict[str, Any]
    enqueued_at: float


class OutboundQueue:
    def __init__(self, max_size: int = 100, max_age: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_size = max(1, max_size)
        self.max_age = max_age
        self.clock = clock
        self._entries: Deque[QueuedMessage] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    def prune(self) -> int:
        now = self.clock()
        dropped = 0
        while self._entries and now - self._entries[0].enqueued_at >= self.max_age:
            self._entries.popleft()
            dropped += 1
        return dropped

    def enqueue(self, message: Dict[str, Any]) -> int:
        """Queue ``message``. Returns how many old entries were evicted for it."""
        self.prune()
        evicted = 0
        while len(self._entries) >= self.max_size:
            self._entries.popleft()
            evicted += 1
        self._entries.append(QueuedMessage(message, self.clock()))
        return evicted

    def drain(self) -> List[QueuedMessage]:
        """Remove and return every live entry, oldest first."""
        self.prune()
        entries = list(self._entries)
        self._entries.clear()
        return entries

    def restore(self, entries: Iterable[QueuedMessage]) -> None:
        """Put unsent entries back in front, keeping their original timestamps."""
        self._entries.extendleft(reversed(list(entries)))
        while len(self._entries) > self.max_size:
            self._entries.popleft()
        self.prune()

    def messages(self) -> List[Dict[str, Any]]:
        return [entry.message for entry in self._entries]
