"""
devradar/realtime/registry.py
The canonical connection per user.
"""

import threading
from typing import Any, Dict, Iterable, List, Optional

from devradar.core.metrics import ws_active_connections
from devradar.realtime.connection import Connection


class ConnectionRegistry:
    """
    user_id -> live Connection. At most one entry per user.

    ``register`` hands back the connection it displaced so the caller can
    close it; ``unregister`` only removes the entry if it is still the given
    connection, so a late teardown of an evicted socket cannot remove its
    replacement.
    """

    def __init__(self):
        self._by_user: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    def register(self, conn: Connection) -> Optional[Connection]:
        with self._lock:
            previous = self._by_user.get(conn.user_id)
            self._by_user[conn.user_id] = conn
            ws_active_connections.set(len(self._by_user))
        return previous if previous is not conn else None

    def unregister(self, conn: Connection) -> bool:
        with self._lock:
            if self._by_user.get(conn.user_id) is not conn:
                return False
            del self._by_user[conn.user_id]
            ws_active_connections.set(len(self._by_user))
            return True

    def get(self, user_id: str) -> Optional[Connection]:
        with self._lock:
            return self._by_user.get(user_id)

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._by_user.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_user)

    async def broadcast(self, user_ids: Iterable[str], message: Dict[str, Any]) -> int:
        """Send to each listed user with a live connection. Returns deliveries."""
        delivered = 0
        for user_id in dict.fromkeys(user_ids):
            conn = self.get(user_id)
            if conn is not None and await conn.send(message):
                delivered += 1
        return delivered
