"""
Connection registry: principal id to live connections.
"""

import logging
from threading import Lock
from typing import TYPE_CHECKING

from pulse_relay.models.principal import Principal

if TYPE_CHECKING:
    from pulse_relay.connection import Connection

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks every live connection per principal.

    Several connections per principal are legal (one per browser tab).
    All access goes through the lock; callers only ever see copies.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._connections: dict[str, set["Connection"]] = {}
        self._admins: set[str] = set()

    def register(self, principal: Principal, connection: "Connection") -> None:
        with self._lock:
            self._connections.setdefault(principal.id, set()).add(connection)
            if principal.is_admin:
                self._admins.add(principal.id)
            total = len(self._connections[principal.id])
        logger.info("Connection %s registered for %s (%d live)", connection.id, principal.id, total)

    def unregister(self, principal: Principal, connection: "Connection") -> bool:
        """Remove a connection. Safe to call more than once; returns False if already gone."""
        with self._lock:
            bucket = self._connections.get(principal.id)
            if not bucket or connection not in bucket:
                return False
            bucket.discard(connection)
            if not bucket:
                del self._connections[principal.id]
                self._admins.discard(principal.id)
        logger.info("Connection %s unregistered for %s", connection.id, principal.id)
        return True

    def connections_for(self, principal_id: str) -> set["Connection"]:
        with self._lock:
            return set(self._connections.get(principal_id, ()))

    def is_online(self, principal_id: str) -> bool:
        with self._lock:
            return principal_id in self._connections

    def admins(self) -> set[str]:
        with self._lock:
            return set(self._admins)

    def principals(self) -> set[str]:
        with self._lock:
            return set(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._connections.values())
