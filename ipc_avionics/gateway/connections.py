"""Connection bookkeeping for the websocket gateway.

Tracks which connections are open and which role each one authenticated
as. Admission against ``max_connections`` happens here, before a session
is created.
"""

import threading
from collections import Counter
from typing import Dict, Optional


class ConnectionRegistry:
    """Open connections and their authenticated roles."""

    def __init__(self, max_connections: int = 100) -> None:
        self._max_connections = max_connections
        self._roles: Dict[str, Optional[str]] = {}
        self._lock = threading.RLock()

    @property
    def max_connections(self) -> int:
        return self._max_connections

    def try_register(self, connection_id: str) -> bool:
        """Register a connection unless the server is at its limit."""
        with self._lock:
            if len(self._roles) >= self._max_connections:
                return False
            self._roles[connection_id] = None
            return True

    def set_role(self, connection_id: str, role: str) -> None:
        with self._lock:
            if connection_id in self._roles:
                self._roles[connection_id] = role

    def role_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._roles.get(connection_id)

    def unregister(self, connection_id: str) -> Optional[str]:
        """Forget a connection. Returns the role it had, if any."""
        with self._lock:
            return self._roles.pop(connection_id, None)

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._roles)

    def by_role(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(role or "unknown" for role in self._roles.values()))
