from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)

ONLINE_USERS_EVENT = "getOnlineUsers"

Deliver = Callable[[str, Any], None]


def _new_conn_id() -> str:
    return f"cx_{secrets.token_urlsafe(8)}"


@dataclass(eq=False)
class Connection:
    """A live connection handle; compared by identity, never by value."""

    user_id: str
    callback: Deliver
    conn_id: str = field(default_factory=_new_conn_id)

    def deliver(self, event: str, payload: Any) -> None:
        self.callback(event, payload)


class PresenceRegistry:
    """Maps each user id to at most one live connection.

    The most recent ``connect`` for a user wins. The prior handle is dropped
    from the registry but not closed. Every connect and disconnect pushes the
    full online set to all live connections.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[str, Connection] = {}

    def connect(self, user_id: str, connection: Connection) -> Connection | None:
        with self._lock:
            prior = self._connections.get(user_id)
            self._connections[user_id] = connection
        logger.info("user %s connected (%s)", user_id, connection.conn_id)
        self._broadcast_online()
        return prior

    def disconnect(self, user_id: str, connection: Connection) -> bool:
        """Remove ``user_id`` only while it still maps to ``connection``."""

        with self._lock:
            removed = self._connections.get(user_id) is connection
            if removed:
                del self._connections[user_id]
        if removed:
            logger.info("user %s disconnected (%s)", user_id, connection.conn_id)
        else:
            logger.debug("ignoring stale disconnect for %s (%s)", user_id, connection.conn_id)
        self._broadcast_online()
        return removed

    def lookup(self, user_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(user_id)

    def is_online(self, user_id: str) -> bool:
        return self.lookup(user_id) is not None

    def online_user_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._connections)

    def _broadcast_online(self) -> None:
        with self._lock:
            online = sorted(self._connections)
            targets = list(self._connections.values())
        for connection in targets:
            try:
                connection.deliver(ONLINE_USERS_EVENT, online)
            except Exception:
                logger.warning("online-set push to %s failed", connection.user_id, exc_info=True)
