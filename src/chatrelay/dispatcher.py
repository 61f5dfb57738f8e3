from __future__ import annotations

import logging
from typing import Any, Iterable

from .presence import PresenceRegistry


logger = logging.getLogger(__name__)


class FanoutDispatcher:
    """Pushes events to whichever target identities currently hold a connection.

    Delivery is best-effort and at-most-once: offline targets are skipped and a
    failing connection is logged and ignored. Nothing is queued or retried.
    """

    def __init__(self, presence: PresenceRegistry) -> None:
        self._presence = presence

    def dispatch(self, user_ids: Iterable[str], event: str, payload: Any) -> int:
        delivered = 0
        seen: set[str] = set()
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            connection = self._presence.lookup(user_id)
            if connection is None:
                continue
            try:
                connection.deliver(event, payload)
            except Exception:
                logger.warning("dropping %s for %s", event, user_id, exc_info=True)
                continue
            delivered += 1
        return delivered

    def dispatch_one(self, user_id: str, event: str, payload: Any) -> bool:
        return self.dispatch([user_id], event, payload) == 1
