from typing import Any, Callable, List, Tuple

from chatrelay.dispatcher import FanoutDispatcher
from chatrelay.models import User
from chatrelay.presence import Connection, PresenceRegistry
from chatrelay.store import InMemoryConversationStore


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, ms: int = 1) -> None:
        self.now_ms += ms

    def now(self) -> int:
        # Every read ticks so records created back to back never tie.
        self.now_ms += 1
        return self.now_ms


class Recorder:
    """Collects everything delivered to one connection."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.events: List[Tuple[str, Any]] = []
        self.connection = Connection(user_id=user_id, callback=self._record)

    def _record(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> List[Any]:
        return [payload for name, payload in self.events if name == event]

    def names(self, *, skip_presence: bool = True) -> List[str]:
        return [name for name, _ in self.events if not (skip_presence and name == "getOnlineUsers")]

    def clear(self) -> None:
        self.events.clear()


class ChatFixture:
    """Store, presence and dispatcher wired together with a few users."""

    def __init__(self, store_factory: Callable[[], Any] = InMemoryConversationStore) -> None:
        self.clock = FakeClock()
        self.store = store_factory()
        self.presence = PresenceRegistry()
        self.dispatcher = FanoutDispatcher(self.presence)
        self.recorders = {}

    def add_user(self, user_id: str) -> User:
        return self.store.add_user(
            User(id=user_id, username=user_id, email=f"{user_id}@example.com", created_at=self.clock.now())
        )

    def connect(self, user_id: str) -> Recorder:
        recorder = Recorder(user_id)
        self.presence.connect(user_id, recorder.connection)
        self.recorders[user_id] = recorder
        return recorder

    def clear_events(self) -> None:
        for recorder in self.recorders.values():
            recorder.clear()
