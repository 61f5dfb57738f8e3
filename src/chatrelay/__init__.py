"""Real-time chat relay: direct and group messaging with presence fan-out."""

from .direct import DirectMessageChannel
from .dispatcher import FanoutDispatcher
from .errors import AuthorizationError, ChatError, NotFoundError, StoreError, ValidationError
from .groups import GroupChannel
from .models import Group, Message, PublicProfile, Resolved, Unresolved, User
from .presence import Connection, PresenceRegistry
from .server import main, simulate
from .store import ConversationStore, InMemoryConversationStore

__all__ = [
    "AuthorizationError",
    "ChatError",
    "Connection",
    "ConversationStore",
    "DirectMessageChannel",
    "FanoutDispatcher",
    "Group",
    "GroupChannel",
    "InMemoryConversationStore",
    "Message",
    "NotFoundError",
    "PresenceRegistry",
    "PublicProfile",
    "Resolved",
    "StoreError",
    "Unresolved",
    "User",
    "ValidationError",
    "main",
    "simulate",
]
