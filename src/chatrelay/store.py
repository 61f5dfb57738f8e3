from __future__ import annotations

import secrets
import threading
import time
from dataclasses import replace
from typing import Dict, List

from .errors import NotFoundError, ValidationError
from .models import Group, Message, Unresolved, User


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


def _detach_message(message: Message) -> Message:
    return replace(
        message,
        sender=Unresolved(message.sender_id),
        receiver=Unresolved(message.receiver_id) if message.receiver is not None else None,
        group=Unresolved(message.group_id) if message.group is not None else None,
        seen_by=list(message.seen_by),
    )


def _detach_user(user: User) -> User:
    return replace(user)


class ConversationStore:
    """CRUD over users, messages and groups.

    Records come back with unresolved references; hydration is the caller's
    choice. ``save_group`` replaces the whole mutable part of a group, so two
    concurrent read-modify-write cycles on the same group resolve last write
    wins.
    """

    def add_user(self, user: User) -> User:
        raise NotImplementedError

    def get_user(self, user_id: str) -> User | None:
        raise NotImplementedError

    def list_users(self, exclude_id: str | None = None) -> List[User]:
        raise NotImplementedError

    def update_user(self, user: User) -> User:
        raise NotImplementedError

    def delete_user(self, user_id: str) -> bool:
        raise NotImplementedError

    def add_message(self, message: Message) -> Message:
        raise NotImplementedError

    def get_message(self, message_id: str) -> Message | None:
        raise NotImplementedError

    def update_message_text(self, message_id: str, text: str, edited_at: int) -> Message | None:
        raise NotImplementedError

    def delete_message(self, message_id: str) -> bool:
        raise NotImplementedError

    def delete_group_messages(self, group_id: str) -> int:
        raise NotImplementedError

    def list_direct_messages(self, user_a: str, user_b: str) -> List[Message]:
        raise NotImplementedError

    def mark_direct_seen(self, sender_id: str, receiver_id: str) -> int:
        raise NotImplementedError

    def mark_message_seen(self, message_id: str) -> bool:
        raise NotImplementedError

    def count_unseen(self, sender_id: str, receiver_id: str) -> int:
        raise NotImplementedError

    def list_group_messages(self, group_id: str) -> List[Message]:
        raise NotImplementedError

    def add_seen_by(self, group_id: str, user_id: str) -> int:
        raise NotImplementedError

    def add_group(self, group: Group) -> Group:
        raise NotImplementedError

    def get_group(self, group_id: str) -> Group | None:
        raise NotImplementedError

    def save_group(self, group: Group) -> Group:
        raise NotImplementedError

    def set_last_message(self, group_id: str, message_id: str | None, updated_at: int) -> bool:
        raise NotImplementedError

    def delete_group(self, group_id: str) -> bool:
        raise NotImplementedError

    def list_groups_for(self, user_id: str) -> List[Group]:
        raise NotImplementedError


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._messages: Dict[str, Message] = {}
        self._groups: Dict[str, Group] = {}

    def add_user(self, user: User) -> User:
        with self._lock:
            if user.id in self._users:
                raise ValidationError("user already exists")
            for existing in self._users.values():
                if existing.username == user.username or existing.email == user.email:
                    raise ValidationError("username or email already in use")
            self._users[user.id] = _detach_user(user)
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return _detach_user(user) if user is not None else None

    def list_users(self, exclude_id: str | None = None) -> List[User]:
        with self._lock:
            users = [_detach_user(u) for u in self._users.values() if u.id != exclude_id]
        return sorted(users, key=lambda u: u.created_at)

    def update_user(self, user: User) -> User:
        with self._lock:
            if user.id not in self._users:
                raise NotFoundError("user not found")
            for existing in self._users.values():
                if existing.id != user.id and (existing.username == user.username or existing.email == user.email):
                    raise ValidationError("username or email already in use")
            self._users[user.id] = _detach_user(user)
        return user

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            return self._users.pop(user_id, None) is not None

    def add_message(self, message: Message) -> Message:
        with self._lock:
            if message.id in self._messages:
                raise ValidationError("message already exists")
            self._messages[message.id] = _detach_message(message)
        return message

    def get_message(self, message_id: str) -> Message | None:
        with self._lock:
            message = self._messages.get(message_id)
            return _detach_message(message) if message is not None else None

    def update_message_text(self, message_id: str, text: str, edited_at: int) -> Message | None:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return None
            message.text = text
            message.edited = True
            message.edited_at = edited_at
            return _detach_message(message)

    def delete_message(self, message_id: str) -> bool:
        with self._lock:
            return self._messages.pop(message_id, None) is not None

    def delete_group_messages(self, group_id: str) -> int:
        with self._lock:
            doomed = [m.id for m in self._messages.values() if m.group_id == group_id]
            for message_id in doomed:
                del self._messages[message_id]
        return len(doomed)

    def _ordered(self, messages: List[Message]) -> List[Message]:
        # sorted() is stable, so equal timestamps keep insertion order.
        return sorted((_detach_message(m) for m in messages), key=lambda m: m.created_at)

    def list_direct_messages(self, user_a: str, user_b: str) -> List[Message]:
        pair = {(user_a, user_b), (user_b, user_a)}
        with self._lock:
            matches = [
                m for m in self._messages.values() if m.is_direct and (m.sender_id, m.receiver_id) in pair
            ]
            return self._ordered(matches)

    def mark_direct_seen(self, sender_id: str, receiver_id: str) -> int:
        updated = 0
        with self._lock:
            for message in self._messages.values():
                if message.sender_id == sender_id and message.receiver_id == receiver_id and not message.seen:
                    message.seen = True
                    updated += 1
        return updated

    def mark_message_seen(self, message_id: str) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            message.seen = True
            return True

    def count_unseen(self, sender_id: str, receiver_id: str) -> int:
        with self._lock:
            return sum(
                1
                for m in self._messages.values()
                if m.sender_id == sender_id and m.receiver_id == receiver_id and not m.seen
            )

    def list_group_messages(self, group_id: str) -> List[Message]:
        with self._lock:
            return self._ordered([m for m in self._messages.values() if m.group_id == group_id])

    def add_seen_by(self, group_id: str, user_id: str) -> int:
        updated = 0
        with self._lock:
            for message in self._messages.values():
                if message.group_id != group_id or message.sender_id == user_id:
                    continue
                if user_id in message.seen_by:
                    continue
                message.seen_by.append(user_id)
                updated += 1
        return updated

    def add_group(self, group: Group) -> Group:
        with self._lock:
            if group.id in self._groups:
                raise ValidationError("group already exists")
            self._groups[group.id] = group.unresolved()
        return group

    def get_group(self, group_id: str) -> Group | None:
        with self._lock:
            group = self._groups.get(group_id)
            return group.unresolved() if group is not None else None

    def save_group(self, group: Group) -> Group:
        with self._lock:
            if group.id not in self._groups:
                raise NotFoundError("group not found")
            self._groups[group.id] = group.unresolved()
        return group

    def set_last_message(self, group_id: str, message_id: str | None, updated_at: int) -> bool:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                return False
            group.last_message = Unresolved(message_id) if message_id is not None else None
            group.updated_at = updated_at
            return True

    def delete_group(self, group_id: str) -> bool:
        with self._lock:
            return self._groups.pop(group_id, None) is not None

    def list_groups_for(self, user_id: str) -> List[Group]:
        with self._lock:
            groups = [g.unresolved() for g in self._groups.values() if user_id in g.member_ids]
        return sorted(groups, key=lambda g: g.updated_at, reverse=True)
