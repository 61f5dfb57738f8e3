from __future__ import annotations

import re
from dataclasses import replace
from typing import Callable

from .errors import NotFoundError, ValidationError
from .models import User
from .store import ConversationStore, _now_ms, new_id


MAX_BIO_LENGTH = 150
MIN_USERNAME_LENGTH = 3

_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")


def _validate_profile(username: str, email: str, bio: str) -> None:
    if not username or len(username) < MIN_USERNAME_LENGTH:
        raise ValidationError(f"username must be at least {MIN_USERNAME_LENGTH} characters long")
    if not email or not _EMAIL_RE.fullmatch(email):
        raise ValidationError("invalid email format")
    if len(bio) > MAX_BIO_LENGTH:
        raise ValidationError(f"bio cannot exceed {MAX_BIO_LENGTH} characters")


class UserDirectory:
    """Profile records for chat participants.

    Credentials live elsewhere; this only keeps what other users can see.
    Deleting a user does not touch their messages or group memberships.
    """

    def __init__(self, store: ConversationStore, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._now = now_func

    def register(
        self,
        username: str,
        email: str,
        *,
        profile_picture: str = "",
        bio: str = "",
        user_id: str | None = None,
    ) -> User:
        _validate_profile(username, email, bio)
        user = User(
            id=user_id or new_id("usr"),
            username=username,
            email=email,
            profile_picture=profile_picture,
            bio=bio,
            created_at=self._now(),
        )
        return self._store.add_user(user)

    def get(self, user_id: str) -> User:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        username: str | None = None,
        bio: str | None = None,
        profile_picture: str | None = None,
    ) -> User:
        user = self.get(user_id)
        updated = replace(
            user,
            username=user.username if username is None else username,
            bio=user.bio if bio is None else bio,
            profile_picture=user.profile_picture if profile_picture is None else profile_picture,
        )
        _validate_profile(updated.username, updated.email, updated.bio)
        return self._store.update_user(updated)

    def delete(self, user_id: str) -> None:
        if not self._store.delete_user(user_id):
            raise NotFoundError("user not found")
