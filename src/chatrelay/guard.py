"""Membership and authorship checks shared by the direct and group channels.

The rules are deliberately not uniform: editing is sender-only everywhere,
deleting a direct message is sender-only, and deleting a group message is
allowed for the sender or any group admin.
"""

from __future__ import annotations

from .errors import AuthorizationError
from .models import Group, Message


def is_member(group: Group, user_id: str) -> bool:
    return user_id in group.member_ids


def is_admin(group: Group, user_id: str) -> bool:
    return user_id in group.admins


def is_creator(group: Group, user_id: str) -> bool:
    return group.creator_id == user_id


def is_sender(message: Message, user_id: str) -> bool:
    return message.sender_id == user_id


def require_member(group: Group, user_id: str) -> None:
    if not is_member(group, user_id):
        raise AuthorizationError("you are not a member of this group")


def require_admin(group: Group, user_id: str, action: str = "manage this group") -> None:
    if not is_admin(group, user_id):
        raise AuthorizationError(f"only admins can {action}")


def require_creator(group: Group, user_id: str) -> None:
    if not is_creator(group, user_id):
        raise AuthorizationError("only the group creator can delete this group")


def require_sender(message: Message, user_id: str, action: str = "edit") -> None:
    if not is_sender(message, user_id):
        raise AuthorizationError(f"you can only {action} your own messages")


def require_sender_or_admin(message: Message, group: Group, user_id: str) -> None:
    if not (is_sender(message, user_id) or is_admin(group, user_id)):
        raise AuthorizationError("you can only delete your own messages or be an admin")
