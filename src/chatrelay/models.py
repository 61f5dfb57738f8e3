from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Union

from .errors import ValidationError


@dataclass(frozen=True)
class Unresolved:
    """A reference carrying only the related record's id."""

    id: str

    def to_api(self) -> Any:
        return self.id


@dataclass(frozen=True)
class Resolved:
    """A reference hydrated with the full related record."""

    record: Any

    @property
    def id(self) -> str:
        return self.record.id

    def to_api(self) -> Any:
        return self.record.to_api_dict()


Ref = Union[Unresolved, Resolved]


@dataclass(frozen=True)
class PublicProfile:
    """What other members see of a message sender."""

    id: str
    username: str
    profile_picture: str = ""

    def to_api_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "username": self.username, "profilePicture": self.profile_picture}


@dataclass
class User:
    id: str
    username: str
    email: str
    profile_picture: str = ""
    bio: str = ""
    created_at: int = 0

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "profilePicture": self.profile_picture,
            "bio": self.bio,
            "createdAt": self.created_at,
        }

    def public_profile(self) -> PublicProfile:
        return PublicProfile(id=self.id, username=self.username, profile_picture=self.profile_picture)


@dataclass
class Message:
    """A direct or group message.

    Exactly one of ``receiver`` and ``group`` is set, and a message carries text,
    an image reference, or both. Both rules are checked on construction so no
    invalid message can reach a store.
    """

    id: str
    sender: Ref
    receiver: Ref | None = None
    group: Ref | None = None
    text: str | None = None
    image: str | None = None
    seen: bool = False
    seen_by: List[str] = field(default_factory=list)
    edited: bool = False
    edited_at: int | None = None
    created_at: int = 0

    def __post_init__(self) -> None:
        if (self.receiver is None) == (self.group is None):
            raise ValidationError("message must have either a receiver or a group, not both or neither")
        if not self.text and not self.image:
            raise ValidationError("message must have text or image")

    @property
    def sender_id(self) -> str:
        return self.sender.id

    @property
    def receiver_id(self) -> str | None:
        return self.receiver.id if self.receiver is not None else None

    @property
    def group_id(self) -> str | None:
        return self.group.id if self.group is not None else None

    @property
    def is_direct(self) -> bool:
        return self.receiver is not None

    @property
    def is_group(self) -> bool:
        return self.group is not None

    def with_sender(self, user: User | None) -> "Message":
        if user is None:
            return self
        return replace(self, sender=Resolved(user.public_profile()))

    def to_api_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "sender": self.sender.to_api()}
        if self.receiver is not None:
            data["receiver"] = self.receiver.to_api()
        if self.group is not None:
            data["group"] = self.group.to_api()
        data.update(
            {
                "text": self.text,
                "image": self.image,
                "seen": self.seen,
                "seenBy": list(self.seen_by),
                "edited": self.edited,
                "editedAt": self.edited_at,
                "createdAt": self.created_at,
            }
        )
        return data


@dataclass
class Group:
    id: str
    name: str
    creator: Ref
    members: List[Ref]
    admins: List[str]
    description: str = ""
    avatar: str = ""
    last_message: Ref | None = None
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self) -> None:
        if self.creator.id not in self.member_ids:
            raise ValidationError("group creator must be a member")
        if self.creator.id not in self.admins:
            raise ValidationError("group creator must be an admin")

    @property
    def creator_id(self) -> str:
        return self.creator.id

    @property
    def member_ids(self) -> List[str]:
        return [member.id for member in self.members]

    @property
    def last_message_id(self) -> str | None:
        return self.last_message.id if self.last_message is not None else None

    def unresolved(self) -> "Group":
        """Return a copy whose references hold ids only."""

        return replace(
            self,
            creator=Unresolved(self.creator.id),
            members=[Unresolved(member_id) for member_id in self.member_ids],
            admins=list(self.admins),
            last_message=Unresolved(self.last_message.id) if self.last_message is not None else None,
        )

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "avatar": self.avatar,
            "creator": self.creator.to_api(),
            "members": [member.to_api() for member in self.members],
            "admins": list(self.admins),
            "lastMessage": self.last_message.to_api() if self.last_message is not None else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
