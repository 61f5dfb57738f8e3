from __future__ import annotations

from dataclasses import replace
from typing import Callable, Dict, Iterable, List

from . import guard
from .dispatcher import FanoutDispatcher
from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Group, Message, Ref, Resolved, Unresolved, User
from .store import ConversationStore, _now_ms, new_id


NEW_GROUP = "newGroup"
NEW_GROUP_MESSAGE = "newGroupMessage"
GROUP_MESSAGE_EDITED = "groupMessageEdited"
GROUP_MESSAGE_DELETED = "groupMessageDeleted"
GROUP_UPDATED = "groupUpdated"
GROUP_DELETED = "groupDeleted"
ADDED_TO_GROUP = "addedToGroup"
REMOVED_FROM_GROUP = "removedFromGroup"
MEMBER_ADDED = "memberAdded"
MEMBER_REMOVED = "memberRemoved"


class GroupChannel:
    """Group conversations: messaging plus membership and group metadata.

    Every mutation is written to the store before any member is notified.
    Membership lists used for fan-out are captured from the record that was
    validated, so a notification never depends on a re-read after the write.
    """

    def __init__(
        self,
        store: ConversationStore,
        dispatcher: FanoutDispatcher,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._now = now_func

    # hydration

    def _resolve_user(self, user_id: str) -> Ref:
        user = self._store.get_user(user_id)
        # Deleted accounts stay as bare ids.
        return Resolved(user) if user is not None else Unresolved(user_id)

    def _hydrate_group(self, group: Group, *, with_last_message: bool = False) -> Group:
        last_message = group.last_message
        if with_last_message and group.last_message_id is not None:
            stored = self._store.get_message(group.last_message_id)
            last_message = Resolved(stored) if stored is not None else None
        return replace(
            group,
            creator=self._resolve_user(group.creator_id),
            members=[self._resolve_user(member_id) for member_id in group.member_ids],
            last_message=last_message,
        )

    def _hydrate_message(self, message: Message) -> Message:
        return message.with_sender(self._store.get_user(message.sender_id))

    def _hydrate_messages(self, messages: List[Message]) -> List[Message]:
        users: Dict[str, User | None] = {}
        hydrated = []
        for message in messages:
            if message.sender_id not in users:
                users[message.sender_id] = self._store.get_user(message.sender_id)
            hydrated.append(message.with_sender(users[message.sender_id]))
        return hydrated

    def _require_group(self, group_id: str) -> Group:
        group = self._store.get_group(group_id)
        if group is None:
            raise NotFoundError("group not found")
        return group

    def _require_group_message(self, message_id: str) -> tuple[Message, Group]:
        message = self._store.get_message(message_id)
        if message is None or not message.is_group:
            raise NotFoundError("message not found")
        group = self._store.get_group(message.group_id)
        if group is None:
            raise NotFoundError("group not found")
        return message, group

    def _notify(self, user_ids: Iterable[str], event: str, payload) -> None:
        self._dispatcher.dispatch(user_ids, event, payload)

    # group lifecycle

    def create(
        self,
        creator_id: str,
        name: str,
        member_ids: List[str],
        description: str | None = None,
        avatar: str | None = None,
    ) -> Group:
        if not name or not name.strip():
            raise ValidationError("group name is required")
        if not member_ids:
            raise ValidationError("group members are required")
        unique_members = list(dict.fromkeys([creator_id, *member_ids]))
        now_ms = self._now()
        group = Group(
            id=new_id("grp"),
            name=name,
            description=description or "",
            avatar=avatar or "",
            creator=Unresolved(creator_id),
            members=[Unresolved(member_id) for member_id in unique_members],
            admins=[creator_id],
            created_at=now_ms,
            updated_at=now_ms,
        )
        self._store.add_group(group)
        hydrated = self._hydrate_group(group)
        self._notify(unique_members, NEW_GROUP, hydrated.to_api_dict())
        return hydrated

    def list_groups(self, user_id: str) -> List[Group]:
        return [self._hydrate_group(group, with_last_message=True) for group in self._store.list_groups_for(user_id)]

    def update_info(
        self,
        requester_id: str,
        group_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        avatar: str | None = None,
    ) -> Group:
        group = self._require_group(group_id)
        guard.require_admin(group, requester_id, "update group information")
        if name is not None and not name.strip():
            raise ValidationError("group name cannot be empty")
        if name is not None:
            group.name = name
        if description is not None:
            group.description = description
        if avatar is not None:
            group.avatar = avatar
        group.updated_at = self._now()
        # Snapshot recipients from the validated record before saving.
        member_ids = list(group.member_ids)
        self._store.save_group(group)
        hydrated = self._hydrate_group(group)
        self._notify(member_ids, GROUP_UPDATED, hydrated.to_api_dict())
        return hydrated

    def delete_group(self, requester_id: str, group_id: str) -> str:
        group = self._require_group(group_id)
        guard.require_creator(group, requester_id)
        member_ids = list(group.member_ids)
        self._store.delete_group_messages(group_id)
        self._store.delete_group(group_id)
        self._notify(member_ids, GROUP_DELETED, {"groupId": group_id})
        return group_id

    # membership

    def add_member(self, requester_id: str, group_id: str, new_user_id: str) -> Group:
        group = self._require_group(group_id)
        guard.require_admin(group, requester_id, "add members")
        if guard.is_member(group, new_user_id):
            raise ValidationError("user is already a member")
        new_member = self._store.get_user(new_user_id)
        if new_member is None:
            raise NotFoundError("user not found")
        group.members.append(Unresolved(new_user_id))
        group.updated_at = self._now()
        self._store.save_group(group)
        hydrated = self._hydrate_group(group)
        self._dispatcher.dispatch_one(new_user_id, ADDED_TO_GROUP, hydrated.to_api_dict())
        others = [member_id for member_id in group.member_ids if member_id != new_user_id]
        self._notify(others, MEMBER_ADDED, {"groupId": group_id, "newMember": new_member.to_api_dict()})
        return hydrated

    def remove_member(self, requester_id: str, group_id: str, target_user_id: str) -> Group:
        group = self._require_group(group_id)
        # The creator can never be removed, whoever asks.
        if guard.is_creator(group, target_user_id):
            raise ValidationError("cannot remove group creator")
        if not (guard.is_admin(group, requester_id) or requester_id == target_user_id):
            raise AuthorizationError("only admins can remove members")
        if not guard.is_member(group, target_user_id):
            raise ValidationError("user is not a member")
        group.members = [member for member in group.members if member.id != target_user_id]
        group.admins = [admin_id for admin_id in group.admins if admin_id != target_user_id]
        group.updated_at = self._now()
        self._store.save_group(group)
        self._dispatcher.dispatch_one(target_user_id, REMOVED_FROM_GROUP, {"groupId": group_id})
        self._notify(
            group.member_ids,
            MEMBER_REMOVED,
            {"groupId": group_id, "removedMemberId": target_user_id},
        )
        return group

    # messages

    def send(self, sender_id: str, group_id: str, text: str | None = None, image: str | None = None) -> Message:
        group = self._require_group(group_id)
        guard.require_member(group, sender_id)
        if not text and not image:
            raise ValidationError("message must have text or image")
        message = Message(
            id=new_id("msg"),
            sender=Unresolved(sender_id),
            group=Unresolved(group_id),
            text=text or None,
            image=image or None,
            seen_by=[sender_id],
            created_at=self._now(),
        )
        self._store.add_message(message)
        self._store.set_last_message(group_id, message.id, message.created_at)
        hydrated = self._hydrate_message(message)
        self._notify(group.member_ids, NEW_GROUP_MESSAGE, {"groupId": group_id, "message": hydrated.to_api_dict()})
        return hydrated

    def edit(self, editor_id: str, message_id: str, new_text: str) -> Message:
        if not new_text or not new_text.strip():
            raise ValidationError("message text is required")
        message, group = self._require_group_message(message_id)
        guard.require_sender(message, editor_id, "edit")
        updated = self._store.update_message_text(message_id, new_text, self._now())
        if updated is None:
            raise NotFoundError("message not found")
        hydrated = self._hydrate_message(updated)
        self._notify(
            group.member_ids,
            GROUP_MESSAGE_EDITED,
            {"groupId": group.id, "message": hydrated.to_api_dict()},
        )
        return hydrated

    def delete_message(self, requester_id: str, message_id: str) -> str:
        message, group = self._require_group_message(message_id)
        guard.require_sender_or_admin(message, group, requester_id)
        if not self._store.delete_message(message_id):
            raise NotFoundError("message not found")
        if group.last_message_id == message_id:
            remaining = self._store.list_group_messages(group.id)
            newest = remaining[-1].id if remaining else None
            self._store.set_last_message(group.id, newest, group.updated_at)
        self._notify(group.member_ids, GROUP_MESSAGE_DELETED, {"groupId": group.id, "messageId": message_id})
        return message_id

    def list_messages(self, requester_id: str, group_id: str) -> List[Message]:
        group = self._require_group(group_id)
        guard.require_member(group, requester_id)
        messages = self._hydrate_messages(self._store.list_group_messages(group_id))
        self._store.add_seen_by(group_id, requester_id)
        return messages
