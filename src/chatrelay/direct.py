from __future__ import annotations

from typing import Callable, Dict, List, Tuple

from . import guard
from .dispatcher import FanoutDispatcher
from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Message, Unresolved, User
from .store import ConversationStore, _now_ms, new_id


NEW_MESSAGE = "newMessage"
MESSAGE_EDITED = "messageEdited"
MESSAGE_DELETED = "messageDeleted"


class DirectMessageChannel:
    """One-to-one messaging: send, edit, delete, history and unseen counts.

    Only the sender may edit or delete a direct message. The receiver is
    notified of each change if it is online; the sender learns the outcome from
    the return value.
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

    def send(self, sender_id: str, receiver_id: str, text: str | None = None, image: str | None = None) -> Message:
        if not text and not image:
            raise ValidationError("message must have text or image")
        if self._store.get_user(receiver_id) is None:
            raise NotFoundError("receiver not found")
        message = Message(
            id=new_id("msg"),
            sender=Unresolved(sender_id),
            receiver=Unresolved(receiver_id),
            text=text or None,
            image=image or None,
            seen=False,
            created_at=self._now(),
        )
        self._store.add_message(message)
        self._dispatcher.dispatch_one(receiver_id, NEW_MESSAGE, message.to_api_dict())
        return message

    def edit(self, editor_id: str, message_id: str, new_text: str) -> Message:
        if not new_text or not new_text.strip():
            raise ValidationError("message text is required")
        message = self._require_direct(message_id)
        guard.require_sender(message, editor_id, "edit")
        updated = self._store.update_message_text(message_id, new_text, self._now())
        if updated is None:
            raise NotFoundError("message not found")
        self._dispatcher.dispatch_one(updated.receiver_id, MESSAGE_EDITED, updated.to_api_dict())
        return updated

    def delete(self, requester_id: str, message_id: str) -> str:
        message = self._require_direct(message_id)
        guard.require_sender(message, requester_id, "delete")
        if not self._store.delete_message(message_id):
            raise NotFoundError("message not found")
        self._dispatcher.dispatch_one(message.receiver_id, MESSAGE_DELETED, message_id)
        return message_id

    def list_conversation(self, user_id: str, peer_id: str) -> List[Message]:
        """Return the pair's history oldest first and mark the peer's messages seen.

        The snapshot is read before the seen flags flip, and the peer is not
        told that its messages were read.
        """

        messages = self._store.list_direct_messages(user_id, peer_id)
        self._store.mark_direct_seen(peer_id, user_id)
        return messages

    def list_users_with_unseen_counts(self, requester_id: str) -> Tuple[List[User], Dict[str, int]]:
        # One unseen query per user; fine for small directories.
        users = self._store.list_users(exclude_id=requester_id)
        unseen: Dict[str, int] = {}
        for user in users:
            count = self._store.count_unseen(user.id, requester_id)
            if count > 0:
                unseen[user.id] = count
        return users, unseen

    def mark_seen(self, user_id: str, message_id: str) -> Message:
        message = self._require_direct(message_id)
        if message.receiver_id != user_id:
            raise AuthorizationError("only the receiver can mark a message as seen")
        self._store.mark_message_seen(message_id)
        message.seen = True
        return message

    def _require_direct(self, message_id: str) -> Message:
        message = self._store.get_message(message_id)
        if message is None or not message.is_direct:
            raise NotFoundError("message not found")
        return message
