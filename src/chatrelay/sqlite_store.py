from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Sequence

from .errors import NotFoundError, StoreError, ValidationError
from .models import Group, Message, Unresolved, User
from .sqlite_backend import SQLiteBackend
from .store import ConversationStore


logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, username, email, profile_picture, bio, created_at_ms"
_MESSAGE_COLUMNS = (
    "id, sender_id, receiver_id, group_id, text, image, seen, edited, edited_at_ms, created_at_ms"
)
_GROUP_COLUMNS = "id, name, description, avatar, creator_id, last_message_id, created_at_ms, updated_at_ms"


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row[0],
        username=row[1],
        email=row[2],
        profile_picture=row[3],
        bio=row[4],
        created_at=row[5],
    )


class SQLiteConversationStore(ConversationStore):
    """Durable conversation store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    @contextmanager
    def _write(self, conflict: str = "record already exists") -> Iterator[sqlite3.Cursor]:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise ValidationError(conflict) from exc
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error("sqlite write failed: %s", exc)
                raise StoreError("store write failed") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._backend.lock:
            try:
                return self._backend.connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                logger.error("sqlite read failed: %s", exc)
                raise StoreError("store read failed") from exc

    # users

    def add_user(self, user: User) -> User:
        with self._write(conflict="username or email already in use") as cursor:
            cursor.execute(
                f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (user.id, user.username, user.email, user.profile_picture, user.bio, user.created_at),
            )
        return user

    def get_user(self, user_id: str) -> User | None:
        rows = self._query(f"SELECT {_USER_COLUMNS} FROM users WHERE id=?", (user_id,))
        return _user_from_row(rows[0]) if rows else None

    def list_users(self, exclude_id: str | None = None) -> List[User]:
        rows = self._query(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id IS NOT ? ORDER BY created_at_ms ASC, rowid ASC",
            (exclude_id,),
        )
        return [_user_from_row(row) for row in rows]

    def update_user(self, user: User) -> User:
        with self._write(conflict="username or email already in use") as cursor:
            cursor.execute(
                "UPDATE users SET username=?, email=?, profile_picture=?, bio=? WHERE id=?",
                (user.username, user.email, user.profile_picture, user.bio, user.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("user not found")
        return user

    def delete_user(self, user_id: str) -> bool:
        with self._write() as cursor:
            cursor.execute("DELETE FROM users WHERE id=?", (user_id,))
            return cursor.rowcount > 0

    # messages

    def _messages_from_rows(self, rows: List[sqlite3.Row]) -> List[Message]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        placeholders = ",".join("?" for _ in ids)
        seen_rows = self._query(
            f"SELECT message_id, user_id FROM message_seen_by WHERE message_id IN ({placeholders}) ORDER BY rowid",
            ids,
        )
        seen_by: Dict[str, List[str]] = {}
        for message_id, user_id in seen_rows:
            seen_by.setdefault(message_id, []).append(user_id)
        return [
            Message(
                id=row[0],
                sender=Unresolved(row[1]),
                receiver=Unresolved(row[2]) if row[2] is not None else None,
                group=Unresolved(row[3]) if row[3] is not None else None,
                text=row[4],
                image=row[5],
                seen=bool(row[6]),
                seen_by=seen_by.get(row[0], []),
                edited=bool(row[7]),
                edited_at=row[8],
                created_at=row[9],
            )
            for row in rows
        ]

    def add_message(self, message: Message) -> Message:
        with self._write(conflict="message already exists") as cursor:
            cursor.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.sender_id,
                    message.receiver_id,
                    message.group_id,
                    message.text,
                    message.image,
                    int(message.seen),
                    int(message.edited),
                    message.edited_at,
                    message.created_at,
                ),
            )
            for user_id in message.seen_by:
                cursor.execute(
                    "INSERT OR IGNORE INTO message_seen_by (message_id, user_id) VALUES (?, ?)",
                    (message.id, user_id),
                )
        return message

    def get_message(self, message_id: str) -> Message | None:
        rows = self._query(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,))
        messages = self._messages_from_rows(rows)
        return messages[0] if messages else None

    def update_message_text(self, message_id: str, text: str, edited_at: int) -> Message | None:
        with self._write() as cursor:
            cursor.execute(
                "UPDATE messages SET text=?, edited=1, edited_at_ms=? WHERE id=?",
                (text, edited_at, message_id),
            )
            updated = cursor.rowcount > 0
        return self.get_message(message_id) if updated else None

    def delete_message(self, message_id: str) -> bool:
        with self._write() as cursor:
            cursor.execute("DELETE FROM messages WHERE id=?", (message_id,))
            return cursor.rowcount > 0

    def delete_group_messages(self, group_id: str) -> int:
        with self._write() as cursor:
            cursor.execute("DELETE FROM messages WHERE group_id=?", (group_id,))
            return cursor.rowcount

    def list_direct_messages(self, user_a: str, user_b: str) -> List[Message]:
        rows = self._query(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE (sender_id=? AND receiver_id=?) OR (sender_id=? AND receiver_id=?)
            ORDER BY created_at_ms ASC, seq ASC
            """,
            (user_a, user_b, user_b, user_a),
        )
        return self._messages_from_rows(rows)

    def mark_direct_seen(self, sender_id: str, receiver_id: str) -> int:
        with self._write() as cursor:
            cursor.execute(
                "UPDATE messages SET seen=1 WHERE sender_id=? AND receiver_id=? AND seen=0",
                (sender_id, receiver_id),
            )
            return cursor.rowcount

    def mark_message_seen(self, message_id: str) -> bool:
        with self._write() as cursor:
            cursor.execute("UPDATE messages SET seen=1 WHERE id=?", (message_id,))
            return cursor.rowcount > 0

    def count_unseen(self, sender_id: str, receiver_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) FROM messages WHERE sender_id=? AND receiver_id=? AND seen=0",
            (sender_id, receiver_id),
        )
        return int(rows[0][0])

    def list_group_messages(self, group_id: str) -> List[Message]:
        rows = self._query(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE group_id=? ORDER BY created_at_ms ASC, seq ASC",
            (group_id,),
        )
        return self._messages_from_rows(rows)

    def add_seen_by(self, group_id: str, user_id: str) -> int:
        with self._write() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO message_seen_by (message_id, user_id)
                SELECT id, ? FROM messages WHERE group_id=? AND sender_id!=?
                """,
                (user_id, group_id, user_id),
            )
            return cursor.rowcount

    # groups

    def _group_from_row(self, row: sqlite3.Row) -> Group:
        member_rows = self._query(
            "SELECT user_id, is_admin FROM group_members WHERE group_id=? ORDER BY position ASC",
            (row[0],),
        )
        return Group(
            id=row[0],
            name=row[1],
            description=row[2],
            avatar=row[3],
            creator=Unresolved(row[4]),
            last_message=Unresolved(row[5]) if row[5] is not None else None,
            created_at=row[6],
            updated_at=row[7],
            members=[Unresolved(member[0]) for member in member_rows],
            admins=[member[0] for member in member_rows if member[1]],
        )

    @staticmethod
    def _write_members(cursor: sqlite3.Cursor, group: Group) -> None:
        cursor.execute("DELETE FROM group_members WHERE group_id=?", (group.id,))
        admins = set(group.admins)
        for position, member_id in enumerate(group.member_ids):
            cursor.execute(
                "INSERT INTO group_members (group_id, user_id, position, is_admin) VALUES (?, ?, ?, ?)",
                (group.id, member_id, position, int(member_id in admins)),
            )

    def add_group(self, group: Group) -> Group:
        with self._write(conflict="group already exists") as cursor:
            cursor.execute(
                f"INSERT INTO chat_groups ({_GROUP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    group.id,
                    group.name,
                    group.description,
                    group.avatar,
                    group.creator_id,
                    group.last_message_id,
                    group.created_at,
                    group.updated_at,
                ),
            )
            self._write_members(cursor, group)
        return group

    def get_group(self, group_id: str) -> Group | None:
        rows = self._query(f"SELECT {_GROUP_COLUMNS} FROM chat_groups WHERE id=?", (group_id,))
        return self._group_from_row(rows[0]) if rows else None

    def save_group(self, group: Group) -> Group:
        with self._write() as cursor:
            cursor.execute(
                """
                UPDATE chat_groups SET name=?, description=?, avatar=?, last_message_id=?, updated_at_ms=?
                WHERE id=?
                """,
                (group.name, group.description, group.avatar, group.last_message_id, group.updated_at, group.id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("group not found")
            self._write_members(cursor, group)
        return group

    def set_last_message(self, group_id: str, message_id: str | None, updated_at: int) -> bool:
        with self._write() as cursor:
            cursor.execute(
                "UPDATE chat_groups SET last_message_id=?, updated_at_ms=? WHERE id=?",
                (message_id, updated_at, group_id),
            )
            return cursor.rowcount > 0

    def delete_group(self, group_id: str) -> bool:
        with self._write() as cursor:
            cursor.execute("DELETE FROM chat_groups WHERE id=?", (group_id,))
            return cursor.rowcount > 0

    def list_groups_for(self, user_id: str) -> List[Group]:
        rows = self._query(
            f"""
            SELECT {", ".join("g." + column for column in _GROUP_COLUMNS.split(", "))}
            FROM chat_groups g JOIN group_members m ON m.group_id = g.id
            WHERE m.user_id=?
            ORDER BY g.updated_at_ms DESC, g.rowid DESC
            """,
            (user_id,),
        )
        return [self._group_from_row(row) for row in rows]
