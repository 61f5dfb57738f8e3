from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies the chat schema."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure()
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL UNIQUE,
                profile_picture TEXT NOT NULL DEFAULT '',
                bio TEXT NOT NULL DEFAULT '',
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        # Sender and receiver are not foreign keys: deleting a user leaves
        # their messages in place.
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                sender_id TEXT NOT NULL,
                receiver_id TEXT,
                group_id TEXT,
                text TEXT,
                image TEXT,
                seen INTEGER NOT NULL DEFAULT 0,
                edited INTEGER NOT NULL DEFAULT 0,
                edited_at_ms INTEGER,
                created_at_ms INTEGER NOT NULL,
                CHECK ((receiver_id IS NULL) != (group_id IS NULL))
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS messages_direct ON messages (sender_id, receiver_id, seen)"
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_group ON messages (group_id, created_at_ms)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS message_seen_by (
                message_id TEXT NOT NULL REFERENCES messages (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                PRIMARY KEY (message_id, user_id)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                avatar TEXT NOT NULL DEFAULT '',
                creator_id TEXT NOT NULL,
                last_message_id TEXT,
                created_at_ms INTEGER NOT NULL,
                updated_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL REFERENCES chat_groups (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                is_admin INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (group_id, user_id)
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS group_members_user ON group_members (user_id)")
