"""One conversation per task, shared by its owner and applicants."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.services.database import now_iso

if TYPE_CHECKING:
    from collections.abc import Iterable

    from task_acceptance_service.services.database import Database


class ConversationBinder:
    """Binds each task to a single conversation and tracks who is in it."""

    _COLUMNS: tuple[str, ...] = (
        "conversation_id",
        "task_id",
        "created_at",
        "updated_at",
        "last_message",
        "last_message_at",
    )
    _SELECT_SQL = (
        "SELECT conversation_id, task_id, created_at, updated_at, last_message, "
        "last_message_at FROM conversations"
    )

    def __init__(self, database: Database) -> None:
        self._database = database
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL UNIQUE REFERENCES tasks(task_id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_message TEXT,
                last_message_at TEXT
            );

            CREATE TABLE IF NOT EXISTS conversation_participants (
                conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id),
                user_id TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                PRIMARY KEY (conversation_id, user_id)
            );

            CREATE INDEX IF NOT EXISTS ix_participants_user
                ON conversation_participants(user_id);
            """
        )

    def _participants(self, db: sqlite3.Connection, conversation_id: str) -> list[str]:
        rows = db.execute(
            "SELECT user_id FROM conversation_participants "
            "WHERE conversation_id = ? ORDER BY joined_at, user_id",
            (conversation_id,),
        ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def _row_to_conversation(self, db: sqlite3.Connection, row: sqlite3.Row) -> dict[str, Any]:
        conversation = {column: row[column] for column in self._COLUMNS}
        conversation["participants"] = self._participants(db, row["conversation_id"])
        return conversation

    def _find_row(self, db: sqlite3.Connection, task_id: str) -> sqlite3.Row | None:
        row: sqlite3.Row | None = db.execute(self._SELECT_SQL + " WHERE task_id = ?", (task_id,)).fetchone()
        return row

    def ensure_for_task(self, task_id: str, participant_ids: Iterable[str]) -> dict[str, Any]:
        """
        Get or create the task's conversation and add any missing participants.

        Participants are only ever added, never removed.
        """
        with self._database.transaction() as db:
            row = self._find_row(db, task_id)
            if row is None:
                created_at = now_iso()
                try:
                    db.execute(
                        "INSERT INTO conversations ("
                        "conversation_id, task_id, created_at, updated_at, last_message, last_message_at"
                        ") VALUES (?, ?, ?, ?, NULL, NULL)",
                        (f"conv-{uuid.uuid4()}", task_id, created_at, created_at),
                    )
                except sqlite3.IntegrityError:
                    if self._find_row(db, task_id) is None:
                        raise
                row = self._find_row(db, task_id)
                if row is None:
                    msg = "Conversation row vanished after insert"
                    raise RuntimeError(msg)

            conversation_id = row["conversation_id"]
            joined_at = now_iso()
            for user_id in sorted(set(participant_ids)):
                db.execute(
                    "INSERT OR IGNORE INTO conversation_participants "
                    "(conversation_id, user_id, joined_at) VALUES (?, ?, ?)",
                    (conversation_id, user_id, joined_at),
                )
            return self._row_to_conversation(db, row)

    def find_for_task(self, task_id: str) -> dict[str, Any] | None:
        """The task's conversation, or None if nobody has applied yet."""
        with self._database.connection() as db:
            row = self._find_row(db, task_id)
            if row is None:
                return None
            return self._row_to_conversation(db, row)

    def get(self, conversation_id: str) -> dict[str, Any]:
        """
        Fetch a conversation by ID.

        Raises:
            ServiceError: CONVERSATION_NOT_FOUND
        """
        with self._database.connection() as db:
            row = db.execute(
                self._SELECT_SQL + " WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                raise ServiceError(
                    "CONVERSATION_NOT_FOUND",
                    "Conversation not found",
                    404,
                    {"conversation_id": conversation_id},
                )
            return self._row_to_conversation(db, row)

    def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        """Conversations the user takes part in, most recently active first."""
        with self._database.connection() as db:
            rows = db.execute(
                "SELECT c.conversation_id, c.task_id, c.created_at, c.updated_at, "
                "c.last_message, c.last_message_at FROM conversations c "
                "JOIN conversation_participants p ON p.conversation_id = c.conversation_id "
                "WHERE p.user_id = ? ORDER BY c.updated_at DESC",
                (user_id,),
            ).fetchall()
            return [self._row_to_conversation(db, row) for row in rows]

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        with self._database.connection() as db:
            row = db.execute(
                "SELECT 1 FROM conversation_participants WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
        return row is not None

    def record_last_message(self, conversation_id: str, content: str, at: str) -> None:
        """Update the conversation preview shown in inbox listings."""
        with self._database.transaction() as db:
            db.execute(
                "UPDATE conversations SET last_message = ?, last_message_at = ?, updated_at = ? "
                "WHERE conversation_id = ?",
                (content, at, at, conversation_id),
            )
