"""Chat messages and lifecycle notifications inside task conversations."""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.services.database import now_iso

if TYPE_CHECKING:
    from task_acceptance_service.services.conversation_binder import ConversationBinder
    from task_acceptance_service.services.database import Database
    from task_acceptance_service.services.message_sink import MessageSink

NOTIFICATION_TYPES: frozenset[str] = frozenset(
    {
        "task_acceptance",
        "acceptance_confirmed",
        "acceptance_rejected",
        "task_finished",
        "task_completed",
        "task_cancelled",
    }
)

# Terminal values the embedded status of a task_acceptance notification may move to.
_RESOLVED_NOTIFICATION_STATUSES: frozenset[str] = frozenset({"confirmed", "rejected"})


class NotificationEmitter:
    """
    Writes messages into conversations.

    Messages are append-only; only ``is_read`` and the embedded status of
    an acceptance notification ever change. Each new message is handed to
    the sink after the enclosing unit of work commits.
    """

    _SELECT_SQL = (
        "SELECT message_id, conversation_id, sender_id, content, created_at, is_read, "
        "is_system_message, is_notification, notification_type, notification_data, "
        "acceptance_id FROM messages"
    )

    def __init__(
        self,
        database: Database,
        binder: ConversationBinder,
        sink: MessageSink,
        *,
        max_chat_message_length: int,
    ) -> None:
        self._database = database
        self._binder = binder
        self._sink = sink
        self._max_chat_message_length = max_chat_message_length
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(conversation_id),
                sender_id TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                is_system_message INTEGER NOT NULL DEFAULT 0,
                is_notification INTEGER NOT NULL DEFAULT 0,
                notification_type TEXT,
                notification_data TEXT,
                acceptance_id TEXT
            );

            CREATE INDEX IF NOT EXISTS ix_messages_conversation
                ON messages(conversation_id, created_at);
            CREATE UNIQUE INDEX IF NOT EXISTS ux_messages_acceptance_notification
                ON messages(acceptance_id) WHERE notification_type = 'task_acceptance';
            """
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> dict[str, Any]:
        raw_data = row["notification_data"]
        return {
            "message_id": row["message_id"],
            "conversation_id": row["conversation_id"],
            "sender_id": row["sender_id"],
            "content": row["content"],
            "created_at": row["created_at"],
            "is_read": bool(row["is_read"]),
            "is_system_message": bool(row["is_system_message"]),
            "is_notification": bool(row["is_notification"]),
            "notification_type": row["notification_type"],
            "notification_data": json.loads(raw_data) if raw_data is not None else None,
            "acceptance_id": row["acceptance_id"],
        }

    def _insert(self, db: sqlite3.Connection, message: dict[str, Any]) -> None:
        raw_data = message["notification_data"]
        db.execute(
            "INSERT INTO messages ("
            "message_id, conversation_id, sender_id, content, created_at, is_read, "
            "is_system_message, is_notification, notification_type, notification_data, acceptance_id"
            ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message["message_id"],
                message["conversation_id"],
                message["sender_id"],
                message["content"],
                message["created_at"],
                int(message["is_read"]),
                int(message["is_system_message"]),
                int(message["is_notification"]),
                message["notification_type"],
                json.dumps(raw_data) if raw_data is not None else None,
                message["acceptance_id"],
            ),
        )
        self._binder.record_last_message(message["conversation_id"], message["content"], message["created_at"])
        self._database.after_commit(lambda: self._sink.deliver(message))

    @staticmethod
    def _new_message(
        conversation_id: str,
        sender_id: str,
        content: str,
        *,
        is_system_message: bool,
        notification_type: str | None,
        notification_data: dict[str, Any] | None,
        acceptance_id: str | None = None,
    ) -> dict[str, Any]:
        return {
            "message_id": f"msg-{uuid.uuid4()}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "created_at": now_iso(),
            "is_read": False,
            "is_system_message": is_system_message,
            "is_notification": notification_type is not None,
            "notification_type": notification_type,
            "notification_data": notification_data,
            "acceptance_id": acceptance_id,
        }

    def get_message(self, message_id: str) -> dict[str, Any]:
        """
        Fetch a message by ID.

        Raises:
            ServiceError: MESSAGE_NOT_FOUND
        """
        with self._database.connection() as db:
            row = db.execute(self._SELECT_SQL + " WHERE message_id = ?", (message_id,)).fetchone()
        if row is None:
            raise ServiceError("MESSAGE_NOT_FOUND", "Message not found", 404, {"message_id": message_id})
        return self._row_to_message(row)

    def post_system_message(
        self,
        conversation_id: str,
        content: str,
        sender_id: str,
        notification_type: str | None = None,
        notification_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a system message, optionally typed as a notification."""
        if notification_type is not None and notification_type not in NOTIFICATION_TYPES:
            msg = f"Unknown notification type: {notification_type}"
            raise ValueError(msg)

        message = self._new_message(
            conversation_id,
            sender_id,
            content,
            is_system_message=True,
            notification_type=notification_type,
            notification_data=notification_data,
        )
        with self._database.transaction() as db:
            self._insert(db, message)
        return message

    def find_acceptance_notification(self, acceptance_id: str) -> dict[str, Any] | None:
        """The task_acceptance notification written for an acceptance, or None."""
        with self._database.connection() as db:
            row = db.execute(
                self._SELECT_SQL + " WHERE acceptance_id = ? AND notification_type = 'task_acceptance'",
                (acceptance_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def post_acceptance_notification(
        self,
        conversation_id: str,
        acceptor_id: str,
        task_id: str,
        task_title: str,
        acceptance_id: str,
    ) -> dict[str, Any]:
        """
        Tell the owner that an applicant accepted their task.

        Posting twice for the same acceptance returns the first notification.
        """
        with self._database.transaction() as db:
            existing = self.find_acceptance_notification(acceptance_id)
            if existing is not None:
                return existing

            message = self._new_message(
                conversation_id,
                acceptor_id,
                f"New acceptance for '{task_title}'",
                is_system_message=False,
                notification_type="task_acceptance",
                notification_data={
                    "task_id": task_id,
                    "task_title": task_title,
                    "acceptance_id": acceptance_id,
                    "acceptor_id": acceptor_id,
                    "status": "pending",
                },
                acceptance_id=acceptance_id,
            )
            try:
                self._insert(db, message)
            except sqlite3.IntegrityError:
                winner = self.find_acceptance_notification(acceptance_id)
                if winner is None:
                    raise
                return winner
            return message

    def update_acceptance_notification_status(self, message_id: str, new_status: str) -> dict[str, Any]:
        """
        Move an acceptance notification's status from pending to ``new_status``.

        A notification that is already resolved is returned unchanged.

        Raises:
            ServiceError: VALIDATION_ERROR for a status other than confirmed or rejected
            ServiceError: MESSAGE_NOT_FOUND
        """
        if new_status not in _RESOLVED_NOTIFICATION_STATUSES:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Notification status must be 'confirmed' or 'rejected'",
                400,
                {"status": new_status},
            )
        with self._database.transaction() as db:
            db.execute(
                "UPDATE messages SET notification_data = json_set(notification_data, '$.status', ?) "
                "WHERE message_id = ? AND notification_type = 'task_acceptance' "
                "AND json_extract(notification_data, '$.status') = 'pending'",
                (new_status, message_id),
            )
            return self.get_message(message_id)

    def send_message(self, conversation_id: str, sender_id: str, content: str) -> dict[str, Any]:
        """
        Append a chat message from a participant.

        Raises:
            ServiceError: VALIDATION_ERROR for empty or oversized content
            ServiceError: CONVERSATION_NOT_FOUND
            ServiceError: NOT_PARTICIPANT
        """
        if not isinstance(content, str) or len(content.strip()) == 0:
            raise ServiceError("VALIDATION_ERROR", "Message content must not be empty", 400, {})
        if len(content) > self._max_chat_message_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Message must not exceed {self._max_chat_message_length} characters",
                400,
                {},
            )

        with self._database.transaction() as db:
            self._require_participant(conversation_id, sender_id)
            message = self._new_message(
                conversation_id,
                sender_id,
                content,
                is_system_message=False,
                notification_type=None,
                notification_data=None,
            )
            self._insert(db, message)
        return message

    def _require_participant(self, conversation_id: str, user_id: str) -> None:
        self._binder.get(conversation_id)
        if not self._binder.is_participant(conversation_id, user_id):
            raise ServiceError(
                "NOT_PARTICIPANT",
                "Only conversation participants can do this",
                403,
                {"conversation_id": conversation_id},
            )

    def list_messages(self, conversation_id: str, reader_id: str) -> list[dict[str, Any]]:
        """Messages of a conversation in the order they were written."""
        self._require_participant(conversation_id, reader_id)
        with self._database.connection() as db:
            rows = db.execute(
                self._SELECT_SQL + " WHERE conversation_id = ? ORDER BY created_at, rowid",
                (conversation_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """Mark every message written by someone else as read. Returns how many changed."""
        with self._database.transaction() as db:
            self._require_participant(conversation_id, reader_id)
            cursor = db.execute(
                "UPDATE messages SET is_read = 1 "
                "WHERE conversation_id = ? AND sender_id <> ? AND is_read = 0",
                (conversation_id, reader_id),
            )
        return int(cursor.rowcount)

    def count_unread(self, conversation_id: str, reader_id: str) -> int:
        with self._database.connection() as db:
            row = db.execute(
                "SELECT COUNT(*) FROM messages "
                "WHERE conversation_id = ? AND sender_id <> ? AND is_read = 0",
                (conversation_id, reader_id),
            ).fetchone()
        return int(row[0]) if row is not None else 0
