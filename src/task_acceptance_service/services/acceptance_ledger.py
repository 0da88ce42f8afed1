"""Durable record of applicants' acceptances of tasks."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.services.database import now_iso

if TYPE_CHECKING:
    from task_acceptance_service.services.database import Database
    from task_acceptance_service.services.task_store import TaskStore

ACCEPTANCE_STATUSES: tuple[str, ...] = ("pending", "confirmed", "rejected")


class AcceptanceLedger:
    """
    Per-applicant acceptances of a task.

    Two partial unique indexes carry the ledger's guarantees: one pending
    row per (task, applicant) and one confirmed row per task. Every status
    change is conditional on the row still being pending.
    """

    _COLUMNS: tuple[str, ...] = (
        "acceptance_id",
        "task_id",
        "acceptor_id",
        "task_owner_id",
        "status",
        "message",
        "response_message",
        "created_at",
        "updated_at",
    )
    _SELECT_SQL = (
        "SELECT acceptance_id, task_id, acceptor_id, task_owner_id, status, message, "
        "response_message, created_at, updated_at FROM acceptances"
    )

    def __init__(self, database: Database, task_store: TaskStore, *, max_message_length: int) -> None:
        self._database = database
        self._task_store = task_store
        self._max_message_length = max_message_length
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS acceptances (
                acceptance_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(task_id),
                acceptor_id TEXT NOT NULL,
                task_owner_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'confirmed', 'rejected')),
                message TEXT,
                response_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (acceptor_id <> task_owner_id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_acceptances_one_pending
                ON acceptances(task_id, acceptor_id) WHERE status = 'pending';
            CREATE UNIQUE INDEX IF NOT EXISTS ux_acceptances_one_confirmed
                ON acceptances(task_id) WHERE status = 'confirmed';
            CREATE INDEX IF NOT EXISTS ix_acceptances_owner ON acceptances(task_owner_id);
            CREATE INDEX IF NOT EXISTS ix_acceptances_acceptor ON acceptances(acceptor_id);
            """
        )

    def _row_to_acceptance(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._COLUMNS}

    def _find_pending(self, db: sqlite3.Connection, task_id: str, acceptor_id: str) -> dict[str, Any] | None:
        row = db.execute(
            self._SELECT_SQL + " WHERE task_id = ? AND acceptor_id = ? AND status = 'pending'",
            (task_id, acceptor_id),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_acceptance(row)

    def insert_if_absent(
        self,
        task_id: str,
        acceptor_id: str,
        message: str | None = None,
    ) -> dict[str, Any]:
        """
        Return the applicant's pending acceptance, creating it if needed.

        Raises:
            ServiceError: VALIDATION_ERROR if the message is too long
            ServiceError: TASK_NOT_FOUND if the task does not exist
            ServiceError: SELF_ACCEPTANCE if the applicant owns the task
            ServiceError: ALREADY_ASSIGNED if the task already has an assignee
            ServiceError: TASK_NOT_ACCEPTABLE if the task is not open
        """
        if message is not None and len(message) > self._max_message_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Message must not exceed {self._max_message_length} characters",
                400,
                {},
            )

        with self._database.transaction() as db:
            task = self._task_store.get(task_id)
            if task["created_by"] == acceptor_id:
                raise ServiceError(
                    "SELF_ACCEPTANCE",
                    "Task owner cannot accept their own task",
                    403,
                    {"task_id": task_id},
                )
            if task["assigned_to"] is not None:
                raise ServiceError(
                    "ALREADY_ASSIGNED",
                    "Task is already assigned",
                    409,
                    {"task_id": task_id},
                )
            if task["status"] != "open":
                raise ServiceError(
                    "TASK_NOT_ACCEPTABLE",
                    f"Task is '{task['status']}' and no longer accepts applicants",
                    409,
                    {"task_id": task_id, "status": task["status"]},
                )

            existing = self._find_pending(db, task_id, acceptor_id)
            if existing is not None:
                return existing

            acceptance_id = f"acc-{uuid.uuid4()}"
            created_at = now_iso()
            acceptance: dict[str, Any] = {
                "acceptance_id": acceptance_id,
                "task_id": task_id,
                "acceptor_id": acceptor_id,
                "task_owner_id": task["created_by"],
                "status": "pending",
                "message": message,
                "response_message": None,
                "created_at": created_at,
                "updated_at": created_at,
            }
            try:
                db.execute(
                    "INSERT INTO acceptances ("
                    "acceptance_id, task_id, acceptor_id, task_owner_id, status, message, "
                    "response_message, created_at, updated_at"
                    ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    tuple(acceptance[column] for column in self._COLUMNS),
                )
            except sqlite3.IntegrityError:
                winner = self._find_pending(db, task_id, acceptor_id)
                if winner is None:
                    raise
                return winner
            return acceptance

    def find(self, acceptance_id: str) -> dict[str, Any] | None:
        """Fetch an acceptance by ID, or None."""
        with self._database.connection() as db:
            row = db.execute(self._SELECT_SQL + " WHERE acceptance_id = ?", (acceptance_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_acceptance(row)

    def get(self, acceptance_id: str) -> dict[str, Any]:
        """
        Fetch an acceptance by ID.

        Raises:
            ServiceError: ACCEPTANCE_NOT_FOUND
        """
        acceptance = self.find(acceptance_id)
        if acceptance is None:
            raise ServiceError(
                "ACCEPTANCE_NOT_FOUND",
                "Acceptance not found",
                404,
                {"acceptance_id": acceptance_id},
            )
        return acceptance

    def _select(self, where: str, params: tuple[object, ...], order: str = "created_at ASC") -> list[dict[str, Any]]:
        with self._database.connection() as db:
            rows = db.execute(self._SELECT_SQL + " WHERE " + where + " ORDER BY " + order, params).fetchall()
        return [self._row_to_acceptance(row) for row in rows]

    def list_pending(self, task_id: str) -> list[dict[str, Any]]:
        """Pending acceptances of a task, oldest first."""
        return self._select("task_id = ? AND status = 'pending'", (task_id,))

    def list_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """All acceptances of a task, oldest first."""
        return self._select("task_id = ?", (task_id,))

    def list_for_owner(self, owner_id: str) -> list[dict[str, Any]]:
        """Acceptances received on tasks owned by ``owner_id``, newest first."""
        return self._select("task_owner_id = ?", (owner_id,), order="created_at DESC")

    def list_for_acceptor(self, acceptor_id: str) -> list[dict[str, Any]]:
        """Acceptances submitted by ``acceptor_id``, newest first."""
        return self._select("acceptor_id = ?", (acceptor_id,), order="created_at DESC")

    def has_pending(self, task_id: str) -> bool:
        with self._database.connection() as db:
            row = db.execute(
                "SELECT 1 FROM acceptances WHERE task_id = ? AND status = 'pending' LIMIT 1",
                (task_id,),
            ).fetchone()
        return row is not None

    def pending_summary(self, owner_id: str) -> list[dict[str, Any]]:
        """Per-task pending counts for an owner, most recent application first."""
        with self._database.connection() as db:
            rows = db.execute(
                "SELECT a.task_id AS task_id, t.title AS task_title, "
                "COUNT(*) AS pending_count, MAX(a.created_at) AS latest_at "
                "FROM acceptances a JOIN tasks t ON t.task_id = a.task_id "
                "WHERE a.task_owner_id = ? AND a.status = 'pending' "
                "GROUP BY a.task_id, t.title ORDER BY latest_at DESC",
                (owner_id,),
            ).fetchall()
        return [
            {
                "task_id": row["task_id"],
                "task_title": row["task_title"],
                "pending_count": int(row["pending_count"]),
                "latest_at": row["latest_at"],
            }
            for row in rows
        ]

    def count_by_status(self) -> dict[str, int]:
        """Count acceptances grouped by status. Every status is present, defaulting to 0."""
        counts: dict[str, int] = dict.fromkeys(ACCEPTANCE_STATUSES, 0)
        with self._database.connection() as db:
            rows = db.execute("SELECT status, COUNT(*) FROM acceptances GROUP BY status").fetchall()
        for row in rows:
            counts[str(row[0])] = int(row[1])
        return counts

    def _resolve(self, acceptance_id: str, new_status: str, response_message: str | None) -> dict[str, Any]:
        with self._database.transaction() as db:
            try:
                cursor = db.execute(
                    "UPDATE acceptances SET status = ?, response_message = ?, updated_at = ? "
                    "WHERE acceptance_id = ? AND status = 'pending'",
                    (new_status, response_message, now_iso(), acceptance_id),
                )
            except sqlite3.IntegrityError as exc:
                raise ServiceError(
                    "ALREADY_ASSIGNED",
                    "Another acceptance of this task is already confirmed",
                    409,
                    {"acceptance_id": acceptance_id},
                ) from exc

            if cursor.rowcount == 0:
                current = self.get(acceptance_id)
                raise ServiceError(
                    "ALREADY_RESOLVED",
                    f"Acceptance is already {current['status']}",
                    409,
                    {"acceptance_id": acceptance_id, "status": current["status"]},
                )
            return self.get(acceptance_id)

    def confirm(self, acceptance_id: str, response_message: str | None = None) -> dict[str, Any]:
        """
        Mark a pending acceptance as confirmed.

        Raises:
            ServiceError: ACCEPTANCE_NOT_FOUND, ALREADY_RESOLVED, ALREADY_ASSIGNED
        """
        return self._resolve(acceptance_id, "confirmed", response_message)

    def reject(self, acceptance_id: str, response_message: str | None = None) -> dict[str, Any]:
        """
        Mark a pending acceptance as rejected.

        Raises:
            ServiceError: ACCEPTANCE_NOT_FOUND, ALREADY_RESOLVED
        """
        return self._resolve(acceptance_id, "rejected", response_message)

    def reject_all_except(
        self,
        task_id: str,
        keep_acceptance_id: str | None,
        response_message: str | None = None,
    ) -> int:
        """Reject every pending acceptance of a task other than ``keep_acceptance_id``."""
        query = (
            "UPDATE acceptances SET status = 'rejected', response_message = ?, updated_at = ? "
            "WHERE task_id = ? AND status = 'pending'"
        )
        params: list[object] = [response_message, now_iso(), task_id]
        if keep_acceptance_id is not None:
            query += " AND acceptance_id <> ?"
            params.append(keep_acceptance_id)

        with self._database.transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)
