"""SQLite-backed task storage with guarded status transitions."""

from __future__ import annotations

import math
import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.services.database import now_iso

if TYPE_CHECKING:
    from task_acceptance_service.services.database import Database

TASK_STATUSES: tuple[str, ...] = ("open", "assigned", "finished", "completed", "cancelled")

ALLOWED_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("open", "assigned"),
        ("open", "cancelled"),
        ("assigned", "finished"),
        ("assigned", "cancelled"),
        ("finished", "completed"),
    }
)

# Fields an owner may change while the task is still open.
EDITABLE_FIELDS: tuple[str, ...] = ("title", "description", "budget")


def _is_number(value: object) -> bool:
    """Check if value is an int or float (not bool)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TaskStore:
    """
    Durable task records.

    ``transition`` is the only way a task changes status. It is a
    compare-and-swap on the current status, so two writers racing for the
    same change cannot both succeed.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "created_by",
        "title",
        "description",
        "budget",
        "status",
        "assigned_to",
        "created_at",
        "updated_at",
        "assigned_at",
        "finished_at",
        "completion_date",
        "cancelled_at",
        "cancellation_reason",
    )
    _TASK_SELECT_BASE_SQL = (
        "SELECT task_id, created_by, title, description, budget, status, assigned_to, "
        "created_at, updated_at, assigned_at, finished_at, completion_date, cancelled_at, "
        "cancellation_reason FROM tasks"
    )
    _TASK_INSERT_SQL = (
        "INSERT INTO tasks ("
        "task_id, created_by, title, description, budget, status, assigned_to, "
        "created_at, updated_at, assigned_at, finished_at, completion_date, cancelled_at, "
        "cancellation_reason"
        ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    )

    def __init__(
        self,
        database: Database,
        *,
        min_budget: float,
        max_budget: float,
        min_title_length: int,
        max_title_length: int,
        max_description_length: int,
    ) -> None:
        self._database = database
        self._min_budget = min_budget
        self._max_budget = max_budget
        self._min_title_length = min_title_length
        self._max_title_length = max_title_length
        self._max_description_length = max_description_length
        self._init_schema()

    def _init_schema(self) -> None:
        self._database.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                created_by TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                budget REAL NOT NULL CHECK (budget >= 0),
                status TEXT NOT NULL DEFAULT 'open'
                    CHECK (status IN ('open', 'assigned', 'finished', 'completed', 'cancelled')),
                assigned_to TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                assigned_at TEXT,
                finished_at TEXT,
                completion_date TEXT,
                cancelled_at TEXT,
                cancellation_reason TEXT,
                CHECK (assigned_to IS NULL OR assigned_to <> created_by),
                CHECK (
                    (assigned_to IS NOT NULL)
                    = (status IN ('assigned', 'finished', 'completed'))
                )
            );

            CREATE INDEX IF NOT EXISTS ix_tasks_created_by ON tasks(created_by);
            CREATE INDEX IF NOT EXISTS ix_tasks_assigned_to ON tasks(assigned_to);
            """
        )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._TASK_COLUMNS}

    def _validate_new_task(self, title: object, budget: object, description: object) -> None:
        if not isinstance(title, str) or len(title.strip()) == 0:
            raise ServiceError("VALIDATION_ERROR", "Title must be a non-empty string", 400, {})
        if len(title.strip()) < self._min_title_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Title must be at least {self._min_title_length} characters",
                400,
                {},
            )
        if len(title) > self._max_title_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Title must not exceed {self._max_title_length} characters",
                400,
                {},
            )
        if not isinstance(description, str):
            raise ServiceError("VALIDATION_ERROR", "Description must be a string", 400, {})
        if len(description) > self._max_description_length:
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Description must not exceed {self._max_description_length} characters",
                400,
                {},
            )
        if not _is_number(budget) or not math.isfinite(budget):  # type: ignore[arg-type]
            raise ServiceError("VALIDATION_ERROR", "Budget must be a finite number", 400, {})
        if budget < self._min_budget or budget > self._max_budget:  # type: ignore[operator]
            raise ServiceError(
                "VALIDATION_ERROR",
                f"Budget must be between {self._min_budget:g} and {self._max_budget:g}",
                400,
                {"min_budget": self._min_budget, "max_budget": self._max_budget},
            )

    def create(
        self,
        owner_id: str,
        title: str,
        budget: float,
        description: str = "",
    ) -> dict[str, Any]:
        """
        Insert a new open task owned by ``owner_id``.

        Raises:
            ServiceError: VALIDATION_ERROR for a bad title, description or budget
        """
        self._validate_new_task(title, budget, description)

        task_id = f"t-{uuid.uuid4()}"
        created_at = now_iso()
        task_data: dict[str, Any] = {
            "task_id": task_id,
            "created_by": owner_id,
            "title": title.strip(),
            "description": description,
            "budget": budget,
            "status": "open",
            "assigned_to": None,
            "created_at": created_at,
            "updated_at": created_at,
            "assigned_at": None,
            "finished_at": None,
            "completion_date": None,
            "cancelled_at": None,
            "cancellation_reason": None,
        }
        values = tuple(task_data[column] for column in self._TASK_COLUMNS)

        with self._database.transaction() as db:
            db.execute(self._TASK_INSERT_SQL, values)
        return task_data

    def find(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID, or None."""
        with self._database.connection() as db:
            row = db.execute(self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def get(self, task_id: str) -> dict[str, Any]:
        """
        Fetch a task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        task = self.find(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    def transition(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        extra_fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Move a task from ``from_status`` to ``to_status`` if it is still there.

        Raises:
            ServiceError: INVALID_TRANSITION for a pair outside ALLOWED_TRANSITIONS
            ServiceError: TASK_NOT_FOUND if the task does not exist
            ServiceError: CONFLICT if the current status is not ``from_status``
            ServiceError: VALIDATION_ERROR if the new row breaks a task invariant
        """
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot move a task from '{from_status}' to '{to_status}'",
                409,
                {"from_status": from_status, "to_status": to_status},
            )

        updates: dict[str, Any] = dict(extra_fields or {})
        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)
        if "status" in updates or "task_id" in updates:
            msg = "status and task_id cannot be set through extra_fields"
            raise ValueError(msg)
        updates["status"] = to_status
        updates["updated_at"] = now_iso()

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ? AND status = ?"  # nosec B608
        params: list[object] = [*updates.values(), task_id, from_status]

        with self._database.transaction() as db:
            try:
                cursor = db.execute(query, params)
            except sqlite3.IntegrityError as exc:
                raise ServiceError(
                    "VALIDATION_ERROR",
                    "Transition would break a task invariant",
                    400,
                    {"task_id": task_id, "to_status": to_status},
                ) from exc

            if cursor.rowcount == 0:
                current = self.get(task_id)
                raise ServiceError(
                    "CONFLICT",
                    f"Task is '{current['status']}', expected '{from_status}'",
                    409,
                    {
                        "task_id": task_id,
                        "expected_status": from_status,
                        "current_status": current["status"],
                    },
                )
            return self.get(task_id)

    def update_details(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Edit the title, description or budget of a task that is still open.

        The merged record must pass the same checks as a new task. Status
        and assignment are never touched.

        Raises:
            ServiceError: VALIDATION_ERROR for no fields or a bad value
            ServiceError: TASK_NOT_FOUND if the task does not exist
            ServiceError: CONFLICT if the task is no longer open
        """
        if any(column not in EDITABLE_FIELDS for column in fields):
            msg = "Only title, description and budget can be edited"
            raise ValueError(msg)
        if len(fields) == 0:
            raise ServiceError("VALIDATION_ERROR", "Nothing to update", 400, {})

        with self._database.transaction() as db:
            current = self.get(task_id)
            merged = {column: fields.get(column, current[column]) for column in EDITABLE_FIELDS}
            self._validate_new_task(merged["title"], merged["budget"], merged["description"])

            updates: dict[str, Any] = dict(fields)
            if "title" in updates:
                updates["title"] = updates["title"].strip()
            updates["updated_at"] = now_iso()

            set_clause = ", ".join(f"{column} = ?" for column in updates)
            query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ? AND status = 'open'"  # nosec B608
            cursor = db.execute(query, [*updates.values(), task_id])
            if cursor.rowcount == 0:
                latest = self.get(task_id)
                raise ServiceError(
                    "CONFLICT",
                    f"Task is '{latest['status']}', expected 'open'",
                    409,
                    {"task_id": task_id, "expected_status": "open", "current_status": latest["status"]},
                )
            return self.get(task_id)

    def list_tasks(
        self,
        status: str | None,
        created_by: str | None,
        assigned_to: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if created_by is not None:
            clauses.append("created_by = ?")
            params.append(created_by)
        if assigned_to is not None:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None or offset is not None:
            # SQLite only accepts OFFSET after LIMIT; -1 means no limit.
            query += " LIMIT ? OFFSET ?"
            params.append(limit if limit is not None else -1)
            params.append(offset if offset is not None else 0)

        with self._database.connection() as db:
            rows = db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._database.connection() as db:
            row = db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_for_user(self, user_id: str) -> dict[str, int]:
        """How many tasks a user has posted and how many they have taken on."""
        with self._database.connection() as db:
            row = db.execute(
                "SELECT "
                "COALESCE(SUM(CASE WHEN created_by = ? THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN assigned_to = ? THEN 1 ELSE 0 END), 0) "
                "FROM tasks WHERE created_by = ? OR assigned_to = ?",
                (user_id, user_id, user_id, user_id),
            ).fetchone()
        return {"posted": int(row[0]), "taken": int(row[1])}

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status. Every status is present, defaulting to 0."""
        counts: dict[str, int] = dict.fromkeys(TASK_STATUSES, 0)
        with self._database.connection() as db:
            rows = db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        for row in rows:
            counts[str(row[0])] = int(row[1])
        return counts
