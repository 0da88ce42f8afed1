"""Task lifecycle orchestration: acceptance, arbitration and completion."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, TypeVar

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.logging import get_logger
from task_acceptance_service.services.database import now_iso

if TYPE_CHECKING:
    from collections.abc import Callable

    from task_acceptance_service.services.acceptance_ledger import AcceptanceLedger
    from task_acceptance_service.services.conversation_binder import ConversationBinder
    from task_acceptance_service.services.database import Database
    from task_acceptance_service.services.notification_emitter import NotificationEmitter
    from task_acceptance_service.services.task_store import TaskStore

T = TypeVar("T")

DECISIONS: frozenset[str] = frozenset({"confirmed", "rejected"})
ACCEPTANCE_ROLES: frozenset[str] = frozenset({"owner", "acceptor"})

SIBLING_REJECTION_MESSAGE = "Another applicant was selected for this task"
CANCELLATION_REJECTION_MESSAGE = "The task was cancelled"


class ArbitrationEngine:
    """
    Coordinates the stores for every task lifecycle operation.

    Each public mutating operation runs as a single unit of work: either
    every write it makes commits, or none does. The caller's identity is a
    parameter of each operation; the engine keeps no per-caller state.

    State machine per task::

        open -> assigned -> finished -> completed
        open -> cancelled
        assigned -> cancelled
    """

    def __init__(
        self,
        database: Database,
        task_store: TaskStore,
        ledger: AcceptanceLedger,
        binder: ConversationBinder,
        emitter: NotificationEmitter,
        *,
        retry_attempts: int,
        retry_backoff_seconds: float,
    ) -> None:
        self._database = database
        self._task_store = task_store
        self._ledger = ledger
        self._binder = binder
        self._emitter = emitter
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def _retrying(self, operation: str, fn: Callable[[], T], *, transactional: bool) -> T:
        attempt = 1
        while True:
            try:
                if not transactional:
                    return fn()
                with self._database.transaction():
                    return fn()
            except ServiceError as exc:
                if exc.error != "STORAGE_UNAVAILABLE" or attempt >= self._retry_attempts:
                    raise
                self._logger.warning(
                    "Storage unavailable, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._retry_attempts,
                        "reason": exc.details.get("reason"),
                    },
                )
                time.sleep(self._retry_backoff_seconds * attempt)
                attempt += 1

    def _unit_of_work(self, operation: str, fn: Callable[[], T]) -> T:
        return self._retrying(operation, fn, transactional=True)

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        return self._retrying(operation, fn, transactional=False)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        owner_id: str,
        title: str,
        budget: float,
        description: str = "",
    ) -> dict[str, Any]:
        """Post a new open task."""
        task = self._unit_of_work(
            "create_task",
            lambda: self._task_store.create(owner_id, title, budget, description),
        )
        self._logger.info(
            "Task created",
            extra={"task_id": task["task_id"], "owner_id": owner_id, "budget": budget},
        )
        return task

    def get_task(self, task_id: str) -> dict[str, Any]:
        return self._read("get_task", lambda: self._task_store.get(task_id))

    def list_tasks(
        self,
        status: str | None = None,
        created_by: str | None = None,
        assigned_to: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Tasks newest first, each flagged with whether applicants are waiting on it."""

        def _list() -> list[dict[str, Any]]:
            tasks = self._task_store.list_tasks(status, created_by, assigned_to, limit, offset)
            return [
                {**task, "has_pending_acceptances": self._ledger.has_pending(task["task_id"])}
                for task in tasks
            ]

        return self._read("list_tasks", _list)

    def update_task(self, task_id: str, caller_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Owner edits the title, description or budget of an open task.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATE: task is not open
        3. NOT_OWNER: caller does not own the task
        4. VALIDATION_ERROR: nothing to change or a bad value
        """
        return self._unit_of_work("update_task", lambda: self._update_task(task_id, caller_id, fields))

    def _update_task(self, task_id: str, caller_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        task = self._task_store.get(task_id)
        self._require_status(task, "open")
        self._require_owner(task, caller_id, "Only the task owner can edit the task")

        updated = self._task_store.update_details(task_id, fields)

        self._logger.info(
            "Task updated",
            extra={"task_id": task_id, "owner_id": caller_id, "fields": sorted(fields)},
        )
        return {"ok": True, "task": updated}

    def user_task_counts(self, user_id: str) -> dict[str, Any]:
        """Tasks a user has posted and taken on."""
        counts = self._read("user_task_counts", lambda: self._task_store.count_tasks_for_user(user_id))
        return {"user_id": user_id, **counts}

    # ------------------------------------------------------------------
    # Accept
    # ------------------------------------------------------------------

    def accept(self, task_id: str, acceptor_id: str, message: str | None = None) -> dict[str, Any]:
        """
        Apply for an open task.

        Retrying with the same arguments returns the same acceptance and
        conversation and never posts a second notification. Once the
        caller has been assigned, a retry returns their confirmed acceptance.

        Error precedence:
        1. TASK_NOT_FOUND
        2. TASK_NOT_ACCEPTABLE: task not open or already assigned to someone else
        3. VALIDATION_ERROR: message too long
        4. SELF_ACCEPTANCE: acceptor owns the task
        """
        return self._unit_of_work("accept", lambda: self._accept(task_id, acceptor_id, message))

    def _accept(self, task_id: str, acceptor_id: str, message: str | None) -> dict[str, Any]:
        task = self._task_store.get(task_id)

        if task["assigned_to"] is not None and task["assigned_to"] == acceptor_id:
            return self._own_confirmed_acceptance(task)

        if task["status"] != "open" or task["assigned_to"] is not None:
            raise ServiceError(
                "TASK_NOT_ACCEPTABLE",
                f"Task is '{task['status']}' and no longer accepts applicants",
                409,
                {"task_id": task_id, "status": task["status"]},
            )

        acceptance = self._ledger.insert_if_absent(task_id, acceptor_id, message)
        conversation = self._binder.ensure_for_task(task_id, [task["created_by"], acceptor_id])
        self._emitter.post_acceptance_notification(
            conversation["conversation_id"],
            acceptor_id,
            task_id,
            task["title"],
            acceptance["acceptance_id"],
        )

        self._logger.info(
            "Task accepted",
            extra={
                "task_id": task_id,
                "acceptance_id": acceptance["acceptance_id"],
                "acceptor_id": acceptor_id,
                "conversation_id": conversation["conversation_id"],
            },
        )
        return {
            "acceptance_id": acceptance["acceptance_id"],
            "conversation_id": conversation["conversation_id"],
            "status": acceptance["status"],
        }

    def _own_confirmed_acceptance(self, task: dict[str, Any]) -> dict[str, Any]:
        confirmed = [
            acceptance
            for acceptance in self._ledger.list_for_task(task["task_id"])
            if acceptance["status"] == "confirmed" and acceptance["acceptor_id"] == task["assigned_to"]
        ]
        conversation = self._binder.find_for_task(task["task_id"])
        if len(confirmed) == 0 or conversation is None:
            raise ServiceError(
                "TASK_NOT_ACCEPTABLE",
                f"Task is '{task['status']}' and no longer accepts applicants",
                409,
                {"task_id": task["task_id"], "status": task["status"]},
            )
        return {
            "acceptance_id": confirmed[0]["acceptance_id"],
            "conversation_id": conversation["conversation_id"],
            "status": "confirmed",
        }

    # ------------------------------------------------------------------
    # Respond
    # ------------------------------------------------------------------

    def respond(
        self,
        acceptance_id: str,
        decision: str,
        caller_id: str,
        response_message: str | None = None,
    ) -> dict[str, Any]:
        """
        Confirm or reject an applicant.

        Confirming assigns the task, rejects every other pending applicant
        and notifies each of them, all in one unit of work.

        Error precedence:
        1. VALIDATION_ERROR: decision is not 'confirmed' or 'rejected'
        2. ACCEPTANCE_NOT_FOUND
        3. NOT_OWNER: caller does not own the task
        4. ALREADY_ASSIGNED: another applicant holds the task
        5. ALREADY_RESOLVED: the acceptance was already decided otherwise
        6. INVALID_STATE: the task is no longer open
        """
        if decision not in DECISIONS:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Decision must be 'confirmed' or 'rejected'",
                400,
                {"decision": decision},
            )
        return self._unit_of_work(
            "respond",
            lambda: self._respond(acceptance_id, decision, caller_id, response_message),
        )

    def _respond(
        self,
        acceptance_id: str,
        decision: str,
        caller_id: str,
        response_message: str | None,
    ) -> dict[str, Any]:
        acceptance = self._ledger.get(acceptance_id)
        task = self._task_store.get(acceptance["task_id"])

        if task["created_by"] != caller_id:
            raise ServiceError(
                "NOT_OWNER",
                "Only the task owner can respond to acceptances",
                403,
                {"task_id": task["task_id"]},
            )

        if acceptance["status"] != "pending":
            return self._respond_resolved(acceptance, task, decision, caller_id)
        if decision == "rejected":
            return self._reject(acceptance, task, caller_id, response_message)
        return self._confirm(acceptance, task, caller_id, response_message)

    def _respond_resolved(
        self,
        acceptance: dict[str, Any],
        task: dict[str, Any],
        decision: str,
        caller_id: str,
    ) -> dict[str, Any]:
        if acceptance["status"] == decision:
            if decision == "confirmed":
                self._reject_siblings(task, acceptance["acceptance_id"], caller_id, notify=True)
            return {"ok": True, "acceptance": acceptance, "task": task}

        if decision == "confirmed" and task["assigned_to"] not in (None, acceptance["acceptor_id"]):
            raise ServiceError(
                "ALREADY_ASSIGNED",
                "Task is already assigned to another applicant",
                409,
                {"task_id": task["task_id"], "acceptance_id": acceptance["acceptance_id"]},
            )
        raise ServiceError(
            "ALREADY_RESOLVED",
            f"Acceptance is already {acceptance['status']}",
            409,
            {"acceptance_id": acceptance["acceptance_id"], "status": acceptance["status"]},
        )

    def _reject(
        self,
        acceptance: dict[str, Any],
        task: dict[str, Any],
        caller_id: str,
        response_message: str | None,
    ) -> dict[str, Any]:
        rejected = self._ledger.reject(acceptance["acceptance_id"], response_message)
        self._resolve_notification(rejected["acceptance_id"], "rejected")
        self._post_decision(task, rejected, "acceptance_rejected", caller_id)
        self._logger.info(
            "Acceptance rejected",
            extra={"task_id": task["task_id"], "acceptance_id": rejected["acceptance_id"]},
        )
        return {"ok": True, "acceptance": rejected, "task": task}

    def _confirm(
        self,
        acceptance: dict[str, Any],
        task: dict[str, Any],
        caller_id: str,
        response_message: str | None,
    ) -> dict[str, Any]:
        task_id = task["task_id"]
        try:
            assigned = self._task_store.transition(
                task_id,
                "open",
                "assigned",
                {"assigned_to": acceptance["acceptor_id"], "assigned_at": now_iso()},
            )
        except ServiceError as exc:
            if exc.error != "CONFLICT":
                raise
            current = self._task_store.get(task_id)
            if current["assigned_to"] is not None:
                self._logger.warning(
                    "Lost assignment race",
                    extra={"task_id": task_id, "acceptance_id": acceptance["acceptance_id"]},
                )
                raise ServiceError(
                    "ALREADY_ASSIGNED",
                    "Task is already assigned to another applicant",
                    409,
                    {"task_id": task_id, "acceptance_id": acceptance["acceptance_id"]},
                ) from exc
            raise ServiceError(
                "INVALID_STATE",
                f"Task is '{current['status']}' and cannot be assigned",
                409,
                {"task_id": task_id, "status": current["status"]},
            ) from exc

        confirmed = self._ledger.confirm(acceptance["acceptance_id"], response_message)
        self._resolve_notification(confirmed["acceptance_id"], "confirmed")
        self._post_decision(assigned, confirmed, "acceptance_confirmed", caller_id)
        rejected_count = self._reject_siblings(assigned, confirmed["acceptance_id"], caller_id, notify=True)

        self._logger.info(
            "Acceptance confirmed",
            extra={
                "task_id": task_id,
                "acceptance_id": confirmed["acceptance_id"],
                "assigned_to": confirmed["acceptor_id"],
                "rejected_siblings": rejected_count,
            },
        )
        return {"ok": True, "acceptance": confirmed, "task": assigned}

    def _reject_siblings(
        self,
        task: dict[str, Any],
        keep_acceptance_id: str | None,
        actor_id: str,
        *,
        notify: bool,
    ) -> int:
        """Reject every other pending applicant and resolve their notifications."""
        task_id = task["task_id"]
        siblings = [
            acceptance
            for acceptance in self._ledger.list_pending(task_id)
            if acceptance["acceptance_id"] != keep_acceptance_id
        ]
        if len(siblings) == 0:
            return 0

        reason = SIBLING_REJECTION_MESSAGE if keep_acceptance_id is not None else CANCELLATION_REJECTION_MESSAGE
        rejected_count = self._ledger.reject_all_except(task_id, keep_acceptance_id, reason)
        for sibling in siblings:
            self._resolve_notification(sibling["acceptance_id"], "rejected")
            if notify:
                sibling = {**sibling, "status": "rejected", "response_message": reason}
                self._post_decision(task, sibling, "acceptance_rejected", actor_id)
        return rejected_count

    def _resolve_notification(self, acceptance_id: str, status: str) -> None:
        notification = self._emitter.find_acceptance_notification(acceptance_id)
        if notification is not None:
            self._emitter.update_acceptance_notification_status(notification["message_id"], status)

    def _post_decision(
        self,
        task: dict[str, Any],
        acceptance: dict[str, Any],
        notification_type: str,
        actor_id: str,
    ) -> None:
        conversation = self._binder.ensure_for_task(
            task["task_id"], [task["created_by"], acceptance["acceptor_id"]]
        )
        if notification_type == "acceptance_confirmed":
            content = f"Your acceptance of '{task['title']}' was confirmed"
        else:
            content = f"Your acceptance of '{task['title']}' was declined"
        self._emitter.post_system_message(
            conversation["conversation_id"],
            content,
            actor_id,
            notification_type,
            {
                "task_id": task["task_id"],
                "task_title": task["title"],
                "acceptance_id": acceptance["acceptance_id"],
                "acceptor_id": acceptance["acceptor_id"],
                "task_owner_id": task["created_by"],
                "actor_id": actor_id,
                "status": acceptance["status"],
            },
        )

    # ------------------------------------------------------------------
    # Finish / complete / cancel
    # ------------------------------------------------------------------

    def mark_finished(self, task_id: str, caller_id: str) -> dict[str, Any]:
        """
        Assignee reports the work as done.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATE: task is not assigned
        3. NOT_ASSIGNEE: caller is not the assignee
        """
        return self._unit_of_work("mark_finished", lambda: self._mark_finished(task_id, caller_id))

    def _mark_finished(self, task_id: str, caller_id: str) -> dict[str, Any]:
        task = self._task_store.get(task_id)
        self._require_status(task, "assigned")
        if task["assigned_to"] != caller_id:
            raise ServiceError(
                "NOT_ASSIGNEE",
                "Only the assignee can mark the task finished",
                403,
                {"task_id": task_id},
            )

        finished = self._task_store.transition(task_id, "assigned", "finished", {"finished_at": now_iso()})
        self._post_lifecycle(
            finished,
            "task_finished",
            caller_id,
            f"'{finished['title']}' was marked as finished",
        )
        self._logger.info("Task finished", extra={"task_id": task_id, "assignee_id": caller_id})
        return {"ok": True, "task": finished}

    def confirm_complete(self, task_id: str, caller_id: str) -> dict[str, Any]:
        """
        Owner confirms finished work.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATE: task is not finished
        3. NOT_OWNER: caller does not own the task
        """
        return self._unit_of_work("confirm_complete", lambda: self._confirm_complete(task_id, caller_id))

    def _confirm_complete(self, task_id: str, caller_id: str) -> dict[str, Any]:
        task = self._task_store.get(task_id)
        self._require_status(task, "finished")
        self._require_owner(task, caller_id, "Only the task owner can confirm completion")

        completed = self._task_store.transition(
            task_id, "finished", "completed", {"completion_date": now_iso()}
        )
        self._post_lifecycle(
            completed,
            "task_completed",
            caller_id,
            f"'{completed['title']}' was confirmed as completed",
        )
        self._logger.info("Task completed", extra={"task_id": task_id, "owner_id": caller_id})
        return {"ok": True, "task": completed}

    def cancel_task(self, task_id: str, caller_id: str, reason: str | None = None) -> dict[str, Any]:
        """
        Owner withdraws a task that is open or assigned.

        Every pending applicant is rejected and the assignment is cleared.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATE: task is not open or assigned
        3. NOT_OWNER: caller does not own the task
        """
        return self._unit_of_work("cancel_task", lambda: self._cancel_task(task_id, caller_id, reason))

    def _cancel_task(self, task_id: str, caller_id: str, reason: str | None) -> dict[str, Any]:
        task = self._task_store.get(task_id)
        if task["status"] not in ("open", "assigned"):
            raise ServiceError(
                "INVALID_STATE",
                f"Task is '{task['status']}' and cannot be cancelled",
                409,
                {"task_id": task_id, "status": task["status"]},
            )
        self._require_owner(task, caller_id, "Only the task owner can cancel the task")

        cancelled = self._task_store.transition(
            task_id,
            task["status"],
            "cancelled",
            {"assigned_to": None, "cancelled_at": now_iso(), "cancellation_reason": reason},
        )
        rejected_count = self._reject_siblings(cancelled, None, caller_id, notify=False)

        if self._binder.find_for_task(task_id) is not None:
            self._post_lifecycle(
                cancelled,
                "task_cancelled",
                caller_id,
                f"'{cancelled['title']}' was cancelled",
            )
        self._logger.info(
            "Task cancelled",
            extra={
                "task_id": task_id,
                "previous_status": task["status"],
                "rejected_acceptances": rejected_count,
            },
        )
        return {"ok": True, "task": cancelled}

    def _require_status(self, task: dict[str, Any], expected: str) -> None:
        if task["status"] != expected:
            raise ServiceError(
                "INVALID_STATE",
                f"Task is '{task['status']}', expected '{expected}'",
                409,
                {"task_id": task["task_id"], "status": task["status"], "expected_status": expected},
            )

    def _require_owner(self, task: dict[str, Any], caller_id: str, message: str) -> None:
        if task["created_by"] != caller_id:
            raise ServiceError("NOT_OWNER", message, 403, {"task_id": task["task_id"]})

    def _post_lifecycle(
        self,
        task: dict[str, Any],
        notification_type: str,
        actor_id: str,
        content: str,
    ) -> None:
        conversation = self._binder.find_for_task(task["task_id"])
        if conversation is None:
            return
        self._emitter.post_system_message(
            conversation["conversation_id"],
            content,
            actor_id,
            notification_type,
            {
                "task_id": task["task_id"],
                "task_title": task["title"],
                "task_owner_id": task["created_by"],
                "assignee_id": task["assigned_to"],
                "actor_id": actor_id,
                "status": task["status"],
            },
        )

    # ------------------------------------------------------------------
    # Acceptance listings
    # ------------------------------------------------------------------

    def list_task_acceptances(self, task_id: str, caller_id: str) -> list[dict[str, Any]]:
        """Every acceptance of a task; only its owner may look."""

        def _list() -> list[dict[str, Any]]:
            task = self._task_store.get(task_id)
            self._require_owner(task, caller_id, "Only the task owner can list its acceptances")
            return self._ledger.list_for_task(task_id)

        return self._read("list_task_acceptances", _list)

    def list_user_acceptances(self, user_id: str, role: str) -> list[dict[str, Any]]:
        """Acceptances received (role 'owner') or submitted (role 'acceptor') by a user."""
        if role not in ACCEPTANCE_ROLES:
            raise ServiceError(
                "VALIDATION_ERROR",
                "Role must be 'owner' or 'acceptor'",
                400,
                {"role": role},
            )
        if role == "owner":
            return self._read("list_user_acceptances", lambda: self._ledger.list_for_owner(user_id))
        return self._read("list_user_acceptances", lambda: self._ledger.list_for_acceptor(user_id))

    def pending_summary(self, owner_id: str) -> list[dict[str, Any]]:
        return self._read("pending_summary", lambda: self._ledger.pending_summary(owner_id))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def inbox(self, user_id: str) -> list[dict[str, Any]]:
        """
        Everything waiting for a user, newest first.

        Items are tagged by ``kind``: ``acceptance`` for a pending applicant
        on one of the user's tasks, ``conversation`` for a conversation the
        user takes part in.
        """
        return self._read("inbox", lambda: self._inbox(user_id))

    def _inbox(self, user_id: str) -> list[dict[str, Any]]:
        titles: dict[str, str] = {}

        def title_of(task_id: str) -> str:
            if task_id not in titles:
                titles[task_id] = self._task_store.get(task_id)["title"]
            return titles[task_id]

        items: list[dict[str, Any]] = []
        for acceptance in self._ledger.list_for_owner(user_id):
            if acceptance["status"] != "pending":
                continue
            items.append(
                {
                    "kind": "acceptance",
                    "at": acceptance["created_at"],
                    "task_title": title_of(acceptance["task_id"]),
                    "acceptance": acceptance,
                }
            )
        for conversation in self._binder.list_for_user(user_id):
            items.append(
                {
                    "kind": "conversation",
                    "at": conversation["last_message_at"] or conversation["updated_at"],
                    "task_title": title_of(conversation["task_id"]),
                    "unread_count": self._emitter.count_unread(conversation["conversation_id"], user_id),
                    "conversation": conversation,
                }
            )
        items.sort(key=lambda item: item["at"], reverse=True)
        return items

    def read_conversation(self, conversation_id: str, reader_id: str) -> dict[str, Any]:
        """A conversation with its messages; participants only."""

        def _read_conversation() -> dict[str, Any]:
            messages = self._emitter.list_messages(conversation_id, reader_id)
            return {"conversation": self._binder.get(conversation_id), "messages": messages}

        return self._read("read_conversation", _read_conversation)

    def send_message(self, conversation_id: str, sender_id: str, content: str) -> dict[str, Any]:
        return self._unit_of_work(
            "send_message",
            lambda: self._emitter.send_message(conversation_id, sender_id, content),
        )

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        return self._unit_of_work(
            "mark_read",
            lambda: self._emitter.mark_read(conversation_id, reader_id),
        )

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Counts for the health endpoint."""

        def _stats() -> dict[str, Any]:
            return {
                "total_tasks": self._task_store.count_tasks(),
                "tasks_by_status": self._task_store.count_tasks_by_status(),
                "acceptances_by_status": self._ledger.count_by_status(),
            }

        return self._read("get_stats", _stats)

    def close(self) -> None:
        """Close the underlying database."""
        self._database.close()
