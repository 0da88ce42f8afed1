"""Race tests: many callers acting on the same task at once."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import pytest

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.services.acceptance_ledger import AcceptanceLedger
from task_acceptance_service.services.arbitration_engine import ArbitrationEngine
from task_acceptance_service.services.conversation_binder import ConversationBinder
from task_acceptance_service.services.database import Database
from task_acceptance_service.services.message_sink import LoggingMessageSink
from task_acceptance_service.services.notification_emitter import NotificationEmitter
from task_acceptance_service.services.task_store import TaskStore
from tests.unit.conftest import ACCEPTOR_1, OWNER_ID

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

WORKERS = 8


def _engine_on(db_path: str) -> ArbitrationEngine:
    """A second, independent engine over the same database file."""
    database = Database(db_path, busy_timeout_ms=10000)
    task_store = TaskStore(
        database,
        min_budget=50,
        max_budget=5500,
        min_title_length=3,
        max_title_length=200,
        max_description_length=10000,
    )
    ledger = AcceptanceLedger(database, task_store, max_message_length=2000)
    binder = ConversationBinder(database)
    emitter = NotificationEmitter(database, binder, LoggingMessageSink(), max_chat_message_length=5000)
    return ArbitrationEngine(
        database,
        task_store,
        ledger,
        binder,
        emitter,
        retry_attempts=3,
        retry_backoff_seconds=0.01,
    )


@pytest.fixture
def peer_engine(engine: ArbitrationEngine, db_path: str) -> Iterator[ArbitrationEngine]:
    peer = _engine_on(db_path)
    yield peer
    peer.close()


def _race(calls: list[Callable[[], dict[str, Any]]]) -> tuple[list[dict[str, Any]], list[ServiceError]]:
    """Run every call at the same moment; collect successes and ServiceErrors."""
    barrier = threading.Barrier(len(calls))
    successes: list[dict[str, Any]] = []
    failures: list[ServiceError] = []
    guard = threading.Lock()

    def run(call: Callable[[], dict[str, Any]]) -> None:
        barrier.wait()
        try:
            result = call()
        except ServiceError as exc:
            with guard:
                failures.append(exc)
            return
        with guard:
            successes.append(result)

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        for future in [pool.submit(run, call) for call in calls]:
            future.result()
    return successes, failures


@pytest.mark.unit
def test_concurrent_confirms_assign_exactly_once(engine: ArbitrationEngine) -> None:
    task = engine.create_task(OWNER_ID, "Move a sofa", 1200)
    acceptances = [engine.accept(task["task_id"], f"u-applicant-{i}") for i in range(WORKERS)]

    successes, failures = _race(
        [
            (lambda acceptance_id=a["acceptance_id"]: engine.respond(acceptance_id, "confirmed", OWNER_ID))
            for a in acceptances
        ]
    )

    assert len(successes) == 1
    assert len(failures) == WORKERS - 1
    assert {exc.error for exc in failures} == {"ALREADY_ASSIGNED"}

    winner = successes[0]["acceptance"]
    final = engine.get_task(task["task_id"])
    assert final["status"] == "assigned"
    assert final["assigned_to"] == winner["acceptor_id"]
    statuses = [a["status"] for a in engine.list_task_acceptances(task["task_id"], OWNER_ID)]
    assert statuses.count("confirmed") == 1
    assert statuses.count("rejected") == WORKERS - 1


@pytest.mark.unit
def test_concurrent_identical_accepts_are_idempotent(engine: ArbitrationEngine) -> None:
    task = engine.create_task(OWNER_ID, "Water the plants", 60)

    successes, failures = _race(
        [lambda: engine.accept(task["task_id"], ACCEPTOR_1, "On my way") for _ in range(WORKERS)]
    )

    assert failures == []
    assert len({r["acceptance_id"] for r in successes}) == 1
    assert len({r["conversation_id"] for r in successes}) == 1
    assert len(engine.list_task_acceptances(task["task_id"], OWNER_ID)) == 1
    messages = engine.read_conversation(successes[0]["conversation_id"], OWNER_ID)["messages"]
    assert [m["notification_type"] for m in messages] == ["task_acceptance"]


@pytest.mark.unit
def test_confirms_across_connections_assign_exactly_once(
    engine: ArbitrationEngine,
    peer_engine: ArbitrationEngine,
) -> None:
    """Two engines with separate connections to one file still serialise on the task."""
    task = engine.create_task(OWNER_ID, "Clean the garage", 300)
    first = engine.accept(task["task_id"], "u-applicant-a")
    second = peer_engine.accept(task["task_id"], "u-applicant-b")

    successes, failures = _race(
        [
            lambda: engine.respond(first["acceptance_id"], "confirmed", OWNER_ID),
            lambda: peer_engine.respond(second["acceptance_id"], "confirmed", OWNER_ID),
        ]
    )

    assert len(successes) == 1
    assert [exc.error for exc in failures] == ["ALREADY_ASSIGNED"]
    assert peer_engine.get_task(task["task_id"])["assigned_to"] == successes[0]["acceptance"]["acceptor_id"]
    assert engine.list_task_acceptances(task["task_id"], OWNER_ID)[0]["status"] in ("confirmed", "rejected")


@pytest.mark.unit
def test_concurrent_accepts_and_confirm_leave_no_pending_on_assigned_task(engine: ArbitrationEngine) -> None:
    """Applicants racing an owner's confirm either get in first or are refused."""
    task = engine.create_task(OWNER_ID, "Repair a bicycle", 400)
    chosen = engine.accept(task["task_id"], ACCEPTOR_1)

    calls: list[Callable[[], dict[str, Any]]] = [
        lambda: engine.respond(chosen["acceptance_id"], "confirmed", OWNER_ID),
    ]
    calls.extend(
        (lambda acceptor_id=f"u-late-{i}": engine.accept(task["task_id"], acceptor_id))
        for i in range(WORKERS - 1)
    )
    _successes, failures = _race(calls)

    assert {exc.error for exc in failures} <= {"TASK_NOT_ACCEPTABLE"}
    assert engine.get_task(task["task_id"])["assigned_to"] == ACCEPTOR_1
    statuses = [a["status"] for a in engine.list_task_acceptances(task["task_id"], OWNER_ID)]
    assert "pending" not in statuses
    assert statuses.count("confirmed") == 1
