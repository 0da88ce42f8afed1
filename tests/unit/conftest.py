"""Unit test fixtures: cache resets and a fully wired engine over a temp database."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from task_acceptance_service.config import clear_settings_cache
from task_acceptance_service.core.state import reset_app_state
from task_acceptance_service.services.acceptance_ledger import AcceptanceLedger
from task_acceptance_service.services.arbitration_engine import ArbitrationEngine
from task_acceptance_service.services.conversation_binder import ConversationBinder
from task_acceptance_service.services.database import Database
from task_acceptance_service.services.notification_emitter import NotificationEmitter
from task_acceptance_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

OWNER_ID = "u-owner"
ACCEPTOR_1 = "u-acceptor-1"
ACCEPTOR_2 = "u-acceptor-2"
ACCEPTOR_3 = "u-acceptor-3"


class RecordingSink:
    """MessageSink that keeps every delivered message."""

    def __init__(self) -> None:
        self.delivered: list[dict[str, Any]] = []

    def deliver(self, message: dict[str, Any]) -> None:
        self.delivered.append(message)

    def types(self) -> list[str | None]:
        return [message["notification_type"] for message in self.delivered]


@pytest.fixture(autouse=True)
def _clear_caches() -> Iterator[None]:
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "task-acceptance.db")


@pytest.fixture
def database(db_path: str) -> Iterator[Database]:
    db = Database(db_path, busy_timeout_ms=5000)
    yield db
    db.close()


@pytest.fixture
def task_store(database: Database) -> TaskStore:
    return TaskStore(
        database,
        min_budget=50,
        max_budget=5500,
        min_title_length=3,
        max_title_length=200,
        max_description_length=10000,
    )


@pytest.fixture
def ledger(database: Database, task_store: TaskStore) -> AcceptanceLedger:
    return AcceptanceLedger(database, task_store, max_message_length=2000)


@pytest.fixture
def binder(database: Database, task_store: TaskStore) -> ConversationBinder:
    # task_store first: conversations reference the tasks table
    return ConversationBinder(database)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def emitter(database: Database, binder: ConversationBinder, sink: RecordingSink) -> NotificationEmitter:
    return NotificationEmitter(database, binder, sink, max_chat_message_length=5000)


@pytest.fixture
def engine(
    database: Database,
    task_store: TaskStore,
    ledger: AcceptanceLedger,
    binder: ConversationBinder,
    emitter: NotificationEmitter,
) -> ArbitrationEngine:
    return ArbitrationEngine(
        database,
        task_store,
        ledger,
        binder,
        emitter,
        retry_attempts=3,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def open_task(task_store: TaskStore) -> dict[str, Any]:
    """An open task owned by OWNER_ID."""
    return task_store.create(OWNER_ID, "Fix the kitchen sink", 500, "Leaking under the basin")
