"""Shared SQLite connection with unit-of-work transactions."""

from __future__ import annotations

import contextlib
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def is_storage_failure(exc: BaseException) -> bool:
    """Whether ``exc`` means the store itself cannot be used right now."""
    if isinstance(exc, sqlite3.OperationalError):
        return True
    return isinstance(exc, sqlite3.ProgrammingError) and "closed" in str(exc).lower()


def storage_unavailable(exc: sqlite3.Error) -> ServiceError:
    """Build the retryable error raised for any storage-level failure."""
    return ServiceError(
        "STORAGE_UNAVAILABLE",
        "Storage is temporarily unavailable",
        503,
        {"reason": str(exc)},
    )


class Database:
    """
    One SQLite connection shared by every store of the service.

    ``transaction()`` is the unit of work: the outermost call issues
    ``BEGIN IMMEDIATE`` and commits or rolls back; nested calls join it.
    The RLock serialises units of work inside the process, SQLite's write
    lock serialises them across processes.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int) -> None:
        self._lock = RLock()
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []
        self._logger = get_logger(__name__)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside a unit of work."""
        with self._lock:
            return self._depth > 0

    def executescript(self, script: str) -> None:
        """Run a DDL script outside any unit of work."""
        with self._lock:
            try:
                self._db.executescript(script)
            except sqlite3.Error as exc:
                if is_storage_failure(exc):
                    raise storage_unavailable(exc) from exc
                raise

    @contextlib.contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection for reads, mapping storage failures."""
        with self._lock:
            try:
                yield self._db
            except sqlite3.Error as exc:
                if is_storage_failure(exc):
                    raise storage_unavailable(exc) from exc
                raise

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed block as one atomic unit of work.

        Any exception rolls back every write made since the outermost
        ``transaction()`` and discards pending after-commit callbacks.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._db
                finally:
                    self._depth -= 1
                return

            try:
                self._db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                if is_storage_failure(exc):
                    raise storage_unavailable(exc) from exc
                raise

            self._depth = 1
            try:
                yield self._db
                self._db.execute("COMMIT")
            except BaseException as exc:
                self._depth = 0
                self._after_commit.clear()
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if is_storage_failure(exc):
                    raise storage_unavailable(exc) from exc
                raise

            self._depth = 0
            callbacks = list(self._after_commit)
            self._after_commit.clear()

        for callback in callbacks:
            self._run_callback(callback)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """
        Defer ``callback`` until the current unit of work commits.

        Outside a unit of work the callback runs immediately.
        """
        with self._lock:
            if self._depth > 0:
                self._after_commit.append(callback)
                return
        self._run_callback(callback)

    def _run_callback(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            self._logger.exception("After-commit callback failed")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
