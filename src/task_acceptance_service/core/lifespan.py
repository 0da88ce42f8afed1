"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_acceptance_service.clients.identity_client import IdentityClient
from task_acceptance_service.config import get_settings
from task_acceptance_service.core.state import init_app_state
from task_acceptance_service.logging import get_logger, setup_logging
from task_acceptance_service.services.acceptance_ledger import AcceptanceLedger
from task_acceptance_service.services.arbitration_engine import ArbitrationEngine
from task_acceptance_service.services.conversation_binder import ConversationBinder
from task_acceptance_service.services.database import Database
from task_acceptance_service.services.message_sink import LoggingMessageSink
from task_acceptance_service.services.notification_emitter import NotificationEmitter
from task_acceptance_service.services.task_store import TaskStore
from task_acceptance_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from task_acceptance_service.config import Settings


def build_engine(settings: Settings) -> ArbitrationEngine:
    """Wire the stores and the engine over one shared database."""
    database = Database(settings.database.path, settings.database.busy_timeout_ms)
    task_store = TaskStore(
        database,
        min_budget=settings.tasks.min_budget,
        max_budget=settings.tasks.max_budget,
        min_title_length=settings.tasks.min_title_length,
        max_title_length=settings.tasks.max_title_length,
        max_description_length=settings.tasks.max_description_length,
    )
    ledger = AcceptanceLedger(
        database,
        task_store,
        max_message_length=settings.messages.max_acceptance_message_length,
    )
    binder = ConversationBinder(database)
    emitter = NotificationEmitter(
        database,
        binder,
        LoggingMessageSink(),
        max_chat_message_length=settings.messages.max_chat_message_length,
    )
    return ArbitrationEngine(
        database,
        task_store,
        ledger,
        binder,
        emitter,
        retry_attempts=settings.database.retry_attempts,
        retry_backoff_seconds=settings.database.retry_backoff_seconds,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    engine = build_engine(settings)
    state.engine = engine

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client
    state.token_validator = TokenValidator(identity_client=identity_client)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "identity_base_url": settings.identity.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    engine.close()
    await identity_client.close()
