"""Service layer components."""

from task_acceptance_service.services.acceptance_ledger import AcceptanceLedger
from task_acceptance_service.services.arbitration_engine import ArbitrationEngine
from task_acceptance_service.services.conversation_binder import ConversationBinder
from task_acceptance_service.services.database import Database
from task_acceptance_service.services.message_sink import LoggingMessageSink, MessageSink
from task_acceptance_service.services.notification_emitter import NotificationEmitter
from task_acceptance_service.services.task_store import TaskStore
from task_acceptance_service.services.token_validator import TokenValidator

__all__ = [
    "AcceptanceLedger",
    "ArbitrationEngine",
    "ConversationBinder",
    "Database",
    "LoggingMessageSink",
    "MessageSink",
    "NotificationEmitter",
    "TaskStore",
    "TokenValidator",
]
