"""Delivery collaborator for committed messages."""

from __future__ import annotations

from typing import Any, Protocol

from task_acceptance_service.logging import get_logger


class MessageSink(Protocol):
    """Receives every message once the unit of work that wrote it has committed."""

    def deliver(self, message: dict[str, Any]) -> None: ...


class LoggingMessageSink:
    """Default sink: records each delivery in the service log."""

    def __init__(self) -> None:
        self._logger = get_logger(__name__)

    def deliver(self, message: dict[str, Any]) -> None:
        self._logger.info(
            "Message delivered",
            extra={
                "message_id": message["message_id"],
                "conversation_id": message["conversation_id"],
                "notification_type": message["notification_type"],
            },
        )
