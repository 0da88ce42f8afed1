"""Inbox and conversation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.routers.validation import (
    get_engine,
    require_path_match,
    verified_bearer_payload,
    verified_body_payload,
)
from task_acceptance_service.schemas import (
    ConversationMessagesResponse,
    InboxResponse,
    MarkReadResponse,
    MessageResponse,
)
from task_acceptance_service.services.token_validator import require_fields, require_signer

router = APIRouter()


@router.get("/inbox", response_model=InboxResponse)
async def get_inbox(request: Request) -> dict[str, Any]:
    """Pending applicants and conversations for the caller, newest first."""
    payload = await verified_bearer_payload(request, "get_inbox")
    user_id: str = payload["_signer_id"]

    engine = get_engine()
    items = await run_in_threadpool(engine.inbox, user_id)
    return {"items": items}


@router.get("/conversations/{conversation_id}/messages", response_model=ConversationMessagesResponse)
async def read_messages(conversation_id: str, request: Request) -> dict[str, Any]:
    """A conversation with all its messages. Participants only."""
    payload = await verified_bearer_payload(request, "read_messages")
    reader_id: str = payload["_signer_id"]

    engine = get_engine()
    return await run_in_threadpool(engine.read_conversation, conversation_id, reader_id)


@router.post(
    "/conversations/{conversation_id}/messages",
    status_code=201,
    response_model=MessageResponse,
)
async def send_message(conversation_id: str, request: Request) -> dict[str, Any]:
    """Post a chat message into a conversation."""
    payload = await verified_body_payload(request, "send_message")
    require_path_match(payload, "conversation_id", conversation_id)
    sender_id = require_signer(payload, "sender_id")
    require_fields(payload, "content")
    if not isinstance(payload["content"], str):
        raise ServiceError("INVALID_PAYLOAD", "Field 'content' must be a string", 400, {})

    engine = get_engine()
    return await run_in_threadpool(engine.send_message, conversation_id, sender_id, payload["content"])


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_read(conversation_id: str, request: Request) -> dict[str, Any]:
    """Mark every message from the other participants as read."""
    payload = await verified_body_payload(request, "mark_read")
    require_path_match(payload, "conversation_id", conversation_id)
    reader_id = require_signer(payload, "reader_id")

    engine = get_engine()
    marked = await run_in_threadpool(engine.mark_read, conversation_id, reader_id)
    return {"marked": marked}
