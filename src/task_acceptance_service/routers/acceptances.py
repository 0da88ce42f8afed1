"""Owner decisions on acceptances and per-user acceptance listings."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_acceptance_service.routers.validation import (
    get_engine,
    optional_string,
    require_path_match,
    verified_bearer_payload,
    verified_body_payload,
)
from task_acceptance_service.schemas import (
    AcceptanceListResponse,
    PendingSummaryResponse,
    RespondResponse,
)
from task_acceptance_service.services.token_validator import require_fields, require_signer

router = APIRouter()


# ---------------------------------------------------------------------------
# GET /acceptances/pending-summary
# MUST be before any /acceptances/{acceptance_id} GET route
# ---------------------------------------------------------------------------


@router.get("/acceptances/pending-summary", response_model=PendingSummaryResponse)
async def pending_summary(request: Request) -> dict[str, Any]:
    """Pending applicant counts per task for the caller's tasks."""
    payload = await verified_bearer_payload(request, "list_my_acceptances")
    owner_id: str = payload["_signer_id"]

    engine = get_engine()
    tasks = await run_in_threadpool(engine.pending_summary, owner_id)
    return {"tasks": tasks}


@router.get("/acceptances", response_model=AcceptanceListResponse)
async def list_my_acceptances(request: Request) -> dict[str, Any]:
    """Acceptances the caller received (role=owner) or submitted (role=acceptor)."""
    payload = await verified_bearer_payload(request, "list_my_acceptances")
    user_id: str = payload["_signer_id"]
    role = request.query_params.get("role", "")

    engine = get_engine()
    acceptances = await run_in_threadpool(engine.list_user_acceptances, user_id, role)
    return {"acceptances": acceptances}


# ---------------------------------------------------------------------------
# POST /acceptances/{acceptance_id}/respond
# ---------------------------------------------------------------------------


@router.post("/acceptances/{acceptance_id}/respond", response_model=RespondResponse)
async def respond_to_acceptance(acceptance_id: str, request: Request) -> dict[str, Any]:
    """Confirm or reject an applicant."""
    payload = await verified_body_payload(request, "respond_acceptance")
    require_path_match(payload, "acceptance_id", acceptance_id)
    owner_id = require_signer(payload, "owner_id")
    require_fields(payload, "decision")
    response_message = optional_string(payload, "response_message")

    engine = get_engine()
    return await run_in_threadpool(
        engine.respond,
        acceptance_id,
        payload["decision"],
        owner_id,
        response_message,
    )
