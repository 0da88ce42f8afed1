"""Task creation, lookup and lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.routers.validation import (
    get_engine,
    optional_string,
    parse_pagination,
    require_path_match,
    verified_bearer_payload,
    verified_body_payload,
)
from task_acceptance_service.schemas import (
    AcceptResponse,
    TaskAcceptanceListResponse,
    TaskActionResponse,
    TaskListResponse,
    TaskResponse,
    UserTaskCountsResponse,
)
from task_acceptance_service.services.task_store import EDITABLE_FIELDS, TASK_STATUSES
from task_acceptance_service.services.token_validator import require_fields, require_signer

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201, response_model=TaskResponse)
async def create_task(request: Request) -> dict[str, Any]:
    """Post a new open task."""
    payload = await verified_body_payload(request, "create_task")
    owner_id = require_signer(payload, "owner_id")
    require_fields(payload, "title", "budget")
    description = optional_string(payload, "description") or ""

    engine = get_engine()
    return await run_in_threadpool(
        engine.create_task,
        owner_id,
        payload["title"],
        payload["budget"],
        description,
    )


# ---------------------------------------------------------------------------
# GET /tasks: list tasks
# ---------------------------------------------------------------------------


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    status = request.query_params.get("status")
    owner_id = request.query_params.get("owner_id")
    assigned_to = request.query_params.get("assigned_to")
    limit, offset = parse_pagination(request)

    if status is not None and status not in TASK_STATUSES:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"status must be one of: {', '.join(TASK_STATUSES)}",
            400,
            {},
        )

    engine = get_engine()
    tasks = await run_in_threadpool(
        engine.list_tasks,
        status,
        owner_id,
        assigned_to,
        limit,
        offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a single task."""
    engine = get_engine()
    return await run_in_threadpool(engine.get_task, task_id)


@router.post("/tasks/{task_id}/update", response_model=TaskActionResponse)
async def update_task(task_id: str, request: Request) -> dict[str, Any]:
    """Owner edits the title, description or budget of an open task."""
    payload = await verified_body_payload(request, "update_task")
    require_path_match(payload, "task_id", task_id)
    owner_id = require_signer(payload, "owner_id")
    fields = {name: payload[name] for name in EDITABLE_FIELDS if name in payload}

    engine = get_engine()
    return await run_in_threadpool(engine.update_task, task_id, owner_id, fields)


@router.get("/users/{user_id}/task-counts", response_model=UserTaskCountsResponse)
async def user_task_counts(user_id: str) -> dict[str, Any]:
    """How many tasks a user has posted and taken on."""
    engine = get_engine()
    return await run_in_threadpool(engine.user_task_counts, user_id)


# ---------------------------------------------------------------------------
# Acceptances of a task
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept", status_code=201, response_model=AcceptResponse)
async def accept_task(task_id: str, request: Request) -> dict[str, Any]:
    """Apply for an open task. Safe to retry."""
    payload = await verified_body_payload(request, "accept_task")
    require_path_match(payload, "task_id", task_id)
    acceptor_id = require_signer(payload, "acceptor_id")
    message = optional_string(payload, "message")

    engine = get_engine()
    return await run_in_threadpool(engine.accept, task_id, acceptor_id, message)


@router.get("/tasks/{task_id}/acceptances", response_model=TaskAcceptanceListResponse)
async def list_task_acceptances(task_id: str, request: Request) -> dict[str, Any]:
    """List every acceptance of a task. Owner only."""
    payload = await verified_bearer_payload(request, "list_acceptances")
    caller_id: str = payload["_signer_id"]

    engine = get_engine()
    acceptances = await run_in_threadpool(engine.list_task_acceptances, task_id, caller_id)
    return {"task_id": task_id, "acceptances": acceptances}


# ---------------------------------------------------------------------------
# Lifecycle: finish, complete, cancel
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/finish", response_model=TaskActionResponse)
async def mark_finished(task_id: str, request: Request) -> dict[str, Any]:
    """Assignee reports the work as done."""
    payload = await verified_body_payload(request, "mark_finished")
    require_path_match(payload, "task_id", task_id)
    caller_id = require_signer(payload, "caller_id")

    engine = get_engine()
    return await run_in_threadpool(engine.mark_finished, task_id, caller_id)


@router.post("/tasks/{task_id}/complete", response_model=TaskActionResponse)
async def confirm_complete(task_id: str, request: Request) -> dict[str, Any]:
    """Owner confirms the finished work."""
    payload = await verified_body_payload(request, "confirm_complete")
    require_path_match(payload, "task_id", task_id)
    caller_id = require_signer(payload, "caller_id")

    engine = get_engine()
    return await run_in_threadpool(engine.confirm_complete, task_id, caller_id)


@router.post("/tasks/{task_id}/cancel", response_model=TaskActionResponse)
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Owner cancels an open or assigned task."""
    payload = await verified_body_payload(request, "cancel_task")
    require_path_match(payload, "task_id", task_id)
    caller_id = require_signer(payload, "caller_id")
    reason = optional_string(payload, "reason")

    engine = get_engine()
    return await run_in_threadpool(engine.cancel_task, task_id, caller_id, reason)
