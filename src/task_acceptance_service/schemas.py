"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    acceptances_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class TaskResponse(BaseModel):
    """Full task record."""

    model_config = ConfigDict(extra="forbid")
    task_id: str
    created_by: str
    title: str
    description: str
    budget: float
    status: Literal["open", "assigned", "finished", "completed", "cancelled"]
    assigned_to: str | None
    created_at: str
    updated_at: str
    assigned_at: str | None
    finished_at: str | None
    completion_date: str | None
    cancelled_at: str | None
    cancellation_reason: str | None


class TaskListItem(TaskResponse):
    """Task record in a listing, flagged when applicants are waiting."""

    has_pending_acceptances: bool


class TaskListResponse(BaseModel):
    """Response model for GET /tasks."""

    model_config = ConfigDict(extra="forbid")
    tasks: list[TaskListItem]


class UserTaskCountsResponse(BaseModel):
    """Response model for GET /users/{user_id}/task-counts."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    posted: int
    taken: int


class AcceptanceResponse(BaseModel):
    """One applicant's acceptance of a task."""

    model_config = ConfigDict(extra="forbid")
    acceptance_id: str
    task_id: str
    acceptor_id: str
    task_owner_id: str
    status: Literal["pending", "confirmed", "rejected"]
    message: str | None
    response_message: str | None
    created_at: str
    updated_at: str


class AcceptanceListResponse(BaseModel):
    """Response model for acceptance listings."""

    model_config = ConfigDict(extra="forbid")
    acceptances: list[AcceptanceResponse]


class TaskAcceptanceListResponse(BaseModel):
    """Response model for GET /tasks/{task_id}/acceptances."""

    model_config = ConfigDict(extra="forbid")
    task_id: str
    acceptances: list[AcceptanceResponse]


class PendingSummaryEntry(BaseModel):
    """Pending applicants on one of the caller's tasks."""

    model_config = ConfigDict(extra="forbid")
    task_id: str
    task_title: str
    pending_count: int
    latest_at: str


class PendingSummaryResponse(BaseModel):
    """Response model for GET /acceptances/pending-summary."""

    model_config = ConfigDict(extra="forbid")
    tasks: list[PendingSummaryEntry]


class AcceptResponse(BaseModel):
    """Response model for POST /tasks/{task_id}/accept."""

    model_config = ConfigDict(extra="forbid")
    acceptance_id: str
    conversation_id: str
    status: Literal["pending", "confirmed", "rejected"]


class RespondResponse(BaseModel):
    """Response model for POST /acceptances/{acceptance_id}/respond."""

    model_config = ConfigDict(extra="forbid")
    ok: Literal[True]
    acceptance: AcceptanceResponse
    task: TaskResponse


class TaskActionResponse(BaseModel):
    """Response model for finish, complete and cancel."""

    model_config = ConfigDict(extra="forbid")
    ok: Literal[True]
    task: TaskResponse


class ConversationResponse(BaseModel):
    """A task's conversation."""

    model_config = ConfigDict(extra="forbid")
    conversation_id: str
    task_id: str
    created_at: str
    updated_at: str
    last_message: str | None
    last_message_at: str | None
    participants: list[str]


class MessageResponse(BaseModel):
    """A chat message or notification."""

    model_config = ConfigDict(extra="forbid")
    message_id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str
    is_read: bool
    is_system_message: bool
    is_notification: bool
    notification_type: str | None
    notification_data: dict[str, Any] | None
    acceptance_id: str | None


class ConversationMessagesResponse(BaseModel):
    """Response model for GET /conversations/{conversation_id}/messages."""

    model_config = ConfigDict(extra="forbid")
    conversation: ConversationResponse
    messages: list[MessageResponse]


class MarkReadResponse(BaseModel):
    """Response model for POST /conversations/{conversation_id}/read."""

    model_config = ConfigDict(extra="forbid")
    marked: int


class AcceptanceInboxItem(BaseModel):
    """Inbox entry for a pending applicant on one of the caller's tasks."""

    model_config = ConfigDict(extra="forbid")
    kind: Literal["acceptance"]
    at: str
    task_title: str
    acceptance: AcceptanceResponse


class ConversationInboxItem(BaseModel):
    """Inbox entry for a conversation the caller takes part in."""

    model_config = ConfigDict(extra="forbid")
    kind: Literal["conversation"]
    at: str
    task_title: str
    unread_count: int
    conversation: ConversationResponse


InboxItem = Annotated[AcceptanceInboxItem | ConversationInboxItem, Field(discriminator="kind")]


class InboxResponse(BaseModel):
    """Response model for GET /inbox."""

    model_config = ConfigDict(extra="forbid")
    items: list[InboxItem]
