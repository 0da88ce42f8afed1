"""Router test fixtures with a mocked Identity service."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_acceptance_service.app import create_app
from task_acceptance_service.config import clear_settings_cache
from task_acceptance_service.core.lifespan import lifespan
from task_acceptance_service.core.state import get_app_state, reset_app_state
from tests.helpers import generate_keypair, identity_result_for, make_jws_token

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    from httpx import Response

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
OWNER_ID = "u-owner-uuid"
ALICE_ID = "u-alice-uuid"
BOB_ID = "u-bob-uuid"

Keypair = tuple["Ed25519PrivateKey", str]


# ---------------------------------------------------------------------------
# Keypair fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def owner_keypair() -> Keypair:
    """Generate the task owner's keypair."""
    return generate_keypair()


@pytest.fixture
def alice_keypair() -> Keypair:
    """Generate Alice's keypair."""
    return generate_keypair()


@pytest.fixture
def bob_keypair() -> Keypair:
    """Generate Bob's keypair."""
    return generate_keypair()


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and a mocked Identity service."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""\
service:
  name: "task-acceptance"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
  busy_timeout_ms: 5000
  retry_attempts: 3
  retry_backoff_seconds: 0
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
request:
  max_body_size: 4096
tasks:
  min_budget: 50
  max_budget: 5500
  min_title_length: 3
  max_title_length: 200
  max_description_length: 1000
messages:
  max_acceptance_message_length: 500
  max_chat_message_length: 500
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Identity mock: every token verifies, the signer is its kid header
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(side_effect=identity_result_for)
        state.identity_client = mock_identity
        if state.token_validator is not None:
            state.token_validator._identity_client = mock_identity

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(side_effect=ConnectionError("Identity service unreachable"))


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def bearer(keypair: Keypair, user_id: str, action: str, **fields: Any) -> dict[str, str]:
    """Authorization header carrying a signed token for a read endpoint."""
    token = make_jws_token(keypair[0], user_id, {"action": action, **fields})
    return {"Authorization": f"Bearer {token}"}


async def post_signed(
    client: AsyncClient,
    path: str,
    keypair: Keypair,
    signer_id: str,
    payload: dict[str, Any],
) -> Response:
    """POST ``{"token": <signed payload>}`` to a path."""
    token = make_jws_token(keypair[0], signer_id, payload)
    return await client.post(path, json={"token": token})


async def create_task(
    client: AsyncClient,
    owner_keypair: Keypair,
    owner_id: str = OWNER_ID,
    *,
    title: str = "Paint the fence",
    budget: float = 300,
    description: str = "Two coats, white",
) -> Response:
    """Create a task via POST /tasks and return the response."""
    payload = {
        "action": "create_task",
        "owner_id": owner_id,
        "title": title,
        "budget": budget,
        "description": description,
    }
    return await post_signed(client, "/tasks", owner_keypair, owner_id, payload)


async def accept_task(
    client: AsyncClient,
    acceptor_keypair: Keypair,
    acceptor_id: str,
    task_id: str,
    *,
    message: str | None = None,
) -> Response:
    """Apply for a task via POST /tasks/{task_id}/accept."""
    payload: dict[str, Any] = {"action": "accept_task", "task_id": task_id, "acceptor_id": acceptor_id}
    if message is not None:
        payload["message"] = message
    return await post_signed(client, f"/tasks/{task_id}/accept", acceptor_keypair, acceptor_id, payload)


async def respond(
    client: AsyncClient,
    owner_keypair: Keypair,
    acceptance_id: str,
    decision: str,
    owner_id: str = OWNER_ID,
    *,
    response_message: str | None = None,
) -> Response:
    """Confirm or reject via POST /acceptances/{acceptance_id}/respond."""
    payload: dict[str, Any] = {
        "action": "respond_acceptance",
        "acceptance_id": acceptance_id,
        "owner_id": owner_id,
        "decision": decision,
    }
    if response_message is not None:
        payload["response_message"] = response_message
    return await post_signed(
        client, f"/acceptances/{acceptance_id}/respond", owner_keypair, owner_id, payload
    )


async def task_action(
    client: AsyncClient,
    keypair: Keypair,
    caller_id: str,
    task_id: str,
    verb: str,
    **extra: Any,
) -> Response:
    """POST /tasks/{task_id}/{finish|complete|cancel}."""
    action = {"finish": "mark_finished", "complete": "confirm_complete", "cancel": "cancel_task"}[verb]
    payload = {"action": action, "task_id": task_id, "caller_id": caller_id, **extra}
    return await post_signed(client, f"/tasks/{task_id}/{verb}", keypair, caller_id, payload)


async def send_chat(
    client: AsyncClient,
    keypair: Keypair,
    sender_id: str,
    conversation_id: str,
    content: Any,
) -> Response:
    """Post a chat message via POST /conversations/{conversation_id}/messages."""
    payload = {
        "action": "send_message",
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": content,
    }
    return await post_signed(
        client, f"/conversations/{conversation_id}/messages", keypair, sender_id, payload
    )


async def mark_read(client: AsyncClient, keypair: Keypair, reader_id: str, conversation_id: str) -> Response:
    """Mark a conversation read via POST /conversations/{conversation_id}/read."""
    payload = {"action": "mark_read", "conversation_id": conversation_id, "reader_id": reader_id}
    return await post_signed(client, f"/conversations/{conversation_id}/read", keypair, reader_id, payload)


async def open_task_with_applicant(
    client: AsyncClient,
    owner_keypair: Keypair,
    acceptor_keypair: Keypair,
    acceptor_id: str = ALICE_ID,
) -> tuple[str, dict[str, Any]]:
    """Create a task and have one applicant accept it. Returns (task_id, accept body)."""
    created = await create_task(client, owner_keypair)
    assert created.status_code == 201
    task_id: str = created.json()["task_id"]
    accepted = await accept_task(client, acceptor_keypair, acceptor_id, task_id)
    assert accepted.status_code == 201
    return task_id, accepted.json()
