"""Shared request parsing and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_acceptance_service.services.arbitration_engine import ArbitrationEngine


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def extract_token(data: dict[str, Any], field_name: str) -> str:
    """Extract and validate a token field from parsed JSON body."""
    if field_name not in data:
        raise ServiceError("INVALID_JWS", f"Missing required field: {field_name}", 400, {})

    value = data[field_name]

    if value is None:
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must not be null", 400, {})

    if not isinstance(value, str):
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must be a string", 400, {})

    if not value:
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must not be empty", 400, {})

    return value


def extract_bearer_token(authorization: str | None) -> str:
    """Extract JWS token from a required Authorization header."""
    if authorization is None:
        raise ServiceError("INVALID_JWS", "Missing Authorization header", 400, {})

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "INVALID_JWS",
            "Authorization header must use Bearer scheme",
            400,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError("INVALID_JWS", "Bearer token must not be empty", 400, {})

    return token


async def verified_body_payload(request: Request, expected_action: str) -> dict[str, Any]:
    """Read ``{"token": ...}`` from the body and return the verified payload."""
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")
    return await _validate(token, expected_action)


async def verified_bearer_payload(request: Request, expected_action: str) -> dict[str, Any]:
    """Verify the Bearer token of a read request and return its payload."""
    token = extract_bearer_token(request.headers.get("authorization"))
    return await _validate(token, expected_action)


async def _validate(token: str, expected_action: str) -> dict[str, Any]:
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return await state.token_validator.validate_jws_token(token, expected_action)


def require_path_match(payload: dict[str, Any], field_name: str, path_value: str) -> None:
    """The payload must name the same resource as the URL path."""
    if field_name not in payload:
        raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field_name}", 400, {})
    if payload[field_name] != path_value:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} in payload does not match URL path",
            400,
            {},
        )


def optional_string(payload: dict[str, Any], field_name: str) -> str | None:
    """Read an optional string field, rejecting other types."""
    value = payload.get(field_name)
    if value is not None and not isinstance(value, str):
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field_name}' must be a string", 400, {})
    return value


def parse_pagination(request: Request) -> tuple[int | None, int | None]:
    """Parse ``limit`` and ``offset`` query parameters."""
    offset_raw = request.query_params.get("offset")
    limit_raw = request.query_params.get("limit")

    offset: int | None = None
    limit: int | None = None

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("INVALID_PAYLOAD", "offset must be >= 0", 400, {})

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("INVALID_PAYLOAD", "limit must be >= 1", 400, {})

    return limit, offset


def get_engine() -> ArbitrationEngine:
    """Return the engine from application state."""
    state = get_app_state()
    if state.engine is None:
        msg = "ArbitrationEngine not initialized"
        raise RuntimeError(msg)
    return state.engine
