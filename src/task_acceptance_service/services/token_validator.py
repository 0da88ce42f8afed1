"""Caller identity resolution from signed request tokens."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from task_acceptance_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from task_acceptance_service.clients.identity_client import IdentityClient


class TokenValidator:
    """Verifies JWS tokens through the Identity service and checks their action."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    async def validate_jws_token(
        self,
        token: str,
        expected_action: str | tuple[str, ...],
    ) -> dict[str, Any]:
        """
        Verify a JWS token via the Identity service and validate the action field.

        Returns the verified payload dict with "_signer_id" added.

        Error precedence:
        1. INVALID_JWS: token is not a three-part JWS
        2. IDENTITY_SERVICE_UNAVAILABLE: Identity service unreachable
        3. FORBIDDEN: signature invalid
        4. INVALID_PAYLOAD: missing or wrong action
        """
        if not token:
            raise ServiceError("INVALID_JWS", "Token must be a non-empty string", 400, {})

        parts = token.split(".")
        if len(parts) != 3:
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
                {},
            )

        try:
            result = await self._identity_client.verify_jws(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {},
            ) from exc

        agent_id = result.get("agent_id")
        if not isinstance(agent_id, str) or len(agent_id) < 1:
            raise ServiceError("INVALID_JWS", "Token signer is missing", 400, {})
        raw_payload = result.get("payload")
        if not isinstance(raw_payload, dict):
            raise ServiceError("INVALID_JWS", "Token payload must be a JSON object", 400, {})
        payload = dict(cast("dict[str, Any]", raw_payload))

        if "action" not in payload:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "JWS payload must include an 'action' field",
                400,
                {},
            )

        allowed_actions = {expected_action} if isinstance(expected_action, str) else set(expected_action)
        action = payload["action"]
        if action not in allowed_actions:
            expected_actions_text = ", ".join(sorted(allowed_actions))
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Expected action in [{expected_actions_text}], got '{action}'",
                400,
                {},
            )

        payload["_signer_id"] = agent_id
        return payload


def require_fields(payload: dict[str, Any], *fields: str) -> None:
    """Raise INVALID_PAYLOAD for the first field missing from the payload."""
    for field_name in fields:
        if field_name not in payload:
            raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field_name}", 400, {})


def require_signer(payload: dict[str, Any], actor_field: str) -> str:
    """
    Check that the payload's actor field names the token signer.

    Returns the signer id, which is the caller id for the operation.
    """
    require_fields(payload, actor_field)
    signer_id = cast("str", payload["_signer_id"])
    if payload[actor_field] != signer_id:
        raise ServiceError("FORBIDDEN", f"Signer does not match {actor_field}", 403, {})
    return signer_id
