"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx

from task_acceptance_service.core.exceptions import ServiceError
from task_acceptance_service.logging import get_logger


class IdentityClient:
    """
    Client for Identity service JWS verification.

    The service never holds user keys: every signed request is checked by
    the Identity service via POST /agents/verify-jws, and the signer it
    reports becomes the caller id for the request.
    """

    def __init__(
        self,
        base_url: str,
        verify_jws_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_jws_path = verify_jws_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )
        self._logger = get_logger(__name__)

    def _unavailable(self, message: str) -> ServiceError:
        return ServiceError(
            error="IDENTITY_SERVICE_UNAVAILABLE",
            message=message,
            status_code=502,
            details={},
        )

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Verify a JWS compact token via the Identity service.

        Returns:
            dict with keys: valid (bool), agent_id (str), payload (dict)

        Raises:
            ServiceError: FORBIDDEN (403) if the Identity service says valid=false
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        try:
            response = await self._client.post(
                self._verify_jws_path,
                json={"token": token},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            self._logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise self._unavailable("Cannot connect to Identity service") from exc
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise self._unavailable("Identity service request failed") from exc

        if response.status_code != 200:
            self._logger.warning(
                "Identity service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise self._unavailable("Identity service returned unexpected status")

        try:
            result = response.json()
        except ValueError as exc:
            raise self._unavailable("Identity service returned invalid JSON") from exc
        if not isinstance(result, dict):
            raise self._unavailable("Identity service returned an unexpected body")

        if not result.get("valid", False):
            raise ServiceError(
                error="FORBIDDEN",
                message="JWS signature verification failed",
                status_code=403,
                details={},
            )

        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
