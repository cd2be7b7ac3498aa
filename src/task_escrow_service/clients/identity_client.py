"""Identity service client used to verify signed escrow requests."""

from __future__ import annotations

from typing import Any

import httpx

from task_escrow_service.errors import ServiceError
from task_escrow_service.logging import get_logger

logger = get_logger(__name__)


def _identity_unavailable(message: str) -> ServiceError:
    return ServiceError("IDENTITY_SERVICE_UNAVAILABLE", message, 502, {})


class IdentityClient:
    """Asks the Identity service whether a compact JWS was signed by a registered agent."""

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

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Return Identity's verdict ({"valid", "agent_id", "payload"}) for token.

        A verdict of valid=false becomes FORBIDDEN (403). Transport failures,
        non-200 replies and bodies that are not a JSON object become
        IDENTITY_SERVICE_UNAVAILABLE (502).
        """
        try:
            response = await self._client.post(self._verify_jws_path, json={"token": token})
        except httpx.HTTPError as exc:
            logger.warning(
                "JWS verification request failed",
                extra={"error_type": type(exc).__name__, "base_url": self._base_url},
            )
            raise _identity_unavailable("Cannot reach the Identity service") from exc

        if response.status_code != 200:
            logger.warning(
                "JWS verification got status %s",
                response.status_code,
                extra={"base_url": self._base_url},
            )
            raise _identity_unavailable(
                f"Identity service answered with HTTP {response.status_code}"
            )

        try:
            verdict = response.json()
        except ValueError as exc:
            raise _identity_unavailable("Identity service answered with a non-JSON body") from exc
        if not isinstance(verdict, dict):
            raise _identity_unavailable("Identity service answered with a non-object body")

        if verdict.get("valid") is not True:
            logger.info("JWS rejected by Identity", extra={"reason": verdict.get("reason")})
            raise ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})

        return verdict

    async def close(self) -> None:
        await self._client.aclose()
