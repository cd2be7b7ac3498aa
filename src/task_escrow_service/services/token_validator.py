"""JWS token validation for signed task-escrow requests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from task_escrow_service.errors import ServiceError

if TYPE_CHECKING:
    from task_escrow_service.clients.identity_client import IdentityClient


class TokenValidator:
    """Verifies JWS tokens through the Identity service and checks their action."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self.identity_client = identity_client

    async def validate_jws_token(
        self,
        token: str,
        expected_action: str | tuple[str, ...],
    ) -> dict[str, Any]:
        """
        Verify a JWS token and validate its action field.

        Returns the verified payload with "_signer_id" set to the signer's
        agent id (the caller identity for the operation).

        Error precedence:
        1. INVALID_JWS: token is not a three-part compact JWS
        2. IDENTITY_SERVICE_UNAVAILABLE: Identity unreachable or malformed reply
        3. FORBIDDEN: signature invalid
        4. INVALID_PAYLOAD: missing or unexpected action
        """
        if not token:
            raise ServiceError("INVALID_JWS", "Token must be a non-empty string", 400, {})

        parts = token.split(".")
        if len(parts) != 3 or any(len(part) == 0 for part in (parts[0], parts[2])):
            raise ServiceError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
                400,
                {},
            )

        result: Any
        try:
            result = await self.identity_client.verify_jws(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {},
            ) from exc

        if not isinstance(result, dict) or not isinstance(result.get("payload"), dict):
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned a malformed verification result",
                502,
                {},
            )
        agent_id = result.get("agent_id")
        if not isinstance(agent_id, str) or len(agent_id) < 1:
            raise ServiceError("INVALID_JWS", "Token signer is missing", 400, {})
        payload = dict(cast("dict[str, Any]", result["payload"]))

        if "action" not in payload:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "JWS payload must include an 'action' field",
                400,
                {},
            )

        allowed_actions = (
            {expected_action} if isinstance(expected_action, str) else set(expected_action)
        )
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
