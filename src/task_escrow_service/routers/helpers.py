"""Shared router helper functions."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.state import get_app_state
from task_escrow_service.errors import NotFound, ServiceError
from task_escrow_service.services.database import MAX_INTEGER

if TYPE_CHECKING:
    from fastapi import Request

    from task_escrow_service.services.dispute_resolver import DisputeResolver
    from task_escrow_service.services.escrow_ledger import EscrowLedger
    from task_escrow_service.services.stats_tracker import StatisticsTracker
    from task_escrow_service.services.task_registry import TaskRegistry

_MISSING = object()
_MAX_ID_DIGITS = len(str(MAX_INTEGER))


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
    value = data.get(field_name, _MISSING)
    if value is _MISSING:
        raise ServiceError("INVALID_JWS", f"Missing required field: {field_name}", 400, {})
    if value is None:
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must not be null", 400, {})
    if not isinstance(value, str):
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must be a string", 400, {})
    if not value:
        raise ServiceError("INVALID_JWS", f"Field '{field_name}' must not be empty", 400, {})
    return value


def parse_id(raw: str, resource: str) -> int:
    """Parse a numeric path id. Anything else cannot name an existing record."""
    if (
        not (raw.isascii() and raw.isdigit())
        or len(raw) > _MAX_ID_DIGITS
        or int(raw) > MAX_INTEGER
    ):
        raise NotFound(
            f"{resource.upper()}_NOT_FOUND",
            f"{resource.capitalize()} not found",
            {f"{resource}_id": raw},
        )
    return int(raw)


async def verify_signed_request(
    request: Request,
    expected_action: str,
    *,
    task_id: int | None = None,
) -> dict[str, Any]:
    """
    Read the {"token": ...} body and verify it for expected_action.

    Returns the verified payload with "_signer_id" set. When task_id is
    given, the payload must name the same task as the URL.
    """
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")

    state = get_app_state()
    if state.token_validator is None:
        msg = "Token validator not initialized"
        raise RuntimeError(msg)

    payload = await state.token_validator.validate_jws_token(token, expected_action)

    if task_id is not None:
        payload_task_id = payload.get("task_id")
        if isinstance(payload_task_id, bool) or str(payload_task_id) != str(task_id):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Payload task_id does not match URL",
                400,
                {"task_id": task_id},
            )
    return payload


def require_field(payload: dict[str, Any], field_name: str) -> Any:
    """Return payload[field_name], raising INVALID_PAYLOAD if absent."""
    if field_name not in payload:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Missing required field: {field_name}",
            400,
            {"field": field_name},
        )
    return payload[field_name]


def require_platform(agent_id: str, platform_agent_id: str) -> None:
    """Check that the verified agent is the platform."""
    if agent_id != platform_agent_id:
        raise ServiceError(
            "FORBIDDEN",
            "Only the platform agent can perform this operation",
            403,
            {},
        )


def require_account_owner(verified_agent_id: str, account_id: str) -> None:
    """Check that the verified agent owns the account."""
    if verified_agent_id != account_id:
        raise ServiceError(
            "FORBIDDEN",
            "You can only act on your own account",
            403,
            {},
        )


def get_task_registry() -> TaskRegistry:
    """Task registry from app state."""
    registry = get_app_state().task_registry
    if registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)
    return registry


def get_dispute_resolver() -> DisputeResolver:
    """Dispute resolver from app state."""
    resolver = get_app_state().dispute_resolver
    if resolver is None:
        msg = "DisputeResolver not initialized"
        raise RuntimeError(msg)
    return resolver


def get_escrow_ledger() -> EscrowLedger:
    """Escrow ledger from app state."""
    ledger = get_app_state().escrow_ledger
    if ledger is None:
        msg = "EscrowLedger not initialized"
        raise RuntimeError(msg)
    return ledger


def get_stats_tracker() -> StatisticsTracker:
    """Statistics tracker from app state."""
    tracker = get_app_state().stats_tracker
    if tracker is None:
        msg = "StatisticsTracker not initialized"
        raise RuntimeError(msg)
    return tracker
