"""Unit tests for TokenValidator."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from task_escrow_service.errors import ServiceError
from task_escrow_service.services.token_validator import TokenValidator
from tests.helpers import generate_keypair, make_jws_token


def _validator(**verify_kwargs) -> TokenValidator:
    mock_identity = AsyncMock()
    mock_identity.verify_jws = AsyncMock(**verify_kwargs)
    return TokenValidator(identity_client=mock_identity)


def _token(payload: dict) -> str:
    private_key, _public_key = generate_keypair()
    return make_jws_token(private_key, "a-agent", payload)


@pytest.mark.unit
async def test_validate_jws_token_empty_token() -> None:
    """Empty token raises INVALID_JWS."""
    validator = _validator()

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token("", "create_task")

    assert exc_info.value.error == "INVALID_JWS"
    validator.identity_client.verify_jws.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.parametrize("token", ["only.two", "a.b.c.d", ".payload.sig", "head.payload."])
async def test_validate_jws_token_wrong_format(token: str) -> None:
    """Anything but header.payload.signature raises INVALID_JWS."""
    validator = _validator()

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(token, "create_task")

    assert exc_info.value.error == "INVALID_JWS"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
async def test_validate_jws_token_identity_unavailable() -> None:
    """Connection errors from Identity are wrapped as IDENTITY_SERVICE_UNAVAILABLE."""
    validator = _validator(side_effect=ConnectionError("unavailable"))

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({"action": "create_task"}), "create_task")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
    assert exc_info.value.status_code == 502


@pytest.mark.unit
async def test_validate_jws_token_identity_service_error() -> None:
    """ServiceError from Identity is propagated unchanged."""
    expected = ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})
    validator = _validator(side_effect=expected)

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({"action": "create_task"}), "create_task")

    assert exc_info.value is expected


@pytest.mark.unit
async def test_validate_jws_token_malformed_result() -> None:
    """A verification result without a payload object is an Identity failure."""
    validator = _validator(return_value={"valid": True, "agent_id": "a-agent", "payload": "x"})

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({"action": "create_task"}), "create_task")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


@pytest.mark.unit
async def test_validate_jws_token_missing_signer() -> None:
    validator = _validator(return_value={"valid": True, "payload": {"action": "create_task"}})

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({"action": "create_task"}), "create_task")

    assert exc_info.value.error == "INVALID_JWS"


@pytest.mark.unit
async def test_validate_jws_token_missing_action() -> None:
    """Missing action in payload raises INVALID_PAYLOAD."""
    validator = _validator(return_value={"agent_id": "a-agent", "payload": {}})

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({}), "create_task")

    assert exc_info.value.error == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_validate_jws_token_wrong_action() -> None:
    """Unexpected action raises INVALID_PAYLOAD."""
    validator = _validator(
        return_value={"agent_id": "a-agent", "payload": {"action": "assign_task"}}
    )

    with pytest.raises(ServiceError) as exc_info:
        await validator.validate_jws_token(_token({"action": "assign_task"}), "create_task")

    assert exc_info.value.error == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_validate_jws_token_valid_single_action() -> None:
    """Matching single action returns payload with signer id."""
    validator = _validator(
        return_value={"agent_id": "a-agent", "payload": {"action": "create_task", "reward": 1}}
    )

    result = await validator.validate_jws_token(_token({"action": "create_task"}), "create_task")

    assert result["action"] == "create_task"
    assert result["reward"] == 1
    assert result["_signer_id"] == "a-agent"


@pytest.mark.unit
async def test_validate_jws_token_valid_tuple_action() -> None:
    """Matching one action in tuple succeeds."""
    validator = _validator(
        return_value={"agent_id": "a-agent", "payload": {"action": "reject_milestone"}}
    )

    result = await validator.validate_jws_token(
        _token({"action": "reject_milestone"}),
        ("complete_milestone", "reject_milestone"),
    )

    assert result["action"] == "reject_milestone"


@pytest.mark.unit
async def test_validate_jws_token_does_not_mutate_result() -> None:
    """The Identity result payload is copied before _signer_id is added."""
    payload = {"action": "create_task"}
    validator = _validator(return_value={"agent_id": "a-agent", "payload": payload})

    await validator.validate_jws_token(_token(payload), "create_task")

    assert "_signer_id" not in payload
