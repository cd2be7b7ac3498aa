"""Router test fixtures with a temp database and a mocked Identity service."""

from __future__ import annotations

import os
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import get_app_state, reset_app_state
from task_escrow_service.errors import ServiceError
from tests.helpers import decode_kid, decode_payload, generate_keypair, make_jws_token

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from httpx import Response

# ---------------------------------------------------------------------------
# Fixed agent IDs
# ---------------------------------------------------------------------------
PLATFORM_AGENT_ID = "a-platform-test-id"
ARBITER_AGENT_ID = "a-arbiter-test-id"
ALICE_AGENT_ID = "a-alice-uuid"
BOB_AGENT_ID = "a-bob-uuid"
CAROL_AGENT_ID = "a-carol-uuid"
TOKEN = "USDC"
MAX_BODY_SIZE = 4096
PREMIUM_PCT = 5


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and a mocked Identity service."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""\
service:
  name: "task-escrow"
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
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
platform:
  agent_id: "{PLATFORM_AGENT_ID}"
  arbiter_ids:
    - "{ARBITER_AGENT_ID}"
escrow:
  insurance_premium_pct: {PREMIUM_PCT}
  insurance_compensation_pct: 20
limits:
  max_title_length: 200
  max_description_length: 1000
  max_proposal_length: 1000
  max_reason_length: 1000
  max_tags: 5
request:
  max_body_size: {MAX_BODY_SIZE}
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
        # Mock Identity client: default verification succeeds for any token
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(
            side_effect=lambda token: {
                "valid": True,
                "agent_id": decode_kid(token),
                "payload": decode_payload(token),
            }
        )
        state.identity_client = mock_identity

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


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ConnectionError("Identity service unreachable")
    )


@pytest.fixture
def mock_identity_rejects(app: Any) -> None:
    """Configure the Identity mock to report every signature as invalid."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})
    )


# ---------------------------------------------------------------------------
# Request helper functions
# ---------------------------------------------------------------------------
def sign(agent_id: str, payload: dict[str, Any]) -> str:
    """Sign payload as agent_id with a throwaway key."""
    private_key, _public_key = generate_keypair()
    return make_jws_token(private_key, agent_id, payload)


async def post_signed(
    client: AsyncClient,
    path: str,
    agent_id: str,
    payload: dict[str, Any],
) -> Response:
    """POST {"token": <jws>} to path."""
    return await client.post(path, json={"token": sign(agent_id, payload)})


def future_deadline(days: int = 7) -> str:
    """ISO 8601 deadline days from now."""
    return (datetime.now(UTC) + timedelta(days=days)).isoformat().replace("+00:00", "Z")


async def deposit(
    client: AsyncClient,
    account_id: str,
    amount: int,
    *,
    reference: str | None = None,
) -> Response:
    """Credit funds to account_id as the platform."""
    return await post_signed(
        client,
        f"/accounts/{account_id}/deposit",
        PLATFORM_AGENT_ID,
        {
            "action": "deposit",
            "account_id": account_id,
            "currency": TOKEN,
            "amount": amount,
            "reference": reference if reference is not None else f"ref-{uuid.uuid4()}",
        },
    )


async def approve(client: AsyncClient, account_id: str, amount: int) -> Response:
    """Set the escrow allowance of account_id."""
    return await post_signed(
        client,
        f"/accounts/{account_id}/approve",
        account_id,
        {"action": "approve", "currency": TOKEN, "amount": amount},
    )


async def fund(client: AsyncClient, account_id: str, amount: int) -> None:
    """Deposit amount and approve it for escrow."""
    assert (await deposit(client, account_id, amount)).status_code == 200
    assert (await approve(client, account_id, amount)).status_code == 200


async def create_task(
    client: AsyncClient,
    creator_id: str = ALICE_AGENT_ID,
    **fields: Any,
) -> Response:
    """Create a task via POST /tasks and return the response."""
    payload: dict[str, Any] = {
        "action": "create_task",
        "title": "Test task",
        "description": "Test description",
        "reward": 100,
        "reward_token": TOKEN,
        "deadline": future_deadline(),
        "has_insurance": False,
    }
    payload.update(fields)
    return await post_signed(client, "/tasks", creator_id, payload)


async def apply(
    client: AsyncClient,
    task_id: int,
    applicant_id: str = BOB_AGENT_ID,
    proposal: str = "I can do this",
) -> Response:
    """Apply to a task via POST /tasks/{task_id}/applications."""
    return await post_signed(
        client,
        f"/tasks/{task_id}/applications",
        applicant_id,
        {"action": "apply_for_task", "task_id": task_id, "proposal": proposal},
    )


async def assign(
    client: AsyncClient,
    task_id: int,
    assignee_id: str = BOB_AGENT_ID,
    creator_id: str = ALICE_AGENT_ID,
) -> Response:
    """Assign a task via POST /tasks/{task_id}/assign."""
    return await post_signed(
        client,
        f"/tasks/{task_id}/assign",
        creator_id,
        {"action": "assign_task", "task_id": task_id, "assignee_id": assignee_id},
    )


async def complete(client: AsyncClient, task_id: int, caller_id: str = ALICE_AGENT_ID) -> Response:
    """Complete a task via POST /tasks/{task_id}/complete."""
    return await post_signed(
        client,
        f"/tasks/{task_id}/complete",
        caller_id,
        {"action": "complete_task", "task_id": task_id},
    )


async def assigned_task(
    client: AsyncClient,
    *,
    reward: int = 100,
    has_insurance: bool = False,
) -> int:
    """Fund Alice, create a task, have Bob apply and assign it to Bob."""
    premium = reward * PREMIUM_PCT // 100 if has_insurance else 0
    await fund(client, ALICE_AGENT_ID, reward + premium)
    response = await create_task(client, reward=reward, has_insurance=has_insurance)
    assert response.status_code == 201, response.text
    task_id = int(response.json()["task_id"])
    assert (await apply(client, task_id)).status_code == 201
    assert (await assign(client, task_id)).status_code == 200
    return task_id
