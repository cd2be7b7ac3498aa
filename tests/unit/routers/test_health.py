"""Health and stats endpoint tests."""

from __future__ import annotations

import asyncio

import pytest

from tests.unit.routers.conftest import BOB_AGENT_ID, assigned_task, complete


@pytest.mark.unit
async def test_health_returns_ok_with_correct_schema(client):
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert isinstance(data["uptime_seconds"], (int, float))
    assert data["started_at"].endswith("Z")
    assert data["total_tasks"] == 0
    assert data["tasks_by_status"] == {}
    assert data["open_disputes"] == 0
    assert data["total_escrowed"] == 0


@pytest.mark.unit
async def test_health_uptime_increases_over_time(client):
    first = (await client.get("/health")).json()["uptime_seconds"]
    await asyncio.sleep(0.05)
    second = (await client.get("/health")).json()["uptime_seconds"]
    assert second > first


@pytest.mark.unit
async def test_health_reflects_tasks_and_escrow(client):
    task_id = await assigned_task(client)

    data = (await client.get("/health")).json()
    assert data["total_tasks"] == 1
    assert data["tasks_by_status"] == {"in_progress": 1}
    assert data["total_escrowed"] == 100

    await complete(client, task_id)
    data = (await client.get("/health")).json()
    assert data["tasks_by_status"] == {"completed": 1}
    assert data["total_escrowed"] == 0


@pytest.mark.unit
async def test_stats_for_unknown_account(client):
    response = await client.get("/stats/a-nobody")
    assert response.status_code == 200
    assert response.json() == {"account_id": "a-nobody", "tasks_completed": 0, "total_earnings": 0}


@pytest.mark.unit
async def test_stats_after_completion(client):
    task_id = await assigned_task(client, reward=70)
    await complete(client, task_id)

    response = await client.get(f"/stats/{BOB_AGENT_ID}")
    assert response.json()["total_earnings"] == 70
