"""Unit test fixtures: auto-clear caches and shared in-memory services."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Any

import pytest

from task_escrow_service.config import LimitsConfig, clear_settings_cache
from task_escrow_service.core.state import reset_app_state
from task_escrow_service.services.database import Database
from task_escrow_service.services.dispute_resolver import DisputeResolver
from task_escrow_service.services.dispute_store import DisputeStore
from task_escrow_service.services.escrow_ledger import EscrowLedger
from task_escrow_service.services.stats_tracker import StatisticsTracker
from task_escrow_service.services.task_registry import TaskRegistry
from task_escrow_service.services.task_store import TaskStore

CREATOR = "a-creator"
WORKER = "a-worker"
OTHER = "a-other"
ARBITER = "a-arbiter"
TOKEN = "USDC"
PREMIUM_PCT = 5
COMPENSATION_PCT = 20


@pytest.fixture(autouse=True)
def _clear_caches() -> Iterator[None]:
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def database(tmp_path: Any) -> Iterator[Database]:
    """A fresh SQLite database per test."""
    db = Database(str(tmp_path / "escrow.db"))
    yield db
    db.close()


@pytest.fixture
def ledger(database: Database) -> EscrowLedger:
    return EscrowLedger(database)


@pytest.fixture
def task_store(database: Database) -> TaskStore:
    return TaskStore(database)


@pytest.fixture
def dispute_store(database: Database) -> DisputeStore:
    return DisputeStore(database)


@pytest.fixture
def stats(database: Database) -> StatisticsTracker:
    return StatisticsTracker(database)


@pytest.fixture
def limits() -> LimitsConfig:
    return LimitsConfig(
        max_title_length=200,
        max_description_length=10000,
        max_proposal_length=5000,
        max_reason_length=2000,
        max_tags=5,
    )


@pytest.fixture
def registry(
    database: Database,
    task_store: TaskStore,
    dispute_store: DisputeStore,
    ledger: EscrowLedger,
    stats: StatisticsTracker,
    limits: LimitsConfig,
) -> TaskRegistry:
    return TaskRegistry(
        database=database,
        store=task_store,
        dispute_store=dispute_store,
        ledger=ledger,
        stats=stats,
        limits=limits,
        insurance_premium_pct=PREMIUM_PCT,
    )


@pytest.fixture
def resolver(
    database: Database,
    dispute_store: DisputeStore,
    task_store: TaskStore,
    registry: TaskRegistry,
    ledger: EscrowLedger,
) -> DisputeResolver:
    return DisputeResolver(
        database=database,
        dispute_store=dispute_store,
        task_store=task_store,
        task_registry=registry,
        ledger=ledger,
        arbiter_ids=[ARBITER],
        insurance_compensation_pct=COMPENSATION_PCT,
        max_reason_length=2000,
    )


def fund(ledger: EscrowLedger, account_id: str, amount: int, *, approve: int | None = None) -> None:
    """Deposit amount to account_id and approve the escrow for it."""
    ledger.deposit(account_id, TOKEN, amount, f"seed-{uuid.uuid4()}")
    ledger.approve(account_id, TOKEN, amount if approve is None else approve)
