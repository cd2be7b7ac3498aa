"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.clients.identity_client import IdentityClient
from task_escrow_service.config import get_safe_config, get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.database import Database
from task_escrow_service.services.dispute_resolver import DisputeResolver
from task_escrow_service.services.dispute_store import DisputeStore
from task_escrow_service.services.escrow_ledger import EscrowLedger
from task_escrow_service.services.stats_tracker import StatisticsTracker
from task_escrow_service.services.task_registry import TaskRegistry
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    state.platform_agent_id = settings.platform.agent_id

    # One connection backs every store so fund movements and record
    # mutations share a transaction.
    database = Database(settings.database.path)
    state.database = database

    ledger = EscrowLedger(database)
    task_store = TaskStore(database)
    dispute_store = DisputeStore(database)
    stats_tracker = StatisticsTracker(database)
    state.escrow_ledger = ledger
    state.stats_tracker = stats_tracker

    task_registry = TaskRegistry(
        database=database,
        store=task_store,
        dispute_store=dispute_store,
        ledger=ledger,
        stats=stats_tracker,
        limits=settings.limits,
        insurance_premium_pct=settings.escrow.insurance_premium_pct,
    )
    state.task_registry = task_registry

    state.dispute_resolver = DisputeResolver(
        database=database,
        dispute_store=dispute_store,
        task_store=task_store,
        task_registry=task_registry,
        ledger=ledger,
        arbiter_ids=settings.platform.arbiter_ids,
        insurance_compensation_pct=settings.escrow.insurance_compensation_pct,
        max_reason_length=settings.limits.max_reason_length,
    )

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.token_validator = TokenValidator(identity_client=identity_client)
    state.identity_client = identity_client

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "config": get_safe_config(),
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await identity_client.close()
    database.close()
