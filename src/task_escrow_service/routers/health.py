"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from task_escrow_service.core.state import get_app_state
from task_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    total_tasks = 0
    tasks_by_status: dict[str, int] = {}
    open_disputes = 0
    total_escrowed = 0
    if state.task_registry is not None:
        total_tasks = await run_in_threadpool(state.task_registry.count_tasks)
        tasks_by_status = await run_in_threadpool(state.task_registry.count_tasks_by_status)
    if state.dispute_resolver is not None:
        open_disputes = await run_in_threadpool(state.dispute_resolver.count_open_disputes)
    if state.escrow_ledger is not None:
        total_escrowed = await run_in_threadpool(state.escrow_ledger.total_escrowed)
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
        open_disputes=open_disputes,
        total_escrowed=total_escrowed,
    )
