"""Account statistics endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import get_stats_tracker
from task_escrow_service.schemas import StatsResponse

router = APIRouter()


@router.get("/stats/{account_id}", response_model=StatsResponse)
async def get_stats(account_id: str) -> StatsResponse:
    """Completed-task count and total earnings for an account."""
    tracker = get_stats_tracker()
    stats = await run_in_threadpool(tracker.get_stats, account_id)
    return StatsResponse(**stats)
