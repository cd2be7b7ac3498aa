"""Milestone endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import (
    get_task_registry,
    parse_id,
    require_field,
    verify_signed_request,
)

router = APIRouter()


@router.post("/tasks/{task_id}/milestones", status_code=201)
async def create_milestone(task_id: str, request: Request) -> JSONResponse:
    """Add a milestone to an in-progress task (creator only)."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "create_milestone", task_id=task_number)

    registry = get_task_registry()
    result = await run_in_threadpool(
        registry.create_milestone,
        task_number,
        payload["_signer_id"],
        require_field(payload, "title"),
        payload.get("description", ""),
        require_field(payload, "reward"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/milestones")
async def list_milestones(task_id: str) -> dict[str, Any]:
    """List the milestones of a task."""
    task_number = parse_id(task_id, "task")
    registry = get_task_registry()
    milestones = await run_in_threadpool(registry.list_milestones, task_number)
    return {"task_id": task_number, "milestones": milestones}


@router.post("/tasks/{task_id}/milestones/{milestone_id}/complete")
async def complete_milestone(task_id: str, milestone_id: str, request: Request) -> dict[str, Any]:
    """Mark a pending milestone completed (assignee only)."""
    task_number = parse_id(task_id, "task")
    milestone_number = parse_id(milestone_id, "milestone")
    payload = await verify_signed_request(request, "complete_milestone", task_id=task_number)

    registry = get_task_registry()
    return await run_in_threadpool(
        registry.complete_milestone,
        task_number,
        milestone_number,
        payload["_signer_id"],
    )


@router.post("/tasks/{task_id}/milestones/{milestone_id}/reject")
async def reject_milestone(task_id: str, milestone_id: str, request: Request) -> dict[str, Any]:
    """Reject a completed milestone (creator only)."""
    task_number = parse_id(task_id, "task")
    milestone_number = parse_id(milestone_id, "milestone")
    payload = await verify_signed_request(request, "reject_milestone", task_id=task_number)

    registry = get_task_registry()
    return await run_in_threadpool(
        registry.reject_milestone,
        task_number,
        milestone_number,
        payload["_signer_id"],
    )


@router.get("/milestones/{milestone_id}")
async def get_milestone(milestone_id: str) -> dict[str, Any]:
    """Get a milestone by id."""
    milestone_number = parse_id(milestone_id, "milestone")
    registry = get_task_registry()
    return await run_in_threadpool(registry.get_milestone, milestone_number)
