"""Dispute endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from task_escrow_service.routers.helpers import (
    get_dispute_resolver,
    parse_id,
    require_field,
    verify_signed_request,
)

router = APIRouter()


@router.post("/tasks/{task_id}/disputes", status_code=201)
async def create_dispute(task_id: str, request: Request) -> JSONResponse:
    """Open a dispute on a task (creator or assignee)."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "create_dispute", task_id=task_number)

    resolver = get_dispute_resolver()
    result = await run_in_threadpool(
        resolver.create_dispute,
        task_number,
        payload["_signer_id"],
        require_field(payload, "reason"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/disputes")
async def list_disputes(task_id: str) -> dict[str, Any]:
    """List every dispute filed on a task."""
    task_number = parse_id(task_id, "task")
    resolver = get_dispute_resolver()
    disputes = await run_in_threadpool(resolver.list_disputes, task_number)
    return {"task_id": task_number, "disputes": disputes}


@router.post("/tasks/{task_id}/disputes/{dispute_id}/resolve")
async def resolve_dispute(task_id: str, dispute_id: str, request: Request) -> dict[str, Any]:
    """Apply an arbiter ruling to an open dispute."""
    task_number = parse_id(task_id, "task")
    dispute_number = parse_id(dispute_id, "dispute")
    payload = await verify_signed_request(request, "resolve_dispute", task_id=task_number)

    resolver = get_dispute_resolver()
    return await run_in_threadpool(
        resolver.resolve_dispute,
        task_number,
        dispute_number,
        payload["_signer_id"],
        payload.get("resolution", ""),
        require_field(payload, "favors_creator"),
    )


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str) -> dict[str, Any]:
    """Get a dispute by id."""
    dispute_number = parse_id(dispute_id, "dispute")
    resolver = get_dispute_resolver()
    return await run_in_threadpool(resolver.get_dispute, dispute_number)
