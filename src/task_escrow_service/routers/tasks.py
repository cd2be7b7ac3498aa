"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from task_escrow_service.errors import ServiceError
from task_escrow_service.routers.helpers import (
    get_task_registry,
    parse_id,
    require_field,
    verify_signed_request,
)
from task_escrow_service.services.database import MAX_INTEGER

router = APIRouter()


def _parse_non_negative(raw: str | None, name: str) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYLOAD", f"{name} must be an integer", 400, {}) from exc
    if not 0 <= value <= MAX_INTEGER:
        raise ServiceError("INVALID_PAYLOAD", f"{name} is out of range", 400, {})
    return value


# ---------------------------------------------------------------------------
# POST /tasks: create task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a task and lock its reward in escrow."""
    payload = await verify_signed_request(request, "create_task")
    registry = get_task_registry()

    tags = payload.get("tags", [])
    if not isinstance(tags, list):
        raise ServiceError("INVALID_PAYLOAD", "tags must be a list", 400, {"field": "tags"})

    result = await run_in_threadpool(
        registry.create_task,
        creator_id=payload["_signer_id"],
        title=require_field(payload, "title"),
        description=payload.get("description", ""),
        reward=require_field(payload, "reward"),
        reward_token=require_field(payload, "reward_token"),
        deadline=require_field(payload, "deadline"),
        has_insurance=payload.get("has_insurance", False),
        category=payload.get("category", ""),
        tags=tags,
        metadata_hash=payload.get("metadata_hash"),
    )
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    params = request.query_params
    offset = _parse_non_negative(params.get("offset"), "offset")
    limit = _parse_non_negative(params.get("limit"), "limit")

    registry = get_task_registry()
    tasks = await run_in_threadpool(
        registry.list_tasks,
        status=params.get("status"),
        creator_id=params.get("creator_id"),
        assignee_id=params.get("assignee_id"),
        category=params.get("category"),
        tag=params.get("tag"),
        offset=offset,
        limit=limit,
    )
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/applications", status_code=201)
async def apply_for_task(task_id: str, request: Request) -> JSONResponse:
    """Apply to work on a task."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "apply_for_task", task_id=task_number)

    registry = get_task_registry()
    result = await run_in_threadpool(
        registry.apply_for_task,
        task_number,
        payload["_signer_id"],
        require_field(payload, "proposal"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/applications")
async def get_applications(task_id: str) -> dict[str, Any]:
    """List the applications submitted for a task."""
    task_number = parse_id(task_id, "task")
    registry = get_task_registry()
    applications = await run_in_threadpool(registry.get_applications, task_number)
    return {"task_id": task_number, "applications": applications}


# ---------------------------------------------------------------------------
# Assignment, proof, completion
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/assign")
async def assign_task(task_id: str, request: Request) -> dict[str, Any]:
    """Assign the task to an applicant (creator only)."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "assign_task", task_id=task_number)

    assignee_id = require_field(payload, "assignee_id")
    if not isinstance(assignee_id, str) or not assignee_id:
        raise ServiceError(
            "INVALID_PAYLOAD", "assignee_id must be a non-empty string", 400, {}
        )

    registry = get_task_registry()
    return await run_in_threadpool(
        registry.assign_task,
        task_number,
        payload["_signer_id"],
        assignee_id,
    )


@router.post("/tasks/{task_id}/proof")
async def submit_proof(task_id: str, request: Request) -> dict[str, Any]:
    """Record a proof-of-work reference (assignee only)."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "submit_proof", task_id=task_number)

    registry = get_task_registry()
    return await run_in_threadpool(
        registry.submit_proof,
        task_number,
        payload["_signer_id"],
        require_field(payload, "proof_hash"),
    )


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Complete the task and release the escrowed reward to the assignee."""
    task_number = parse_id(task_id, "task")
    payload = await verify_signed_request(request, "complete_task", task_id=task_number)

    registry = get_task_registry()
    return await run_in_threadpool(registry.complete_task, task_number, payload["_signer_id"])


# ---------------------------------------------------------------------------
# GET /tasks/{task_id}
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get full task details including the escrow view."""
    task_number = parse_id(task_id, "task")
    registry = get_task_registry()
    return await run_in_threadpool(registry.get_task, task_number)
