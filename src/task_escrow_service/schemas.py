"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    open_disputes: int
    total_escrowed: int


class StatsResponse(BaseModel):
    """Response model for GET /stats/{account_id}."""

    model_config = ConfigDict(extra="forbid")
    account_id: str
    tasks_completed: int
    total_earnings: int


class AccountResponse(BaseModel):
    """Response model for GET /accounts/{account_id}."""

    model_config = ConfigDict(extra="forbid")
    account_id: str
    balances: dict[str, int]
    allowances: dict[str, int]


class InsurancePoolResponse(BaseModel):
    """Response model for the insurance pool endpoints."""

    model_config = ConfigDict(extra="forbid")
    token: str
    balance: int
