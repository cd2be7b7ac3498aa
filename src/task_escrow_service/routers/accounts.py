"""Account funding, allowance and insurance pool endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from task_escrow_service.core.state import get_app_state
from task_escrow_service.errors import ServiceError
from task_escrow_service.logging import get_logger
from task_escrow_service.routers.helpers import (
    get_escrow_ledger,
    require_account_owner,
    require_field,
    require_platform,
    verify_signed_request,
)
from task_escrow_service.schemas import AccountResponse, InsurancePoolResponse

router = APIRouter()


def _require_account_match(payload: dict[str, Any], account_id: str) -> None:
    if payload.get("account_id") != account_id:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Payload account_id does not match URL",
            400,
            {"account_id": account_id},
        )


# === POST /accounts/{account_id}/deposit: Add Funds (Platform-only) ===


@router.post("/accounts/{account_id}/deposit")
async def deposit(account_id: str, request: Request) -> dict[str, Any]:
    """Credit external funds to an account. Platform-only, idempotent per reference."""
    payload = await verify_signed_request(request, "deposit")
    require_platform(payload["_signer_id"], get_app_state().platform_agent_id)
    _require_account_match(payload, account_id)

    reference = require_field(payload, "reference")
    if not isinstance(reference, str) or not reference:
        raise ServiceError("INVALID_PAYLOAD", "reference must be a non-empty string", 400, {})

    ledger = get_escrow_ledger()
    result = await run_in_threadpool(
        ledger.deposit,
        account_id,
        require_field(payload, "currency"),
        require_field(payload, "amount"),
        reference,
    )
    get_logger(__name__).info(
        "Account funded",
        extra={"account_id": account_id, "reference": reference},
    )
    return result


# === POST /accounts/{account_id}/approve: Set Allowance (Owner-only) ===


@router.post("/accounts/{account_id}/approve")
async def approve(account_id: str, request: Request) -> dict[str, Any]:
    """Set how much the escrow may pull from the caller's balance."""
    payload = await verify_signed_request(request, "approve")
    require_account_owner(payload["_signer_id"], account_id)

    ledger = get_escrow_ledger()
    return await run_in_threadpool(
        ledger.approve,
        account_id,
        require_field(payload, "currency"),
        require_field(payload, "amount"),
    )


# === GET /accounts/{account_id} ===


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str) -> AccountResponse:
    """Balances and allowances of an account."""
    ledger = get_escrow_ledger()
    account = await run_in_threadpool(ledger.get_account, account_id)
    return AccountResponse(**account)


@router.get("/accounts/{account_id}/transactions")
async def get_transactions(account_id: str) -> dict[str, Any]:
    """Ledger transaction history of an account."""
    ledger = get_escrow_ledger()
    transactions = await run_in_threadpool(ledger.get_transactions, account_id)
    return {"account_id": account_id, "transactions": transactions}


# === Insurance pool ===


@router.post("/insurance/fund", response_model=InsurancePoolResponse)
async def fund_insurance_pool(request: Request) -> InsurancePoolResponse:
    """Move funds from the caller's balance into the insurance pool."""
    payload = await verify_signed_request(request, "fund_insurance_pool")

    ledger = get_escrow_ledger()
    result = await run_in_threadpool(
        ledger.fund_insurance_pool,
        payload["_signer_id"],
        require_field(payload, "currency"),
        require_field(payload, "amount"),
    )
    return InsurancePoolResponse(**result)


@router.get("/insurance/{currency}", response_model=InsurancePoolResponse)
async def get_insurance_pool(currency: str) -> InsurancePoolResponse:
    """Current insurance pool balance for a currency."""
    ledger = get_escrow_ledger()
    balance = await run_in_threadpool(ledger.get_insurance_pool, currency)
    return InsurancePoolResponse(token=currency, balance=balance)
