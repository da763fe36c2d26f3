"""Credits router: balance, history, packages, checkout and admin ledger tools."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.deps import get_billing_service, get_credit_ledger
from routers.rate_limit import rate_limit
from services.billing import BillingService
from services.credits import (
    HISTORY_DEFAULT_LIMIT,
    CreditLedger,
    clamp_history_limit,
    serialize_package,
    serialize_transaction,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    package_id: str = Field(min_length=1, validation_alias=AliasChoices("package_id", "packageId"))
    quantity: int = 1
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class AdminCreditRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int
    description: Optional[str] = None


class AdminAdjustRequest(BaseModel):
    user_id: str = Field(min_length=1)
    new_balance: int
    description: Optional[str] = None


@router.get("/balance")
async def credits_balance(
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return {"credits": await ledger.get_balance(auth.user_id), "user_id": auth.user_id}


@router.get("/history")
async def credits_history(
    limit: int = Query(default=HISTORY_DEFAULT_LIMIT),
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    effective_limit = clamp_history_limit(limit)
    entries = await ledger.history(auth.user_id, effective_limit)
    return {
        "history": [serialize_transaction(entry) for entry in entries],
        "user_id": auth.user_id,
        "limit": effective_limit,
    }


@router.get("/packages")
async def credit_packages(ledger: CreditLedger = Depends(get_credit_ledger)):
    packages = await ledger.list_packages()
    return {
        "packages": [serialize_package(package) for package in packages],
        "generation_cost": max(int(settings.GENERATION_CREDIT_COST), 1),
    }


@router.post("/purchase")
async def purchase_credits(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("credits_purchase", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    billing: BillingService = Depends(get_billing_service),
):
    return await billing.create_checkout(
        auth.user_id,
        request.package_id,
        request.quantity,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )


@router.post("/admin/add")
async def admin_add_credits(
    request: AdminCreditRequest,
    admin: AuthContext = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    new_balance = await ledger.credit(
        request.user_id,
        request.amount,
        request.description or "Admin credit grant",
    )
    logger.info("Admin %s granted %s credits to user=%s", admin.user_id, request.amount, request.user_id)
    return {"user_id": request.user_id, "amount": request.amount, "new_balance": new_balance}


@router.post("/admin/adjust")
async def admin_adjust_credits(
    request: AdminAdjustRequest,
    admin: AuthContext = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    new_balance = await ledger.adjust(
        request.user_id,
        request.new_balance,
        request.description or f"Admin balance set by {admin.user_id}",
    )
    return {"user_id": request.user_id, "new_balance": new_balance}


@router.get("/admin/stats")
async def admin_credit_stats(
    _admin: AuthContext = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return {"stats": await ledger.stats()}


@router.get("/admin/reconcile/{user_id}")
async def admin_reconcile(
    user_id: str,
    _admin: AuthContext = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    return await ledger.reconcile(user_id)


@router.post("/admin/seed-packages")
async def admin_seed_packages(
    _admin: AuthContext = Depends(require_admin),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    seeded = await ledger.seed_packages()
    packages = await ledger.list_packages()
    return {"seeded": seeded, "count": len(packages)}
