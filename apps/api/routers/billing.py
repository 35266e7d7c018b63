"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from config import settings
from database import LedgerStore, get_store
from models.account import SubscriptionPeriod, SubscriptionTier
from routers.auth_scope import AuthContext, get_auth_context, require_admin_key
from routers.rate_limit import rate_limit
from services.access_gate import authorize
from services.accounts import get_or_create_user
from services.credit_errors import ValidationError
from services.credits import (
    add_credits,
    get_credit_balance,
    get_credit_summary,
    refund_credits,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    email: str = Field(min_length=3)
    pack: Literal["trial", "monthly", "yearly", "custom"] = "trial"
    credits: Optional[int] = Field(default=None, ge=1, le=10000)
    tier: Optional[SubscriptionTier] = None
    external_id: Optional[str] = None


class CreditRefundRequest(BaseModel):
    email: str = Field(min_length=3)
    credits: int = Field(ge=1, le=10000)
    reason: str = Field(default="Manual refund", min_length=1, max_length=500)


def _resolve_pack(request: CreditTopUpRequest):
    if request.pack == "custom":
        if request.credits is None:
            raise ValidationError("credits is required for a custom top-up")
        return request.credits, None
    if request.pack == "monthly":
        return request.credits or int(settings.MONTHLY_CREDITS), SubscriptionPeriod.MONTHLY
    if request.pack == "yearly":
        return request.credits or int(settings.YEARLY_CREDITS), SubscriptionPeriod.YEARLY
    return request.credits or int(settings.TRIAL_CREDITS), None


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_store),
):
    await get_or_create_user(store, auth.email)
    return await get_credit_summary(store, auth.email)


@router.get("/balance")
async def credits_balance(
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_store),
):
    return {"credits": await get_credit_balance(store, auth.email)}


@router.get("/access")
async def access_check(
    credits: int = Query(default=1, ge=1, le=100),
    tier: Optional[SubscriptionTier] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_store),
):
    decision = await authorize(store, auth.email, credits, tier)
    return decision.to_detail()


@router.post("/topup", dependencies=[Depends(require_admin_key)])
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    store: LedgerStore = Depends(get_store),
):
    amount, period = _resolve_pack(request)
    tier = request.tier if period is not None else None

    await get_or_create_user(store, request.email, request.external_id)
    account = await add_credits(
        store,
        request.email,
        amount,
        period,
        request.external_id,
        tier=tier,
        description=f"manual {request.pack} top-up",
    )
    logger.info("manual_topup email=%s pack=%s credits=%s", request.email, request.pack, amount)
    return {
        "ok": True,
        "credits_added": amount,
        "balance_after": int(account.credits or 0),
        "account": account.to_dict(),
    }


@router.post("/refund", dependencies=[Depends(require_admin_key)])
async def manual_refund(
    request: CreditRefundRequest,
    store: LedgerStore = Depends(get_store),
):
    account = await refund_credits(store, request.email, request.credits, reason=request.reason)
    return {
        "ok": True,
        "credits_refunded": request.credits,
        "balance_after": int(account.credits or 0),
    }
