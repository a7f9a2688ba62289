"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.billing_webhooks import process_payment_event
from services.credit_errors import CreditValidationError
from services.credits import (
    consume_credits,
    get_balance,
    get_balance_details,
    get_credit_history,
    get_credit_summary,
    grant_signup_credits,
)
from services.free_scan import can_use_monthly_free_scan, charge_scan, use_monthly_free_scan
from services.identity import ensure_user
from services.pricing import get_pack, list_packs

router = APIRouter()
logger = logging.getLogger(__name__)


class JobRequest(BaseModel):
    job_id: str = Field(min_length=1, max_length=200)
    user_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    pack: str = "starter"
    user_id: Optional[str] = None


class ManualGrantRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)
    user_id: Optional[str] = None
    email: Optional[str] = None
    pack: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1, le=100000)


def _consume_status(error: Optional[str]) -> int:
    if error and error.startswith("Insufficient credits"):
        return 402
    if error and error.startswith("User ") and error.endswith("not found"):
        return 404
    return 500


async def _scoped_user(auth: AuthContext, supplied_user_id: Optional[str], db: AsyncSession) -> str:
    scoped_user_id = ensure_user_scope(auth.user_id, supplied_user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    return scoped_user_id


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, user_id, db)
    summary = await get_credit_summary(scoped_user_id, db)
    free_scan = await can_use_monthly_free_scan(scoped_user_id, db)
    summary["monthly_free_scan"] = {
        "can_use": free_scan.can_use,
        "reason": free_scan.reason,
        "days_until_reset": free_scan.days_until_reset,
    }
    return summary


@router.get("/balance")
async def balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, user_id, db)
    details = await get_balance_details(scoped_user_id, db)
    return {
        "balance": await get_balance(scoped_user_id, db),
        "total_balance": details.total_balance,
        "expired_credits": details.expired_credits,
        "pending_expiry_count": len(details.pending_expiry),
    }


@router.get("/history")
async def history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, user_id, db)
    return await get_credit_history(scoped_user_id, db, limit=limit, offset=offset)


@router.post("/consume")
async def consume(
    request: JobRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, request.user_id, db)
    try:
        result = await consume_credits(scoped_user_id, request.job_id, db)
    except CreditValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not result.success:
        raise HTTPException(status_code=_consume_status(result.error), detail=result.error)
    return {
        "success": True,
        "consumed": result.consumed,
        "remaining_balance": result.remaining_balance,
        "idempotent": result.idempotent,
    }


@router.post("/scan")
async def scan(
    request: JobRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Pay for one scan, preferring the monthly free scan over credits."""
    scoped_user_id = await _scoped_user(auth, request.user_id, db)
    try:
        charge = await charge_scan(scoped_user_id, request.job_id, db)
    except CreditValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not charge.success:
        raise HTTPException(status_code=_consume_status(charge.error), detail=charge.error)
    return {
        "success": True,
        "used_free_scan": charge.used_free_scan,
        "consumed": charge.consumed,
        "remaining_balance": charge.remaining_balance,
        "idempotent": charge.idempotent,
    }


@router.post("/monthly-free")
async def monthly_free(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, user_id, db)
    result = await use_monthly_free_scan(scoped_user_id, db)
    if not result.success:
        raise HTTPException(status_code=402, detail=result.error)
    return {"success": True}


@router.post("/signup-bonus")
async def signup_bonus(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = await _scoped_user(auth, user_id, db)
    result = await grant_signup_credits(scoped_user_id, db)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)
    return {
        "success": True,
        "credits_granted": 0 if result.idempotent else int(settings.SIGNUP_BONUS_CREDITS),
        "new_balance": result.new_balance,
        "idempotent": result.idempotent,
    }


@router.get("/packs")
async def packs():
    return {"currency": "GBP", "packs": list_packs()}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    """Validate a pack purchase and return the configured checkout URL.

    Stripe Checkout Sessions are not created here; credits arrive through the
    payment webhook once the hosted checkout completes.
    """
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)

    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to use checkout.")

    pack = get_pack(request.pack)
    if pack is None:
        raise HTTPException(status_code=400, detail=f"Unknown credit pack: {request.pack}")
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    return {
        "checkout_url": settings.STRIPE_SUCCESS_URL,
        "user_id": scoped_user_id,
        "pack": pack.key,
        "credits": pack.credits,
        "status": "stub",
    }


@router.post("/manual-grant", dependencies=[Depends(require_admin)])
async def manual_grant(
    request: ManualGrantRequest,
    _rate_limit: None = Depends(rate_limit("billing_manual_grant", limit=30, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Credit a paid checkout session by hand; shares idempotency keys with the webhook."""
    pack = get_pack(request.pack)
    credits = request.credits or (pack.credits if pack else 0)
    if credits <= 0:
        raise HTTPException(status_code=400, detail="Either a known pack or credits is required")
    if not request.user_id and not request.email:
        raise HTTPException(status_code=400, detail="user_id or email is required")

    result = await process_payment_event(
        request.session_id,
        db,
        credits=credits,
        reason=pack.reason if pack else f"purchase:manual_{credits}",
        user_id=request.user_id,
        email=request.email,
        metadata={"source": "manual_grant"},
    )
    if result.error:
        raise HTTPException(status_code=500, detail=result.error)

    logger.info("Manual grant for session %s processed=%s", request.session_id, result.processed)
    return {
        "success": True,
        "already_processed": result.already_processed,
        "user_id": result.user_id,
        "credits_granted": result.credits_granted,
        "new_balance": result.new_balance,
    }
