"""Promo code redemption and operator generation."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.identity import ensure_user
from services.promo_codes import (
    ALREADY_REDEEMED,
    FULLY_REDEEMED,
    INVALID_CODE,
    REDEEM_FAILED,
    DEFAULT_PROMO_TEMPLATES,
    PromoTemplate,
    generate_promo_codes,
    redeem_promo_code,
)

router = APIRouter()

_NOT_FOUND_ERRORS = {INVALID_CODE}
_CONFLICT_ERRORS = {ALREADY_REDEEMED, FULLY_REDEEMED}


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    user_id: Optional[str] = None


class PromoTemplateRequest(BaseModel):
    prefix: str = Field(min_length=1, max_length=12)
    credit_amount: int = Field(ge=0, le=100000)
    count: int = Field(ge=1, le=500)
    subscription_type: str = "none"
    subscription_days: int = Field(default=0, ge=0, le=3650)
    max_uses: int = Field(default=1, ge=1, le=100000)
    notes: Optional[str] = None


class GenerateRequest(BaseModel):
    templates: Optional[List[PromoTemplateRequest]] = None


@router.post("/redeem")
async def redeem(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("promo_redeem", limit=10, window_seconds=300)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)

    result = await redeem_promo_code(scoped_user_id, request.code, db)
    if not result.success:
        if result.error in _NOT_FOUND_ERRORS:
            status_code = 404
        elif result.error in _CONFLICT_ERRORS:
            status_code = 409
        elif result.error == REDEEM_FAILED:
            status_code = 500
        else:
            status_code = 400
        raise HTTPException(status_code=status_code, detail=result.error)

    return {
        "success": True,
        "credits_granted": result.credits_granted,
        "new_balance": result.new_balance,
        "subscription_granted": result.subscription_granted,
        "subscription_days": result.subscription_days,
    }


@router.post("/generate", dependencies=[Depends(require_admin)])
async def generate(request: GenerateRequest, db: AsyncSession = Depends(get_db)):
    if request.templates:
        templates = [PromoTemplate(**item.model_dump()) for item in request.templates]
    else:
        templates = list(DEFAULT_PROMO_TEMPLATES)

    try:
        codes = await generate_promo_codes(templates, db)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"count": len(codes), "codes": codes}
