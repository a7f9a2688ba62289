"""Promo code redemption and generation."""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.promo_code import PromoCode, PromoRedemption
from services.credit_errors import PromoCodeError, UserNotFoundError
from services.credit_types import RedeemResult, SubscriptionType
from services.credits import get_balance, grant_credits_locked, lock_user_for_credit_update, run_credit_transaction
from services.store_errors import is_unique_violation
from services.subscriptions import SUBSCRIPTION_TYPES, update_user_subscription


logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_RANDOM_LENGTH = 8
CODE_MAX_LENGTH = 20
MAX_CODE_ATTEMPTS = 10

INVALID_CODE = "Invalid promo code"
FULLY_REDEEMED = "This promo code has been fully redeemed"
ALREADY_REDEEMED = "You have already used this promo code"
REDEEM_FAILED = "Failed to redeem promo code"


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def promo_grant_ref(promo_id: int, user_id: str) -> str:
    """Deterministic ledger ``ext_ref`` so a retried redemption cannot grant twice."""
    return f"promo_{promo_id}_{user_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def _load_promo_for_update(code: str, db: AsyncSession) -> Optional[PromoCode]:
    result = await db.execute(
        select(PromoCode)
        .where(PromoCode.code == code)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _validate_promo(promo: Optional[PromoCode], user_id: str, db: AsyncSession, now: datetime) -> PromoCode:
    if promo is None:
        raise PromoCodeError(INVALID_CODE)
    if not promo.is_active:
        raise PromoCodeError("This promo code is no longer active")
    expires_at = _as_utc(promo.expires_at)
    if expires_at is not None and now > expires_at:
        raise PromoCodeError("This promo code has expired")
    if promo.current_uses >= promo.max_uses:
        raise PromoCodeError(FULLY_REDEEMED)

    existing = await db.execute(
        select(PromoRedemption.id).where(
            PromoRedemption.user_id == user_id,
            PromoRedemption.promo_code_id == promo.id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise PromoCodeError(ALREADY_REDEEMED)
    return promo


async def redeem_promo_code(user_id: str, code: str, db: AsyncSession) -> RedeemResult:
    """Redeem ``code`` for ``user_id`` at most once.

    Lock order is user row, then promo row. Credit grant, subscription update,
    redemption row and usage counter commit together or not at all.
    """
    normalized = normalize_code(code)
    if not normalized or not user_id:
        return RedeemResult(success=False, credits_granted=0, new_balance=0, error="Code and user ID required")

    async def _body() -> RedeemResult:
        await lock_user_for_credit_update(user_id, db)
        now = _utcnow()
        promo = await _validate_promo(await _load_promo_for_update(normalized, db), user_id, db, now)
        ref = promo_grant_ref(promo.id, user_id)

        if promo.credit_amount > 0:
            grant = await grant_credits_locked(
                user_id,
                promo.credit_amount,
                f"promo:{normalized}",
                db,
                ext_ref=ref,
                expires_at=now + timedelta(days=max(int(settings.PROMO_CREDIT_EXPIRY_DAYS), 1)),
            )
            new_balance = grant.new_balance
        else:
            new_balance = await get_balance(user_id, db)

        subscription_granted: Optional[SubscriptionType] = None
        subscription_days: Optional[int] = None
        if promo.subscription_type != "none" and promo.subscription_days > 0:
            await update_user_subscription(
                user_id,
                promo.subscription_type,
                now + timedelta(days=promo.subscription_days),
                ref,
                db,
            )
            subscription_granted = promo.subscription_type
            subscription_days = promo.subscription_days

        db.add(
            PromoRedemption(
                user_id=user_id,
                promo_code_id=promo.id,
                credits_granted=promo.credit_amount,
                subscription_granted=subscription_granted,
                subscription_days=subscription_days,
            )
        )
        await db.flush()
        await db.execute(
            update(PromoCode)
            .where(PromoCode.id == promo.id)
            .values(current_uses=PromoCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )

        return RedeemResult(
            success=True,
            credits_granted=promo.credit_amount,
            new_balance=new_balance,
            subscription_granted=subscription_granted,
            subscription_days=subscription_days,
        )

    try:
        result = await run_credit_transaction(db, _body, operation="redeem_promo_code", user_id=user_id, key=normalized)
    except (PromoCodeError, UserNotFoundError) as exc:
        logger.info("Promo redemption rejected user=%s code=%s: %s", user_id, normalized, exc)
        return RedeemResult(
            success=False,
            credits_granted=0,
            new_balance=await get_balance(user_id, db),
            error=str(exc),
        )
    except DBAPIError as exc:
        if is_unique_violation(exc):
            logger.info("Promo redemption race user=%s code=%s", user_id, normalized)
            return RedeemResult(
                success=False,
                credits_granted=0,
                new_balance=await get_balance(user_id, db),
                error=ALREADY_REDEEMED,
            )
        logger.exception("Promo redemption failed user=%s op=redeem_promo_code code=%s", user_id, normalized)
        return RedeemResult(success=False, credits_granted=0, new_balance=0, error=REDEEM_FAILED)

    logger.info(
        "Promo code %s redeemed user=%s credits=%s subscription=%s days=%s",
        normalized, user_id, result.credits_granted, result.subscription_granted, result.subscription_days,
    )
    return result


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromoTemplate:
    prefix: str
    credit_amount: int
    count: int
    subscription_type: SubscriptionType = "none"
    subscription_days: int = 0
    max_uses: int = 1
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None


DEFAULT_PROMO_TEMPLATES = (
    PromoTemplate(prefix="EARLY", credit_amount=50, count=20, notes="Early access - 50 free credits"),
    PromoTemplate(
        prefix="PRO30",
        credit_amount=100,
        count=10,
        subscription_type="pro",
        subscription_days=30,
        notes="Pro trial - 100 credits + 30 days pro",
    ),
    PromoTemplate(
        prefix="VIP90",
        credit_amount=200,
        count=5,
        subscription_type="pro",
        subscription_days=90,
        notes="VIP access - 200 credits + 90 days pro",
    ),
    PromoTemplate(prefix="BETA", credit_amount=25, count=15, notes="Beta tester - 25 free credits"),
)


def generate_code(prefix: str) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_RANDOM_LENGTH))
    return f"{normalize_code(prefix)}{suffix}"


def _validate_template(template: PromoTemplate) -> None:
    if len(normalize_code(template.prefix)) + CODE_RANDOM_LENGTH > CODE_MAX_LENGTH:
        raise ValueError(f"Prefix {template.prefix!r} too long for a {CODE_MAX_LENGTH}-char code")
    if template.subscription_type not in SUBSCRIPTION_TYPES:
        raise ValueError(f"Unknown subscription type: {template.subscription_type}")
    if template.credit_amount < 0 or template.count < 0 or template.max_uses < 1:
        raise ValueError("credit_amount/count must be >= 0 and max_uses >= 1")


async def _unused_code(prefix: str, taken: Set[str], db: AsyncSession) -> str:
    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = generate_code(prefix)
        if candidate in taken:
            continue
        existing = await db.execute(select(PromoCode.id).where(PromoCode.code == candidate))
        if existing.scalar_one_or_none() is None:
            return candidate
    raise RuntimeError(f"Failed to generate unique code for prefix {prefix} after {MAX_CODE_ATTEMPTS} attempts")


async def generate_promo_codes(
    templates: Iterable[PromoTemplate],
    db: AsyncSession,
    *,
    created_by: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Create random single-prefix codes for each template and commit them together."""
    template_list = list(templates)
    for template in template_list:
        _validate_template(template)

    taken: Set[str] = set()
    generated: List[Dict[str, Any]] = []
    for template in template_list:
        for _ in range(template.count):
            code = await _unused_code(template.prefix, taken, db)
            taken.add(code)
            db.add(
                PromoCode(
                    code=code,
                    credit_amount=template.credit_amount,
                    subscription_type=template.subscription_type,
                    subscription_days=template.subscription_days,
                    max_uses=template.max_uses,
                    current_uses=0,
                    expires_at=template.expires_at,
                    is_active=True,
                    created_by=created_by,
                    notes=template.notes,
                )
            )
            generated.append(
                {
                    "code": code,
                    "type": normalize_code(template.prefix),
                    "credit_amount": template.credit_amount,
                    "subscription_type": template.subscription_type,
                    "subscription_days": template.subscription_days,
                    "max_uses": template.max_uses,
                }
            )

    await db.commit()
    logger.info("Generated %s promo codes", len(generated))
    return generated
