"""Credit ledger, balance engine and idempotent grant/consume operations.

Every mutation runs in one transaction that first takes the per-user row lock
(``lock_user_for_credit_update``). Duplicate requests are recognised from committed
ledger rows only: ``job_id`` (unique per user) for consumption and ``ext_ref``
(globally unique) for external events.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import func, or_, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditLedger
from models.user import User
from services.credit_errors import (
    CreditValidationError,
    InsufficientCreditsError,
    TransientStoreError,
    UserNotFoundError,
)
from services.credit_types import BalanceDetails, ConsumeResult, ExpiringEntry, GrantResult
from services.store_errors import is_transient_store_error, is_unique_violation


logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNUP_REASON = "signup:free"
CONSUME_REASON = "consume:standard"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _spendable(now: datetime):
    return or_(CreditLedger.expires_at.is_(None), CreditLedger.expires_at > now)


def scan_cost() -> int:
    return max(int(settings.SCAN_COST), 1)


# ---------------------------------------------------------------------------
# Balance engine
# ---------------------------------------------------------------------------


async def get_balance(user_id: str, db: AsyncSession) -> int:
    """Sum of all non-expired deltas for ``user_id``. Never cached."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta), 0)).where(
            CreditLedger.user_id == user_id,
            _spendable(_utcnow()),
        )
    )
    return int(result.scalar() or 0)


async def get_balance_details(user_id: str, db: AsyncSession) -> BalanceDetails:
    """Full breakdown of the ledger: total, spendable, expired, and soon-expiring grants."""
    now = _utcnow()
    window_end = now + timedelta(days=max(int(settings.PENDING_EXPIRY_WINDOW_DAYS), 0))

    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at)
    )
    entries = result.scalars().all()

    total_balance = 0
    unexpired_balance = 0
    expired_credits = 0
    pending_expiry = []
    for entry in entries:
        total_balance += entry.delta
        expires_at = _as_utc(entry.expires_at)
        if expires_at is None or expires_at > now:
            unexpired_balance += entry.delta
        else:
            expired_credits += entry.delta
        if expires_at is not None and now < expires_at <= window_end and entry.delta > 0:
            pending_expiry.append(
                ExpiringEntry(id=entry.id, delta=entry.delta, reason=entry.reason, expires_at=expires_at)
            )

    return BalanceDetails(
        total_balance=total_balance,
        unexpired_balance=unexpired_balance,
        expired_credits=expired_credits,
        pending_expiry=pending_expiry,
    )


async def get_credit_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    bounded_limit = max(1, min(int(limit), 200))
    bounded_offset = max(int(offset), 0)
    rows = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
        .limit(bounded_limit)
        .offset(bounded_offset)
    )
    count = await db.execute(
        select(func.count(CreditLedger.id)).where(CreditLedger.user_id == user_id)
    )
    return {
        "transactions": [serialize_entry(entry) for entry in rows.scalars().all()],
        "total_count": int(count.scalar() or 0),
        "limit": bounded_limit,
        "offset": bounded_offset,
    }


def serialize_entry(entry: CreditLedger) -> Dict[str, Any]:
    expires_at = _as_utc(entry.expires_at)
    created_at = _as_utc(entry.created_at)
    return {
        "id": entry.id,
        "delta": entry.delta,
        "reason": entry.reason,
        "job_id": entry.job_id,
        "ext_ref": entry.ext_ref,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


# ---------------------------------------------------------------------------
# Transaction plumbing
# ---------------------------------------------------------------------------


async def lock_user_for_credit_update(user_id: str, db: AsyncSession) -> None:
    """Take the per-user write lock for the rest of the current transaction.

    The UPDATE holds the user's row lock until commit/rollback on PostgreSQL and
    the database write lock on SQLite, so concurrent mutations for the same user
    are serialised while other users proceed in parallel.
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credit_lock_version=User.credit_lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise UserNotFoundError(f"User {user_id} not found")


async def run_credit_transaction(
    db: AsyncSession,
    body: Callable[[], Awaitable[T]],
    *,
    operation: str,
    user_id: str,
    key: Optional[str] = None,
) -> T:
    """Run ``body`` as one transaction, retrying transient store conflicts.

    Results that changed nothing (business failures, idempotent replays) are rolled
    back so the lock bump is discarded too. Unique violations and credit errors
    propagate to the caller after rollback.
    """
    attempts = max(int(settings.CREDIT_TX_MAX_ATTEMPTS), 1)
    for attempt in range(1, attempts + 1):
        try:
            result = await body()
            if getattr(result, "success", False) and not getattr(result, "idempotent", False):
                await db.commit()
            else:
                await db.rollback()
            return result
        except DBAPIError as exc:
            await db.rollback()
            if not is_transient_store_error(exc):
                raise
            logger.warning(
                "Transient store error op=%s user=%s key=%s attempt=%s/%s: %s",
                operation, user_id, key, attempt, attempts, exc.__class__.__name__,
            )
            if attempt >= attempts:
                raise TransientStoreError(f"{operation} could not complete; retry later") from exc
            await asyncio.sleep(0.05 * attempt)
        except BaseException:
            await db.rollback()
            raise
    raise TransientStoreError(f"{operation} could not complete; retry later")


async def _find_idempotent_entry(
    user_id: str,
    db: AsyncSession,
    *,
    job_id: Optional[str],
    ext_ref: Optional[str],
) -> Optional[CreditLedger]:
    conditions = []
    if job_id:
        conditions.append((CreditLedger.user_id == user_id) & (CreditLedger.job_id == job_id))
    if ext_ref:
        conditions.append(CreditLedger.ext_ref == ext_ref)
    if not conditions:
        return None
    result = await db.execute(select(CreditLedger).where(or_(*conditions)).limit(1))
    return result.scalars().first()


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    reason: str,
    job_id: Optional[str] = None,
    ext_ref: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> CreditLedger:
    entry = CreditLedger(
        user_id=user_id,
        delta=int(delta),
        reason=reason,
        job_id=job_id or None,
        ext_ref=ext_ref or None,
        expires_at=expires_at,
    )
    db.add(entry)
    await db.flush()
    return entry


# ---------------------------------------------------------------------------
# Grant service
# ---------------------------------------------------------------------------


async def grant_credits_locked(
    user_id: str,
    amount: int,
    reason: str,
    db: AsyncSession,
    *,
    job_id: Optional[str] = None,
    ext_ref: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> GrantResult:
    """Grant inside a transaction whose caller already holds the user lock."""
    if int(amount) <= 0:
        raise CreditValidationError("Amount must be positive")

    if job_id or ext_ref:
        existing = await _find_idempotent_entry(user_id, db, job_id=job_id, ext_ref=ext_ref)
        if existing is not None:
            return GrantResult(success=True, new_balance=await get_balance(user_id, db), idempotent=True)

    await _insert_entry(
        user_id,
        db,
        delta=int(amount),
        reason=reason,
        job_id=job_id,
        ext_ref=ext_ref,
        expires_at=expires_at,
    )
    return GrantResult(success=True, new_balance=await get_balance(user_id, db))


async def grant_credits(
    user_id: str,
    amount: int,
    reason: str,
    db: AsyncSession,
    *,
    job_id: Optional[str] = None,
    ext_ref: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> GrantResult:
    """Idempotently append a positive ledger entry for ``user_id``."""
    if int(amount) <= 0:
        return GrantResult(success=False, new_balance=0, error="Amount must be positive")

    key = ext_ref or job_id

    async def _body() -> GrantResult:
        await lock_user_for_credit_update(user_id, db)
        return await grant_credits_locked(
            user_id,
            amount,
            reason,
            db,
            job_id=job_id,
            ext_ref=ext_ref,
            expires_at=expires_at,
        )

    try:
        result = await run_credit_transaction(db, _body, operation="grant_credits", user_id=user_id, key=key)
    except DBAPIError as exc:
        if is_unique_violation(exc):
            logger.info("Idempotent grant (constraint race) user=%s key=%s", user_id, key)
            return GrantResult(success=True, new_balance=await get_balance(user_id, db), idempotent=True)
        logger.exception("Grant failed user=%s op=grant_credits key=%s", user_id, key)
        return GrantResult(success=False, new_balance=0, error="Database error")
    except (UserNotFoundError, CreditValidationError) as exc:
        return GrantResult(success=False, new_balance=0, error=str(exc))

    if result.idempotent:
        logger.info("Idempotent grant user=%s key=%s", user_id, key)
    else:
        logger.info("Granted %s credits user=%s reason=%s key=%s", amount, user_id, reason, key)
    return result


async def grant_purchased_credits(
    user_id: str,
    amount: int,
    reason: str,
    db: AsyncSession,
    *,
    job_id: Optional[str] = None,
    ext_ref: Optional[str] = None,
) -> GrantResult:
    """Purchased credits expire ``PURCHASED_CREDIT_EXPIRY_DAYS`` after the grant."""
    expires_at = _utcnow() + timedelta(days=max(int(settings.PURCHASED_CREDIT_EXPIRY_DAYS), 1))
    return await grant_credits(
        user_id,
        amount,
        reason,
        db,
        job_id=job_id,
        ext_ref=ext_ref,
        expires_at=expires_at,
    )


async def grant_signup_credits(
    user_id: str,
    db: AsyncSession,
    *,
    ext_ref: Optional[str] = None,
) -> GrantResult:
    """Non-expiring signup bonus, keyed by ``signup:<user_id>`` unless told otherwise."""
    return await grant_credits(
        user_id,
        max(int(settings.SIGNUP_BONUS_CREDITS), 1),
        SIGNUP_REASON,
        db,
        ext_ref=ext_ref or f"signup:{user_id}",
    )


# ---------------------------------------------------------------------------
# Consume service
# ---------------------------------------------------------------------------


async def find_consumption(user_id: str, job_id: str, db: AsyncSession) -> Optional[ConsumeResult]:
    """Replay result for a job that already has a ledger entry, else None."""
    result = await db.execute(
        select(CreditLedger).where(
            CreditLedger.user_id == user_id,
            CreditLedger.job_id == job_id,
        )
    )
    existing = result.scalars().first()
    if existing is None:
        return None
    return ConsumeResult(
        success=True,
        remaining_balance=await get_balance(user_id, db),
        consumed=-existing.delta,
        idempotent=True,
    )


async def debit_scan_cost_locked(user_id: str, job_id: str, db: AsyncSession) -> ConsumeResult:
    """Debit inside a transaction that holds the user lock and found no replay."""
    cost = scan_cost()
    balance = await get_balance(user_id, db)
    if balance < cost:
        error = InsufficientCreditsError(required=cost, available=balance)
        return ConsumeResult(success=False, remaining_balance=balance, consumed=0, error=str(error))

    await _insert_entry(user_id, db, delta=-cost, reason=CONSUME_REASON, job_id=job_id)
    return ConsumeResult(success=True, remaining_balance=balance - cost, consumed=cost)


async def consume_credits(user_id: str, job_id: str, db: AsyncSession) -> ConsumeResult:
    """Debit the fixed scan cost for ``job_id`` exactly once.

    Raises ``CreditValidationError`` when ``job_id`` is missing: without a stable key
    a retried request could not be told apart from a new one.
    """
    job_key = (job_id or "").strip()
    if not job_key:
        raise CreditValidationError("Job ID required for idempotency")

    async def _body() -> ConsumeResult:
        await lock_user_for_credit_update(user_id, db)
        replay = await find_consumption(user_id, job_key, db)
        if replay is not None:
            return replay
        return await debit_scan_cost_locked(user_id, job_key, db)

    try:
        result = await run_credit_transaction(db, _body, operation="consume_credits", user_id=user_id, key=job_key)
    except DBAPIError as exc:
        if is_unique_violation(exc):
            replay = await find_consumption(user_id, job_key, db)
            if replay is not None:
                logger.info("Idempotent consume (constraint race) user=%s job=%s", user_id, job_key)
                return replay
        logger.exception("Consume failed user=%s op=consume_credits job=%s", user_id, job_key)
        return ConsumeResult(success=False, remaining_balance=0, consumed=0, error="Database error")
    except UserNotFoundError as exc:
        return ConsumeResult(success=False, remaining_balance=0, consumed=0, error=str(exc))

    if not result.success:
        logger.info("Consume rejected user=%s job=%s: %s", user_id, job_key, result.error)
    elif result.idempotent:
        logger.info("Idempotent consume user=%s job=%s", user_id, job_key)
    else:
        logger.info(
            "Consumed %s credits user=%s job=%s remaining=%s",
            result.consumed, user_id, job_key, result.remaining_balance,
        )
    return result


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Dashboard payload: balance, breakdown, costs and most recent entries."""
    details = await get_balance_details(user_id, db)
    history = await get_credit_history(user_id, db, limit=30)
    return {
        "balance": details.unexpired_balance,
        "balance_details": {
            "total_balance": details.total_balance,
            "unexpired_balance": details.unexpired_balance,
            "expired_credits": details.expired_credits,
            "pending_expiry": [
                {
                    "id": item.id,
                    "delta": item.delta,
                    "reason": item.reason,
                    "expires_at": item.expires_at.isoformat(),
                }
                for item in details.pending_expiry
            ],
        },
        "costs": {"scan": scan_cost()},
        "recent_entries": history["transactions"],
    }

