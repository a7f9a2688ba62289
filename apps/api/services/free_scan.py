"""Monthly free-scan entitlement, checked before any ledger debit.

The entitlement is a single ``last_free_scan_at`` timestamp on the user row, not a
ledger entry. Claims take the same per-user lock as credit mutations so "use the
free scan" and "consume a credit" for one user never interleave.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.user import User
from services.credit_errors import CreditValidationError, UserNotFoundError
from services.credit_types import FreeScanResult, FreeScanStatus, ScanCharge
from services.credits import (
    debit_scan_cost_locked,
    find_consumption,
    get_balance,
    lock_user_for_credit_update,
    run_credit_transaction,
)
from services.store_errors import is_unique_violation


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _interval() -> timedelta:
    return timedelta(days=max(int(settings.FREE_SCAN_INTERVAL_DAYS), 1))


def _status_for(last_used: Optional[datetime], now: datetime) -> FreeScanStatus:
    if last_used is None:
        return FreeScanStatus(can_use=True, reason="First free scan available")
    if last_used.tzinfo is None:
        last_used = last_used.replace(tzinfo=timezone.utc)

    interval_days = _interval().days
    days_since = (now - last_used).days
    if days_since >= interval_days:
        return FreeScanStatus(can_use=True, reason="Monthly free scan reset")
    return FreeScanStatus(
        can_use=False,
        reason="Monthly free scan already used",
        days_until_reset=interval_days - days_since,
    )


async def can_use_monthly_free_scan(user_id: str, db: AsyncSession) -> FreeScanStatus:
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        return FreeScanStatus(can_use=False, reason="User not found")
    return _status_for(user.last_free_scan_at, _utcnow())


async def _claim_free_scan_locked(user_id: str, db: AsyncSession) -> FreeScanResult:
    """Conditional single-row UPDATE; the WHERE clause repeats the window check."""
    now = _utcnow()
    result = await db.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(User.last_free_scan_at.is_(None), User.last_free_scan_at <= now - _interval()),
        )
        .values(last_free_scan_at=now)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        status = await can_use_monthly_free_scan(user_id, db)
        return FreeScanResult(success=False, error=status.reason)
    return FreeScanResult(success=True)


async def use_monthly_free_scan(user_id: str, db: AsyncSession) -> FreeScanResult:
    status = await can_use_monthly_free_scan(user_id, db)
    if not status.can_use:
        return FreeScanResult(success=False, error=status.reason)

    async def _body() -> FreeScanResult:
        await lock_user_for_credit_update(user_id, db)
        return await _claim_free_scan_locked(user_id, db)

    try:
        result = await run_credit_transaction(db, _body, operation="use_monthly_free_scan", user_id=user_id)
    except UserNotFoundError as exc:
        return FreeScanResult(success=False, error=str(exc))
    except DBAPIError:
        logger.exception("Free scan claim failed user=%s op=use_monthly_free_scan", user_id)
        return FreeScanResult(success=False, error="Database error")

    if result.success:
        logger.info("Monthly free scan used user=%s", user_id)
    return result


async def charge_scan(user_id: str, job_id: str, db: AsyncSession) -> ScanCharge:
    """Pay for one scan: the free monthly scan when available, otherwise credits.

    A job that already has a ledger debit is replayed rather than charged again.
    """
    job_key = (job_id or "").strip()
    if not job_key:
        raise CreditValidationError("Job ID required for idempotency")

    async def _body() -> ScanCharge:
        await lock_user_for_credit_update(user_id, db)
        replay = await find_consumption(user_id, job_key, db)
        if replay is not None:
            return ScanCharge(
                success=True,
                used_free_scan=False,
                consumed=replay.consumed,
                remaining_balance=replay.remaining_balance,
                idempotent=True,
            )

        free = await _claim_free_scan_locked(user_id, db)
        if free.success:
            return ScanCharge(
                success=True,
                used_free_scan=True,
                consumed=0,
                remaining_balance=await get_balance(user_id, db),
            )

        debit = await debit_scan_cost_locked(user_id, job_key, db)
        return ScanCharge(
            success=debit.success,
            used_free_scan=False,
            consumed=debit.consumed,
            remaining_balance=debit.remaining_balance,
            error=debit.error,
        )

    try:
        charge = await run_credit_transaction(db, _body, operation="charge_scan", user_id=user_id, key=job_key)
    except UserNotFoundError as exc:
        return ScanCharge(success=False, used_free_scan=False, consumed=0, remaining_balance=0, error=str(exc))
    except DBAPIError as exc:
        if is_unique_violation(exc):
            replay = await find_consumption(user_id, job_key, db)
            if replay is not None:
                return ScanCharge(
                    success=True,
                    used_free_scan=False,
                    consumed=replay.consumed,
                    remaining_balance=replay.remaining_balance,
                    idempotent=True,
                )
        logger.exception("Scan charge failed user=%s op=charge_scan job=%s", user_id, job_key)
        return ScanCharge(success=False, used_free_scan=False, consumed=0, remaining_balance=0, error="Database error")

    logger.info(
        "Scan charged user=%s job=%s free=%s consumed=%s idempotent=%s",
        user_id, job_key, charge.used_free_scan, charge.consumed, charge.idempotent,
    )
    return charge
