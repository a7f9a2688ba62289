"""Payment-event processing with two independent idempotency keys.

1. ``billing_transactions`` audit row per processed external transaction id.
2. The ledger's globally unique ``ext_ref`` set to the same id.

A crash after the ledger insert but before the audit insert is recovered on
redelivery: the grant replays idempotently and the audit row is then written.
Signature verification happens in the router before anything here runs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.billing_transaction import BillingTransaction
from models.user import User
from services.credit_errors import PaymentProcessingError
from services.credit_types import WebhookResult
from services.credits import get_balance, grant_purchased_credits
from services.identity import resolve_or_create_user
from services.pricing import get_pack, pack_for_price_id
from services.store_errors import is_unique_violation
from services.subscriptions import ensure_credit_account


logger = logging.getLogger(__name__)

PURCHASE_OPERATION = "purchase_credits"


async def is_event_processed(external_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(BillingTransaction.id).where(
            BillingTransaction.operation_type == PURCHASE_OPERATION,
            BillingTransaction.run_id == external_id,
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def process_payment_event(
    external_id: str,
    db: AsyncSession,
    *,
    credits: int,
    reason: str,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    customer_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> WebhookResult:
    """Grant purchased credits for an already-verified payment exactly once."""
    if not external_id:
        return WebhookResult(processed=False, already_processed=False, error="Missing external transaction id")
    if int(credits) <= 0:
        return WebhookResult(processed=False, already_processed=False, error="No credits attached to payment")

    if await is_event_processed(external_id, db):
        logger.info("Payment %s already processed; skipping", external_id)
        return WebhookResult(processed=False, already_processed=True)

    user = await resolve_or_create_user(db, user_id=user_id, email=email, customer_id=customer_id)
    resolved_user_id = user.id

    grant = await grant_purchased_credits(resolved_user_id, int(credits), reason, db, ext_ref=external_id)
    if not grant.success:
        logger.error("Credit grant failed for payment %s user=%s: %s", external_id, resolved_user_id, grant.error)
        return WebhookResult(
            processed=False,
            already_processed=False,
            user_id=resolved_user_id,
            error=grant.error or "Failed to grant credits",
        )

    # Replays roll the session back, which expires loaded instances.
    user = await db.get(User, resolved_user_id, populate_existing=True)
    audit = BillingTransaction(
        user_id=resolved_user_id,
        operation_type=PURCHASE_OPERATION,
        run_id=external_id,
        metadata_json={
            "credits_added": int(credits),
            "reason": reason,
            "ledger_idempotent": grant.idempotent,
            **(metadata or {}),
        },
    )
    db.add(audit)
    account = await ensure_credit_account(user, db)
    account.last_payment_date = datetime.now(timezone.utc)
    try:
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        if not is_unique_violation(exc):
            raise
        logger.info("Payment %s audit row raced with a concurrent delivery", external_id)
        return WebhookResult(
            processed=False,
            already_processed=True,
            user_id=resolved_user_id,
            new_balance=await get_balance(resolved_user_id, db),
        )

    if grant.idempotent:
        # Ledger already had the grant; only the audit row was missing.
        logger.info("Recovered audit record for payment %s user=%s", external_id, resolved_user_id)
    else:
        logger.info("Granted %s credits for payment %s user=%s", credits, external_id, resolved_user_id)

    return WebhookResult(
        processed=True,
        already_processed=grant.idempotent,
        user_id=resolved_user_id,
        credits_granted=0 if grant.idempotent else int(credits),
        new_balance=grant.new_balance,
    )


def _int_or_zero(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _credits_for(metadata: Dict[str, Any]) -> tuple:
    pack = get_pack(metadata.get("package") or metadata.get("tier")) or pack_for_price_id(metadata.get("price_id"))
    if pack is not None:
        return pack.credits, pack.reason
    credits = _int_or_zero(metadata.get("credits"))
    package = metadata.get("package") or "unknown"
    return credits, f"checkout:{package}_{credits}"


async def handle_stripe_event(event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Dispatch a verified Stripe event. Returns a small JSON-able summary.

    Raises ``PaymentProcessingError`` when a payable event could not be credited,
    so the webhook responds with an error and Stripe redelivers it.
    """
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    customer = obj.get("customer") if isinstance(obj.get("customer"), str) else None

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            logger.info("Checkout session %s not paid yet", obj.get("id"))
            return {"handled": False, "reason": "not_paid"}
        credits, reason = _credits_for(metadata)
        user_id = obj.get("client_reference_id") or metadata.get("user_id")
        email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
    elif event_type == "payment_intent.succeeded":
        pack = get_pack(metadata.get("tier"))
        if pack is None:
            logger.error("Unknown or unsupported tier in payment intent %s: %s", obj.get("id"), metadata.get("tier"))
            return {"handled": False, "reason": "unknown_tier"}
        credits, reason = pack.credits, pack.reason
        user_id = metadata.get("user_id")
        email = obj.get("receipt_email")
    else:
        logger.info("Unhandled webhook event type: %s", event_type)
        return {"handled": False, "reason": "unhandled_type"}

    if not user_id and not email:
        logger.error("Payment %s (%s) carries no user id or email", obj.get("id"), event_type)
        return {"handled": False, "reason": "no_user"}
    if credits <= 0:
        logger.error("Payment %s (%s) maps to no credit pack", obj.get("id"), event_type)
        return {"handled": False, "reason": "no_credits"}

    result = await process_payment_event(
        obj.get("id"),
        db,
        credits=credits,
        reason=reason,
        user_id=user_id,
        email=email,
        customer_id=customer,
        metadata={"event_id": event.get("id"), "event_type": event_type},
    )
    if result.error:
        raise PaymentProcessingError(result.error)
    return {
        "handled": True,
        "processed": result.processed,
        "already_processed": result.already_processed,
        "user_id": result.user_id,
        "credits_granted": result.credits_granted,
    }
