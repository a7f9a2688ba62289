"""Subscription entitlement collaborator used by promo redemption."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from models.user_credits import UserCredits
from services.credit_types import SubscriptionType


logger = logging.getLogger(__name__)

SUBSCRIPTION_TYPES = ("none", "starter", "pro")


async def ensure_credit_account(
    user: User,
    db: AsyncSession,
    *,
    stripe_customer_id: Optional[str] = None,
) -> UserCredits:
    """Return the user's billing account row, creating it when missing."""
    result = await db.execute(select(UserCredits).where(UserCredits.user_id == user.id))
    account = result.scalar_one_or_none()
    if account is None:
        account = UserCredits(
            user_id=user.id,
            email=user.email,
            subscription_status="none",
            stripe_customer_id=stripe_customer_id,
        )
        db.add(account)
        await db.flush()
    elif stripe_customer_id and not account.stripe_customer_id:
        account.stripe_customer_id = stripe_customer_id
    return account


async def update_user_subscription(
    user_id: str,
    subscription_type: SubscriptionType,
    end_date: Optional[datetime],
    ref: Optional[str],
    db: AsyncSession,
) -> UserCredits:
    """Set subscription status inside the caller's transaction (no commit)."""
    if subscription_type not in SUBSCRIPTION_TYPES:
        raise ValueError(f"Unknown subscription type: {subscription_type}")

    user = await db.get(User, user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    account = await ensure_credit_account(user, db)
    account.subscription_status = subscription_type
    account.subscription_end_date = end_date
    account.subscription_ref = ref
    await db.flush()
    logger.info("Subscription set user=%s type=%s until=%s ref=%s", user_id, subscription_type, end_date, ref)
    return account
