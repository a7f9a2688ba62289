"""User resolution shared by the billing router and payment processing."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.store_errors import is_unique_violation
from services.subscriptions import ensure_credit_account


logger = logging.getLogger(__name__)


def normalize_email(value: Optional[str]) -> Optional[str]:
    return (value or "").strip().lower() or None


def placeholder_email(user_id: str) -> str:
    return f"{user_id}@local.invalid"


async def _find_user(db: AsyncSession, user_id: Optional[str], email: Optional[str]) -> Optional[User]:
    if user_id:
        user = await db.get(User, user_id)
        if user is not None:
            return user
    if email:
        result = await db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()
    return None


async def _insert_user(db: AsyncSession, user: User) -> bool:
    """Insert and commit ``user``; False when a concurrent request created it first."""
    db.add(user)
    try:
        await db.commit()
    except DBAPIError as exc:
        await db.rollback()
        if not is_unique_violation(exc):
            raise
        return False
    logger.info("Created user %s", user.id)
    return True


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the user with this exact id, creating and committing it when missing."""
    user = await db.get(User, user_id)
    if user is not None:
        return user

    clean_email = normalize_email(email)
    if clean_email:
        taken = await db.execute(select(User.id).where(User.email == clean_email))
        if taken.scalar_one_or_none() is not None:
            clean_email = None

    user = User(id=user_id, email=clean_email or placeholder_email(user_id))
    if await _insert_user(db, user):
        return user
    user = await db.get(User, user_id)
    if user is None:
        raise LookupError(f"User {user_id} could not be created")
    return user


async def resolve_or_create_user(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> User:
    """Find the paying user (by id, then email) or create one; ensure a billing account."""
    clean_email = normalize_email(email)
    if not user_id and not clean_email:
        raise ValueError("Payment carries neither user id nor email")

    user = await _find_user(db, user_id, clean_email)
    if user is None:
        new_id = user_id or str(uuid.uuid4())
        await _insert_user(db, User(id=new_id, email=clean_email or placeholder_email(new_id)))
        user = await _find_user(db, new_id, clean_email)
        if user is None:
            raise LookupError(f"User {new_id} could not be created")

    await ensure_credit_account(user, db, stripe_customer_id=customer_id)
    await db.commit()
    return user
