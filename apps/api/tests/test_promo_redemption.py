import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.promo_code import PromoCode, PromoRedemption
from models.user_credits import UserCredits
from services import promo_codes as promo_codes_service
from services.credits import get_balance
from services.promo_codes import (
    ALREADY_REDEEMED,
    DEFAULT_PROMO_TEMPLATES,
    PromoTemplate,
    generate_code,
    generate_promo_codes,
    redeem_promo_code,
)


async def _add_promo(session_maker, **fields):
    values = {
        "code": "WELCOME10",
        "credit_amount": 10,
        "subscription_type": "none",
        "subscription_days": 0,
        "max_uses": 1,
        "current_uses": 0,
        "is_active": True,
    }
    values.update(fields)
    async with session_maker() as session:
        promo = PromoCode(**values)
        session.add(promo)
        await session.commit()
        return promo.id


async def _promo(session_maker, promo_id):
    async with session_maker() as session:
        return await session.get(PromoCode, promo_id)


@pytest.mark.asyncio
async def test_redeem_grants_credits_once(session_maker, make_user):
    user_id = await make_user("promo-user")
    promo_id = await _add_promo(session_maker, max_uses=5)

    async with session_maker() as db:
        first = await redeem_promo_code(user_id, " welcome10 ", db)
        second = await redeem_promo_code(user_id, "WELCOME10", db)

    assert first.success is True
    assert first.credits_granted == 10
    assert first.new_balance == 10
    assert second.success is False
    assert second.error == "You have already used this promo code"
    assert second.new_balance == 10

    promo = await _promo(session_maker, promo_id)
    assert promo.current_uses == 1

    async with session_maker() as session:
        entries = (await session.execute(select(CreditLedger))).scalars().all()
    assert len(entries) == 1
    assert entries[0].reason == "promo:WELCOME10"
    assert entries[0].ext_ref == f"promo_{promo_id}_{user_id}"
    lifetime = entries[0].expires_at.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
    assert timedelta(days=364) < lifetime <= timedelta(days=365)


@pytest.mark.parametrize(
    "fields, expected_error",
    [
        ({"code": "OTHERCODE"}, "Invalid promo code"),
        ({"is_active": False}, "This promo code is no longer active"),
        ({"expires_at": datetime.now(timezone.utc) - timedelta(days=1)}, "This promo code has expired"),
        ({"current_uses": 1, "max_uses": 1}, "This promo code has been fully redeemed"),
    ],
)
@pytest.mark.asyncio
async def test_redeem_rejects_unusable_codes(session_maker, make_user, fields, expected_error):
    user_id = await make_user("reject-user")
    await _add_promo(session_maker, **fields)

    async with session_maker() as db:
        result = await redeem_promo_code(user_id, "WELCOME10", db)
        assert await get_balance(user_id, db) == 0

    assert result.success is False
    assert result.error == expected_error
    assert result.credits_granted == 0


@pytest.mark.asyncio
async def test_inactive_check_runs_before_expiry_and_usage(session_maker, make_user):
    user_id = await make_user("order-user")
    await _add_promo(
        session_maker,
        is_active=False,
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        current_uses=1,
    )

    async with session_maker() as db:
        result = await redeem_promo_code(user_id, "WELCOME10", db)

    assert result.error == "This promo code is no longer active"


@pytest.mark.asyncio
async def test_redeem_requires_code_and_user(session_maker):
    async with session_maker() as db:
        result = await redeem_promo_code("someone", "   ", db)

    assert result.success is False
    assert result.error == "Code and user ID required"


@pytest.mark.asyncio
async def test_single_use_code_redeemed_by_one_of_many_users(session_maker, make_user):
    users = [await make_user(f"racer-{index}") for index in range(5)]
    promo_id = await _add_promo(session_maker, code="ONESHOT", max_uses=1)

    async def _redeem(user_id):
        async with session_maker() as db:
            return await redeem_promo_code(user_id, "ONESHOT", db)

    results = await asyncio.gather(*[_redeem(user_id) for user_id in users])

    winners = [result for result in results if result.success]
    assert len(winners) == 1
    assert all(
        result.error == "This promo code has been fully redeemed" for result in results if not result.success
    )
    promo = await _promo(session_maker, promo_id)
    assert promo.current_uses == 1


@pytest.mark.asyncio
async def test_same_user_concurrent_redemptions_grant_once(session_maker, make_user):
    user_id = await make_user("double-tap")
    await _add_promo(session_maker, code="TWICE", max_uses=10)

    async def _redeem():
        async with session_maker() as db:
            return await redeem_promo_code(user_id, "TWICE", db)

    results = await asyncio.gather(*[_redeem() for _ in range(4)])

    assert sum(1 for result in results if result.success) == 1
    async with session_maker() as db:
        assert await get_balance(user_id, db) == 10
        redemptions = (await db.execute(select(PromoRedemption))).scalars().all()
    assert len(redemptions) == 1


@pytest.mark.asyncio
async def test_redeem_grants_subscription_with_credits(session_maker, make_user):
    user_id = await make_user("sub-user")
    await _add_promo(session_maker, code="PRO30TEST", credit_amount=100, subscription_type="pro", subscription_days=30)

    async with session_maker() as db:
        result = await redeem_promo_code(user_id, "PRO30TEST", db)

    assert result.success is True
    assert result.credits_granted == 100
    assert result.subscription_granted == "pro"
    assert result.subscription_days == 30

    async with session_maker() as session:
        account = (
            await session.execute(select(UserCredits).where(UserCredits.user_id == user_id))
        ).scalar_one()
        redemption = (await session.execute(select(PromoRedemption))).scalar_one()
    assert account.subscription_status == "pro"
    assert account.subscription_end_date is not None
    assert redemption.subscription_granted == "pro"
    assert redemption.credits_granted == 100


@pytest.mark.asyncio
async def test_generate_promo_codes_creates_unique_codes(session_maker):
    async with session_maker() as db:
        codes = await generate_promo_codes(DEFAULT_PROMO_TEMPLATES, db)

    assert len(codes) == 50
    assert len({item["code"] for item in codes}) == 50
    assert all(len(item["code"]) <= 20 for item in codes)
    pro = [item for item in codes if item["type"] == "PRO30"]
    assert len(pro) == 10
    assert all(item["subscription_type"] == "pro" and item["subscription_days"] == 30 for item in pro)

    async with session_maker() as session:
        stored = (await session.execute(select(PromoCode))).scalars().all()
    assert len(stored) == 50
    assert all(promo.is_active and promo.current_uses == 0 for promo in stored)


@pytest.mark.asyncio
async def test_generate_rejects_overlong_prefix(session_maker):
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await generate_promo_codes([PromoTemplate(prefix="WAYTOOLONGPREFIX", credit_amount=5, count=1)], db)


def test_generated_code_shape():
    code = generate_code("early")
    assert code.startswith("EARLY")
    assert len(code) == 13
    assert code[5:].isalnum() and code[5:].upper() == code[5:]


@pytest.mark.asyncio
async def test_redemption_insert_conflict_reports_already_redeemed(session_maker, make_user, monkeypatch):
    user_id = await make_user("conflict-user")
    promo_id = await _add_promo(session_maker, code="CONFLICT5", credit_amount=5, max_uses=10)
    async with session_maker() as db:
        first = await redeem_promo_code(user_id, "CONFLICT5", db)

    async def _skip_prior_redemption_check(promo, user_id, db, now):
        return promo

    monkeypatch.setattr(promo_codes_service, "_validate_promo", _skip_prior_redemption_check)
    async with session_maker() as db:
        second = await redeem_promo_code(user_id, "CONFLICT5", db)
        balance = await get_balance(user_id, db)

    assert first.success is True
    assert second.success is False
    assert second.error == ALREADY_REDEEMED
    assert second.new_balance == 5
    assert balance == 5

    promo = await _promo(session_maker, promo_id)
    assert promo.current_uses == 1
    async with session_maker() as session:
        redemptions = (await session.execute(select(PromoRedemption))).scalars().all()
        entries = (await session.execute(select(CreditLedger))).scalars().all()
    assert len(redemptions) == 1
    assert len(entries) == 1
