import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.billing_transaction import BillingTransaction
from models.credit_ledger import CreditLedger
from models.user import User
from models.user_credits import UserCredits
from services.billing_webhooks import handle_stripe_event, process_payment_event
from services.credits import get_balance, grant_purchased_credits


WEBHOOK_USER_ID = "buyer-1"


def _checkout_event(session_id="cs_test_123", *, user_id=WEBHOOK_USER_ID, email=None, package="starter", paid=True):
    return {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": "paid" if paid else "unpaid",
                "client_reference_id": user_id,
                "customer": "cus_123",
                "customer_details": {"email": email},
                "metadata": {"package": package},
            }
        },
    }


def _signature_header(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest_asyncio.fixture
async def webhook_client(session_maker, make_user):
    await make_user(WEBHOOK_USER_ID, "buyer@example.com")

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


async def _audit_rows(session_maker, run_id):
    async with session_maker() as session:
        result = await session.execute(select(BillingTransaction).where(BillingTransaction.run_id == run_id))
        return result.scalars().all()


@pytest.mark.asyncio
async def test_payment_event_grants_once(session_maker, make_user):
    user_id = await make_user("payer")

    async with session_maker() as db:
        first = await process_payment_event("cs_once", db, credits=50, reason="purchase:starter_50", user_id=user_id)
        second = await process_payment_event("cs_once", db, credits=50, reason="purchase:starter_50", user_id=user_id)
        balance = await get_balance(user_id, db)

    assert first.processed is True
    assert first.already_processed is False
    assert first.credits_granted == 50
    assert first.new_balance == 50
    assert second.processed is False
    assert second.already_processed is True
    assert balance == 50

    audits = await _audit_rows(session_maker, "cs_once")
    assert len(audits) == 1
    assert audits[0].operation_type == "purchase_credits"
    assert audits[0].metadata_json["credits_added"] == 50


@pytest.mark.asyncio
async def test_redelivery_after_crash_between_grant_and_audit(session_maker, make_user):
    user_id = await make_user("crash-payer")
    async with session_maker() as db:
        # Ledger row committed, audit row never written.
        await grant_purchased_credits(user_id, 50, "purchase:starter_50", db, ext_ref="cs_crash")
        assert await _audit_rows(session_maker, "cs_crash") == []

        recovered = await process_payment_event(
            "cs_crash", db, credits=50, reason="purchase:starter_50", user_id=user_id
        )
        assert recovered.processed is True
        assert recovered.already_processed is True
        assert recovered.credits_granted == 0
        assert await get_balance(user_id, db) == 50

    assert len(await _audit_rows(session_maker, "cs_crash")) == 1


@pytest.mark.asyncio
async def test_payment_event_creates_unknown_user_from_email(session_maker):
    async with session_maker() as db:
        result = await process_payment_event(
            "cs_new_user",
            db,
            credits=250,
            reason="purchase:pro_250",
            email="New.Buyer@Example.com",
            customer_id="cus_new",
        )

    assert result.processed is True
    async with session_maker() as session:
        user = (await session.execute(select(User).where(User.email == "new.buyer@example.com"))).scalar_one()
        account = (await session.execute(select(UserCredits).where(UserCredits.user_id == user.id))).scalar_one()
        assert await get_balance(user.id, session) == 250
    assert result.user_id == user.id
    assert account.stripe_customer_id == "cus_new"
    assert account.last_payment_date is not None


@pytest.mark.asyncio
async def test_payment_event_rejects_missing_credits(session_maker, make_user):
    user_id = await make_user("zero-payer")
    async with session_maker() as db:
        result = await process_payment_event("cs_zero", db, credits=0, reason="purchase:none", user_id=user_id)

    assert result.processed is False
    assert result.error == "No credits attached to payment"


@pytest.mark.asyncio
async def test_unpaid_and_unknown_events_are_ignored(session_maker, make_user):
    await make_user(WEBHOOK_USER_ID)
    async with session_maker() as db:
        unpaid = await handle_stripe_event(_checkout_event("cs_unpaid", paid=False), db)
        other = await handle_stripe_event({"id": "evt_x", "type": "customer.created", "data": {"object": {}}}, db)
        no_pack = await handle_stripe_event(_checkout_event("cs_nopack", package="mystery"), db)

    assert unpaid == {"handled": False, "reason": "not_paid"}
    assert other == {"handled": False, "reason": "unhandled_type"}
    assert no_pack == {"handled": False, "reason": "no_credits"}


@pytest.mark.asyncio
async def test_payment_intent_uses_tier_pack(session_maker, make_user):
    user_id = await make_user("intent-payer")
    event = {
        "id": "evt_pi",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_123", "metadata": {"tier": "pro", "user_id": user_id}}},
    }
    async with session_maker() as db:
        outcome = await handle_stripe_event(event, db)
        assert await get_balance(user_id, db) == 250

    assert outcome["handled"] is True
    assert outcome["credits_granted"] == 250


@pytest.mark.asyncio
async def test_checkout_webhook_delivered_twice_grants_once(webhook_client):
    client, session_maker = webhook_client
    payload = json.dumps(_checkout_event("cs_twice")).encode()

    first = await client.post("/webhooks/stripe", content=payload, headers={"Content-Type": "application/json"})
    second = await client.post("/webhooks/stripe", content=payload, headers={"Content-Type": "application/json"})

    assert first.status_code == 200
    assert first.json()["processed"] is True
    assert first.json()["credits_granted"] == 50
    assert second.status_code == 200
    assert second.json()["already_processed"] is True

    async with session_maker() as session:
        assert await get_balance(WEBHOOK_USER_ID, session) == 50
        entries = (await session.execute(select(CreditLedger).where(CreditLedger.ext_ref == "cs_twice"))).scalars().all()
    assert len(entries) == 1
    assert entries[0].reason == "purchase:starter_50"


@pytest.mark.asyncio
async def test_webhook_signature_is_verified_when_secret_configured(webhook_client, monkeypatch):
    client, session_maker = webhook_client
    secret = "whsec_test_secret"
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", secret)
    payload = json.dumps(_checkout_event("cs_signed")).encode()

    forged = await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Content-Type": "application/json", "Stripe-Signature": _signature_header(payload, "whsec_wrong")},
    )
    assert forged.status_code == 400
    async with session_maker() as session:
        assert await get_balance(WEBHOOK_USER_ID, session) == 0

    signed = await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Content-Type": "application/json", "Stripe-Signature": _signature_header(payload, secret)},
    )
    assert signed.status_code == 200
    assert signed.json()["processed"] is True


@pytest.mark.asyncio
async def test_webhook_rejects_malformed_payload(webhook_client):
    client, _ = webhook_client
    response = await client.post("/webhooks/stripe", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
