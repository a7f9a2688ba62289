"""Stripe webhook endpoint."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
import stripe

from config import settings
from database import get_db
from services.billing_webhooks import handle_stripe_event
from services.credit_errors import PaymentProcessingError, TransientStoreError

router = APIRouter()
logger = logging.getLogger(__name__)


def _verified_event(payload: bytes, signature: str) -> dict:
    """Verify the Stripe signature when a secret is configured; dev mode trusts the body."""
    if settings.STRIPE_WEBHOOK_SECRET:
        try:
            stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            logger.error("Invalid webhook payload")
            raise HTTPException(status_code=400, detail="Invalid payload")
        except stripe.SignatureVerificationError:
            logger.error("Invalid webhook signature")
            raise HTTPException(status_code=400, detail="Invalid signature")
    else:
        logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting unverified webhook (dev mode)")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return event


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    event = _verified_event(await request.body(), request.headers.get("stripe-signature", ""))
    event_type = event.get("type")
    logger.info("Stripe webhook received: %s (%s)", event_type, event.get("id"))

    try:
        outcome = await handle_stripe_event(event, db)
    except (PaymentProcessingError, TransientStoreError) as exc:
        logger.error("Stripe webhook %s failed: %s", event.get("id"), exc)
        raise HTTPException(status_code=500, detail="Webhook processing failed") from exc

    return {"received": True, "event_type": event_type, **outcome}
