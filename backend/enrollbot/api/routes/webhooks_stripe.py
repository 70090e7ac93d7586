"""
Stripe webhook endpoint for checkout outcomes.

SECURITY: Every request MUST carry a valid Stripe-Signature header for the
configured endpoint secret before the payload is parsed.

Documentation: https://docs.stripe.com/webhooks#verify-events
"""

import json
import logging
import os

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from enrollbot.database.session import get_db_session
from enrollbot.services.purchase_ledger import PurchaseLedger
from enrollbot.services.stripe_webhook_handler import StripeWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_TOLERANCE_SECONDS = 300


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    message: str = "Webhook processed"


def verify_stripe_payload(payload: bytes, sig_header: str, secret: str) -> dict:
    """
    Verify the Stripe signature and decode the event.

    Raises:
        ValueError: If the payload is not valid JSON
        stripe.SignatureVerificationError: If the signature does not match
    """
    body = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(
        body, sig_header, secret, SIGNATURE_TOLERANCE_SECONDS
    )
    return json.loads(body)


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db_session),
):
    """Handle Stripe checkout events."""
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set, rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhooks not configured",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    try:
        event = verify_stripe_payload(payload, sig_header, secret)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    handler = StripeWebhookHandler(PurchaseLedger(db))
    result = await run_in_threadpool(handler.handle_event, event)

    return WebhookResponse(message=result.message)
