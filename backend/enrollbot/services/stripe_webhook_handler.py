"""
Stripe webhook handler.

Translates verified Stripe checkout events into PurchaseLedger closes.
Signature verification happens in the route; this module only sees events
that Stripe signed.

Event mapping:
- checkout.session.completed, checkout.session.async_payment_succeeded:
  close as succeeded once payment_status is "paid"
- checkout.session.expired, checkout.session.async_payment_failed:
  close as failed
- anything else: acknowledged and ignored

Stripe redelivers until it receives a 2xx, so every outcome here, including
unknown checkouts, is reported as handled.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from enrollbot.services.purchase_ledger import ClosePurchaseResult, PurchaseLedger

logger = logging.getLogger(__name__)

CHECKOUT_SUCCEEDED_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})
CHECKOUT_FAILED_EVENTS = frozenset({
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
})

PAYMENT_STATUS_PAID = "paid"


@dataclass
class WebhookProcessingResult:
    """Result of processing a webhook event."""
    processed: bool
    message: str
    checkout_id: Optional[str] = None
    close_result: Optional[ClosePurchaseResult] = None
    skipped_reason: Optional[str] = None


def _extract_coupon(checkout: Mapping[str, Any]) -> Optional[str]:
    discounts = checkout.get("discounts") or []
    for discount in discounts:
        code = discount.get("promotion_code") or discount.get("coupon")
        if code:
            return code if isinstance(code, str) else code.get("id")
    return None


def _extract_total(checkout: Mapping[str, Any]) -> Optional[float]:
    amount_total = checkout.get("amount_total")
    if amount_total is None:
        return None
    return amount_total / 100


class StripeWebhookHandler:
    """Dispatches checkout events to the purchase ledger."""

    def __init__(self, purchase_ledger: PurchaseLedger):
        self.purchase_ledger = purchase_ledger

    def handle_event(self, event: Mapping[str, Any]) -> WebhookProcessingResult:
        event_type = event.get("type")
        event_id = event.get("id")

        if event_type not in CHECKOUT_SUCCEEDED_EVENTS and event_type not in CHECKOUT_FAILED_EVENTS:
            logger.debug("Ignoring Stripe event", extra={
                "event_id": event_id,
                "event_type": event_type,
            })
            return WebhookProcessingResult(
                processed=False,
                message=f"Ignored event type {event_type}",
                skipped_reason="unhandled_event_type",
            )

        checkout = (event.get("data") or {}).get("object") or {}
        checkout_id = checkout.get("id")
        if not checkout_id:
            logger.warning("Stripe checkout event without session id", extra={
                "event_id": event_id,
                "event_type": event_type,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Missing checkout session id",
                skipped_reason="missing_checkout_id",
            )

        if event_type in CHECKOUT_SUCCEEDED_EVENTS:
            if checkout.get("payment_status") != PAYMENT_STATUS_PAID:
                # Delayed payment methods complete first and settle later
                logger.info("Checkout completed without payment yet", extra={
                    "event_id": event_id,
                    "checkout_id": checkout_id,
                    "payment_status": checkout.get("payment_status"),
                })
                return WebhookProcessingResult(
                    processed=False,
                    message="Payment not settled",
                    checkout_id=checkout_id,
                    skipped_reason="payment_pending",
                )
            succeeded = True
        else:
            succeeded = False

        result = self.purchase_ledger.close(
            checkout_id,
            succeeded=succeeded,
            total=_extract_total(checkout),
            coupon=_extract_coupon(checkout),
        )

        logger.info("Stripe checkout event handled", extra={
            "event_id": event_id,
            "event_type": event_type,
            "checkout_id": checkout_id,
            "close_result": result.value,
        })

        return WebhookProcessingResult(
            processed=result == ClosePurchaseResult.APPLIED,
            message=f"Checkout {result.value}",
            checkout_id=checkout_id,
            close_result=result,
        )
