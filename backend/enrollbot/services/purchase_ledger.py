"""
Purchase ledger.

Tracks checkouts from creation to their terminal outcome. The payment
provider delivers outcomes at least once, so closing is gated on the
processed flag: only the call whose conditional update flips it applies
the credits, and it does so in the same transaction.
"""

import enum
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollbot.models.base import utc_now
from enrollbot.models.purchase_session import PurchaseSession
from enrollbot.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


class ClosePurchaseResult(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    UNKNOWN_CHECKOUT = "unknown_checkout"


class PurchaseLedgerError(Exception):
    """Base exception for purchase ledger errors."""
    pass


class DuplicateCheckoutError(PurchaseLedgerError):
    """A purchase with this checkout id was already opened."""

    def __init__(self, checkout_id: str):
        super().__init__(f"Checkout already recorded: {checkout_id}")
        self.checkout_id = checkout_id


class PurchaseLedger:
    """Service for recording checkouts and applying their outcomes."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utc_now):
        self.db = db_session
        self.clock = clock
        self.ledger = CreditLedger(db_session, clock=clock)

    def get(self, checkout_id: str) -> Optional[PurchaseSession]:
        return (
            self.db.query(PurchaseSession)
            .filter(PurchaseSession.checkout_id == checkout_id)
            .first()
        )

    def open(self, username: str, quantity: int, subtotal: float, checkout_id: str) -> PurchaseSession:
        """
        Record a newly created checkout.

        Raises:
            ValueError: If quantity is not positive
            DuplicateCheckoutError: If the checkout id was already recorded
        """
        if quantity <= 0:
            raise ValueError(f"Purchase quantity must be positive, got {quantity}")

        purchase = PurchaseSession(
            checkout_id=checkout_id,
            username=username,
            quantity=quantity,
            subtotal=subtotal,
            succeeded=False,
            processed=False,
            opened_at=self.clock(),
        )
        self.db.add(purchase)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateCheckoutError(checkout_id)

        logger.info("Purchase opened", extra={
            "checkout_id": checkout_id,
            "username": username,
            "quantity": quantity,
        })
        return purchase

    def close(
        self,
        checkout_id: str,
        succeeded: bool,
        total: Optional[float] = None,
        coupon: Optional[str] = None,
    ) -> ClosePurchaseResult:
        """
        Apply the terminal outcome of a checkout.

        On success the purchased quantity is credited and the user's demo is
        marked as used. Redelivered outcomes are no-ops.
        """
        purchase = self.get(checkout_id)
        if purchase is None:
            logger.warning("Close requested for unknown checkout", extra={
                "checkout_id": checkout_id,
                "succeeded": succeeded,
            })
            return ClosePurchaseResult.UNKNOWN_CHECKOUT

        username = purchase.username
        quantity = purchase.quantity

        try:
            rows = (
                self.db.query(PurchaseSession)
                .filter(
                    PurchaseSession.checkout_id == checkout_id,
                    PurchaseSession.processed.is_(False),
                )
                .update(
                    {
                        PurchaseSession.processed: True,
                        PurchaseSession.succeeded: succeeded,
                        PurchaseSession.total: total,
                        PurchaseSession.coupon: coupon,
                        PurchaseSession.closed_at: self.clock(),
                    },
                    synchronize_session=False,
                )
            )
            if rows == 0:
                self.db.rollback()
                logger.info("Purchase already processed", extra={"checkout_id": checkout_id})
                return ClosePurchaseResult.ALREADY_PROCESSED

            if succeeded:
                self.ledger.credit(username, quantity)
                self.ledger.mark_demo_over(username)

            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Failed to close purchase", extra={
                "checkout_id": checkout_id,
            }, exc_info=True)
            raise

        logger.info("Purchase closed", extra={
            "checkout_id": checkout_id,
            "username": username,
            "succeeded": succeeded,
            "quantity": quantity if succeeded else 0,
        })
        return ClosePurchaseResult.APPLIED
