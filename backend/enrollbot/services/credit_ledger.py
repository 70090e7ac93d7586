"""
Credit ledger.

All balance changes are single conditional UPDATE statements evaluated by
the store, so concurrent debits and credits never lose an update and the
balance never goes below zero.

The ledger does not commit. Callers (SessionRegistry, PurchaseLedger) run
it inside their own transaction so the balance change and the state
transition that caused it land together.
"""

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import case
from sqlalchemy.orm import Session

from enrollbot.models.base import utc_now
from enrollbot.models.user import User
from enrollbot.services.entitlement_service import UserNotFoundError

logger = logging.getLogger(__name__)


class CreditLedger:
    """Atomic balance and demo-flag mutations on users."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utc_now):
        self.db = db_session
        self.clock = clock

    def debit_one(self, username: str) -> None:
        """
        Consume one credit, flooring the balance at zero.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        rows = (
            self.db.query(User)
            .filter(User.username == username)
            .update(
                {
                    User.current_credits: case(
                        (User.current_credits > 0, User.current_credits - 1),
                        else_=0,
                    )
                },
                synchronize_session=False,
            )
        )
        if rows == 0:
            raise UserNotFoundError(username)

        logger.info("Credit debited", extra={"username": username})

    def mark_demo_over(self, username: str) -> bool:
        """
        Record that the user's demo registration has been used.

        Returns:
            True if this call set the timestamp, False if it was already set
            (or the user does not exist).
        """
        rows = (
            self.db.query(User)
            .filter(
                User.username == username,
                User.demo_expired_at.is_(None),
            )
            .update({User.demo_expired_at: self.clock()}, synchronize_session=False)
        )
        if rows:
            logger.info("Demo marked as used", extra={"username": username})
        return rows > 0

    def credit(self, username: str, quantity: int) -> None:
        """
        Add purchased credits to a user's balance.

        Raises:
            ValueError: If quantity is not positive
            UserNotFoundError: If the user does not exist
        """
        if quantity <= 0:
            raise ValueError(f"Credit quantity must be positive, got {quantity}")

        rows = (
            self.db.query(User)
            .filter(User.username == username)
            .update(
                {User.current_credits: User.current_credits + quantity},
                synchronize_session=False,
            )
        )
        if rows == 0:
            raise UserNotFoundError(username)

        logger.info("Credits added", extra={"username": username, "quantity": quantity})
