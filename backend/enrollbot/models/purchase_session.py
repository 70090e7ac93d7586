"""
PurchaseSession model.

Tracks a checkout from creation to its single processed close. The
processed flag is the idempotency gate for crediting.
"""

from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Index

from enrollbot.models.base import Base, generate_uuid


class PurchaseSession(Base):
    """Checkout opened with the payment provider."""

    __tablename__ = "purchase_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    checkout_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Payment provider checkout session id"
    )

    username = Column(
        String(64),
        ForeignKey("users.username"),
        nullable=False,
        index=True
    )

    quantity = Column(Integer, nullable=False, comment="Credits granted on success")
    subtotal = Column(Float, nullable=False)
    total = Column(Float, nullable=True, comment="Amount actually charged, set on close")
    coupon = Column(String(128), nullable=True)

    succeeded = Column(Boolean, nullable=False, default=False)
    processed = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set exactly once when the checkout outcome is applied"
    )

    opened_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_purchase_sessions_user_opened", "username", "opened_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PurchaseSession(checkout_id={self.checkout_id}, username={self.username}, "
            f"quantity={self.quantity}, processed={self.processed})>"
        )
