"""
User model.

A user is created on first identity-provider login and is never deleted.
current_credits and demo_expired_at are only written through CreditLedger.
"""

from sqlalchemy import Column, String, Integer, DateTime, CheckConstraint
from sqlalchemy.orm import relationship

from enrollbot.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """
    Enrollbot account.

    username is the university login (the part of the email before '@')
    and is immutable.
    """

    __tablename__ = "users"

    username = Column(
        String(64),
        primary_key=True,
        comment="Immutable university username"
    )

    email = Column(String(320), nullable=True)
    given_name = Column(String(128), nullable=True)
    family_name = Column(String(128), nullable=True)

    authentication_key = Column(
        String(64),
        nullable=False,
        unique=True,
        comment="Credential the desktop client presents with every request"
    )

    stripe_customer_id = Column(
        String(64),
        nullable=True,
        comment="Billing provider customer reference"
    )

    current_credits = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Remaining registration credits, never negative"
    )

    demo_expired_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once when the demo registration is used; NULL = demo available"
    )

    sessions = relationship(
        "LaunchSession",
        back_populates="user",
        lazy="dynamic"
    )
    course_selections = relationship(
        "UserCourseSelection",
        back_populates="user",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("current_credits >= 0", name="ck_users_credits_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User(username={self.username}, credits={self.current_credits})>"
