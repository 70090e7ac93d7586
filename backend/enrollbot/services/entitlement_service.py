"""
Entitlement computation.

The grant level of a session is derived from exactly two user fields:
the credit balance and the demo-expiry timestamp.

    current_credits > 0           -> FULL
    demo_expired_at is NULL       -> DEMO
    otherwise                     -> EXPIRED

Business states such as "out of credits" are GrantLevel values, never errors.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from enrollbot.models.launch_session import GrantLevel
from enrollbot.models.user import User

logger = logging.getLogger(__name__)


class EntitlementServiceError(Exception):
    """Base exception for entitlement lookups."""
    pass


class UserNotFoundError(EntitlementServiceError):
    """No user with the given username exists."""

    def __init__(self, username: str):
        super().__init__(f"User not found: {username}")
        self.username = username


@dataclass
class EntitlementInfo:
    """A user's balance and the grant it currently yields."""
    username: str
    grant_level: GrantLevel
    current_credits: int
    demo_expired_at: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "grant_level": self.grant_level.value,
            "current_credits": self.current_credits,
            "demo_available": self.demo_expired_at is None,
        }


def compute_grant(user: User) -> GrantLevel:
    """Map a user's balance and demo state to a GrantLevel."""
    if (user.current_credits or 0) > 0:
        return GrantLevel.FULL
    if user.demo_expired_at is None:
        return GrantLevel.DEMO
    return GrantLevel.EXPIRED


class EntitlementService:
    """Read-only access to user entitlements."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_user(self, username: str) -> User:
        """
        Load a user by username.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self.db.query(User).filter(User.username == username).first()
        if user is None:
            raise UserNotFoundError(username)
        return user

    def get_entitlement(self, username: str) -> EntitlementInfo:
        """
        Compute the grant a new session for this user would receive.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = self.get_user(username)
        grant = compute_grant(user)

        logger.debug("Entitlement computed", extra={
            "username": username,
            "grant_level": grant.value,
        })

        return EntitlementInfo(
            username=user.username,
            grant_level=grant,
            current_credits=user.current_credits,
            demo_expired_at=user.demo_expired_at,
        )
