"""
Desktop client authentication.

The client sends the username and its per-user authentication key on every
request. Keys are compared in constant time.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from enrollbot.database.session import get_db_session
from enrollbot.models.user import User

logger = logging.getLogger(__name__)

USER_HEADER = "X-Enrollbot-User"
KEY_HEADER = "X-Enrollbot-Key"


def get_app_user(
    x_enrollbot_user: Optional[str] = Header(None, alias=USER_HEADER),
    x_enrollbot_key: Optional[str] = Header(None, alias=KEY_HEADER),
    db: Session = Depends(get_db_session),
) -> User:
    """
    Resolve the authenticated user from client headers.

    Raises 401 if either header is missing or the key does not match.
    """
    if not x_enrollbot_user or not x_enrollbot_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing client credentials",
        )

    user = db.query(User).filter(User.username == x_enrollbot_user).first()
    if user is None or not hmac.compare_digest(
        user.authentication_key.encode("utf-8"),
        x_enrollbot_key.encode("utf-8"),
    ):
        logger.warning("Client authentication failed", extra={
            "username": x_enrollbot_user,
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid client credentials",
        )

    return user
