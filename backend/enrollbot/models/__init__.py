"""
Database models for the Enrollbot session server.
"""

from enrollbot.models.base import Base, TimestampMixin, generate_uuid, utc_now
from enrollbot.models.user import User
from enrollbot.models.launch_session import LaunchSession, GrantLevel
from enrollbot.models.session_course import SessionCourse
from enrollbot.models.session_termination import SessionTermination
from enrollbot.models.purchase_session import PurchaseSession
from enrollbot.models.user_course_selection import UserCourseSelection

__all__ = [
    "Base",
    "TimestampMixin",
    "generate_uuid",
    "utc_now",
    "User",
    "LaunchSession",
    "GrantLevel",
    "SessionCourse",
    "SessionTermination",
    "PurchaseSession",
    "UserCourseSelection",
]
