"""
SessionCourse model.

Target courses of a session. registered_at transitions from NULL to a
timestamp at most once; that transition is what consumes a credit.
"""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from enrollbot.models.base import Base


class SessionCourse(Base):
    """A (course, section) the session is trying to register for."""

    __tablename__ = "session_courses"

    session_id = Column(
        Integer,
        ForeignKey("launch_sessions.id", ondelete="CASCADE"),
        primary_key=True
    )
    course_id = Column(String(64), primary_key=True)
    course_section = Column(String(32), primary_key=True)

    registered_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL until the client reports a successful registration"
    )

    session = relationship("LaunchSession", back_populates="courses")

    def __repr__(self) -> str:
        return (
            f"<SessionCourse(session_id={self.session_id}, course={self.course_id}, "
            f"section={self.course_section}, registered={self.registered_at is not None})>"
        )
