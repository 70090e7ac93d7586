"""
SessionTermination model.

Exactly one row per terminated session. session_id is the primary key so
the store rejects a second termination record for the same session.
"""

from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from enrollbot.models.base import Base


class SessionTermination(Base):
    """How and why a session ended."""

    __tablename__ = "session_terminations"

    session_id = Column(
        Integer,
        ForeignKey("launch_sessions.id", ondelete="CASCADE"),
        primary_key=True
    )

    did_finish = Column(
        Boolean,
        nullable=False,
        comment="True when the client completed all of its targets"
    )
    unknown_crash = Column(
        Boolean,
        nullable=False,
        comment="True when the session ended without a client report"
    )
    reason = Column(String(1024), nullable=True)

    avg_cycle_time = Column(Float, nullable=True)
    cycle_time_std = Column(Float, nullable=True)
    avg_sleep_time = Column(Float, nullable=True)
    sleep_time_std = Column(Float, nullable=True)

    terminated_at = Column(DateTime(timezone=True), nullable=False)

    session = relationship("LaunchSession", back_populates="termination")

    def __repr__(self) -> str:
        return (
            f"<SessionTermination(session_id={self.session_id}, "
            f"did_finish={self.did_finish}, unknown_crash={self.unknown_crash})>"
        )
