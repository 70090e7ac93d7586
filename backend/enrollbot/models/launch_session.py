"""
LaunchSession model.

One row per launch of the desktop client. The row is created active and
flips to inactive exactly once, either on a client shutdown report or when
the liveness reaper reclaims it. A partial unique index enforces at most one
active session per user in the store.
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Enum,
    text,
)
from sqlalchemy.orm import relationship

from enrollbot.models.base import Base


class GrantLevel(str, enum.Enum):
    """Entitlement tier captured when a session starts."""
    FULL = "Full"
    DEMO = "Demo"
    EXPIRED = "Expired"


class LaunchSession(Base):
    """Usage session of one client process on one device."""

    __tablename__ = "launch_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    username = Column(
        String(64),
        ForeignKey("users.username"),
        nullable=False,
        index=True,
        comment="Owner of the session"
    )

    device_ip = Column(String(64), nullable=True, comment="Client address as seen by the server")
    device_name = Column(String(255), nullable=True)
    device_os = Column(String(64), nullable=False)
    system_arch = Column(String(32), nullable=False)
    device_cores = Column(Integer, nullable=False)
    device_clock_speed = Column(Integer, nullable=False, comment="CPU speed in MHz")

    grant_level = Column(
        Enum(
            GrantLevel,
            name="grant_level",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        comment="Entitlement snapshot at start, never updated"
    )

    is_planner = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Planner sessions never consume credits"
    )

    is_active = Column(Boolean, nullable=False, default=True)

    launched_at = Column(DateTime(timezone=True), nullable=False)
    last_heartbeat_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Monotonically non-decreasing while active"
    )

    user = relationship("User", back_populates="sessions")
    courses = relationship(
        "SessionCourse",
        back_populates="session",
        cascade="all, delete-orphan"
    )
    termination = relationship(
        "SessionTermination",
        back_populates="session",
        uselist=False
    )

    __table_args__ = (
        Index(
            "uq_launch_sessions_one_active",
            "username",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_launch_sessions_active_heartbeat", "is_active", "last_heartbeat_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LaunchSession(id={self.id}, username={self.username}, "
            f"active={self.is_active}, grant={self.grant_level})>"
        )
