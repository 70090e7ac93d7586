"""
Session registry.

Owns the lifecycle of launch sessions:

    Created(active) -> Heartbeating(active) -> Terminated(inactive)

Every state change is a conditional write keyed on is_active, so the
outcome of concurrent calls (two launches, a heartbeat racing the reaper,
a client shutdown racing the reaper) is decided by the store:

- At most one active session per user: partial unique index on
  launch_sessions(username) WHERE is_active.
- At most one termination per session: the is_active flip is the gate and
  session_terminations is keyed by session_id.
- At most one debit per (session, course, section): registered_at is only
  set where it is still NULL.

The client and the liveness reaper both end sessions through terminate().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollbot.models.base import utc_now
from enrollbot.models.launch_session import GrantLevel, LaunchSession
from enrollbot.models.session_course import SessionCourse
from enrollbot.models.session_termination import SessionTermination
from enrollbot.models.user_course_selection import UserCourseSelection
from enrollbot.services.credit_ledger import CreditLedger
from enrollbot.services.entitlement_service import EntitlementService, compute_grant

logger = logging.getLogger(__name__)

TIMED_OUT_REASON = "Session timed out"

# How far ahead of the server a client heartbeat timestamp may be
MAX_CLIENT_CLOCK_SKEW = timedelta(seconds=30)

CourseKey = Tuple[str, str]


@dataclass(frozen=True)
class DeviceMeta:
    """Descriptor of the machine a session runs on."""
    core_count: int
    cpu_speed: int
    system_arch: str
    os: str
    name: Optional[str] = None
    ip: Optional[str] = None

    @classmethod
    def from_session(cls, session: LaunchSession) -> "DeviceMeta":
        return cls(
            core_count=session.device_cores,
            cpu_speed=session.device_clock_speed,
            system_arch=session.system_arch,
            os=session.device_os,
            name=session.device_name,
            ip=session.device_ip,
        )

    def to_dict(self) -> dict:
        return {
            "core_count": self.core_count,
            "cpu_speed": self.cpu_speed,
            "system_arch": self.system_arch,
            "os": self.os,
            "name": self.name,
            "ip": self.ip,
        }


@dataclass(frozen=True)
class TerminationRecord:
    """How a session ended, as reported by the client or synthesized by the reaper."""
    did_finish: bool
    unknown_crash: bool
    reason: Optional[str] = None
    avg_cycle_time: Optional[float] = None
    cycle_time_std: Optional[float] = None
    avg_sleep_time: Optional[float] = None
    sleep_time_std: Optional[float] = None

    @classmethod
    def timed_out(cls) -> "TerminationRecord":
        """Record used when a session stopped heartbeating."""
        return cls(did_finish=False, unknown_crash=True, reason=TIMED_OUT_REASON)


@dataclass
class StartedSession:
    """Result of a successful session start."""
    session_id: int
    grant_level: GrantLevel
    courses: List[CourseKey]


class SessionRegistryError(Exception):
    """Base exception for session registry errors."""
    pass


class SessionNotAliveError(SessionRegistryError):
    """The targeted session does not exist or has already been terminated."""

    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} is not alive")
        self.session_id = session_id


class ClientClockSkewError(SessionRegistryError):
    """A heartbeat carried a timestamp too far in the server's future."""

    def __init__(self, session_id: int, client_timestamp: datetime, server_now: datetime):
        super().__init__(
            f"Heartbeat for session {session_id} is dated {client_timestamp.isoformat()}, "
            f"ahead of server time {server_now.isoformat()}"
        )
        self.session_id = session_id
        self.client_timestamp = client_timestamp
        self.server_now = server_now


class ActiveSessionConflictError(SessionRegistryError):
    """The user already has an active session on some device."""

    def __init__(self, username: str, device: DeviceMeta):
        super().__init__(
            f"You already have an active session running on your {device.os} device "
            f"with ip {device.ip}. If you believe this is an error, please wait a few "
            f"seconds and try again. Otherwise, please contact us for support."
        )
        self.username = username
        self.device = device


def _dedupe_courses(courses: Iterable[CourseKey]) -> List[CourseKey]:
    seen = set()
    result = []
    for course_id, section in courses:
        key = (course_id, section)
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


class SessionRegistry:
    """
    Service for launch session lifecycle operations.

    Each public mutating method runs and commits its own transaction on the
    session it was given.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Callable[[], datetime] = utc_now,
        max_clock_skew: timedelta = MAX_CLIENT_CLOCK_SKEW,
    ):
        self.db = db_session
        self.clock = clock
        self.max_clock_skew = max_clock_skew
        self.ledger = CreditLedger(db_session, clock=clock)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_active_session(self, username: str) -> Optional[DeviceMeta]:
        """Return the device of the user's active session, if any."""
        session = (
            self.db.query(LaunchSession)
            .filter(
                LaunchSession.username == username,
                LaunchSession.is_active.is_(True),
            )
            .first()
        )
        if session is None:
            return None
        return DeviceMeta.from_session(session)

    def get_session(self, session_id: int) -> Optional[LaunchSession]:
        return self.db.get(LaunchSession, session_id)

    def is_session_alive(self, session_id: int) -> bool:
        return (
            self.db.query(LaunchSession.id)
            .filter(
                LaunchSession.id == session_id,
                LaunchSession.is_active.is_(True),
            )
            .first()
            is not None
        )

    def get_course_selections(self, username: str) -> List[CourseKey]:
        """Standing (course_id, section) selections saved for the user."""
        rows = (
            self.db.query(UserCourseSelection.course_id, UserCourseSelection.course_section)
            .filter(UserCourseSelection.username == username)
            .order_by(UserCourseSelection.course_id, UserCourseSelection.course_section)
            .all()
        )
        return [(row.course_id, row.course_section) for row in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        username: str,
        grant_level: GrantLevel,
        device: DeviceMeta,
        is_planner: bool,
        target_courses: Iterable[CourseKey],
    ) -> int:
        """
        Insert an active session and its target courses in one transaction.

        Raises:
            ActiveSessionConflictError: If another active session for the
                user was committed first
        """
        now = self.clock()
        session = LaunchSession(
            username=username,
            device_ip=device.ip,
            device_name=device.name,
            device_os=device.os,
            system_arch=device.system_arch,
            device_cores=device.core_count,
            device_clock_speed=device.cpu_speed,
            grant_level=grant_level,
            is_planner=is_planner,
            is_active=True,
            launched_at=now,
            last_heartbeat_at=now,
        )
        session.courses = [
            SessionCourse(course_id=course_id, course_section=section)
            for course_id, section in _dedupe_courses(target_courses)
        ]
        course_count = len(session.courses)
        self.db.add(session)

        try:
            self.db.flush()
            session_id = session.id
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.has_active_session(username)
            if existing is None:
                raise
            logger.info("Concurrent session start rejected by store", extra={
                "username": username,
            })
            raise ActiveSessionConflictError(username, existing)

        logger.info("Session created", extra={
            "session_id": session_id,
            "username": username,
            "grant_level": grant_level.value,
            "is_planner": is_planner,
            "course_count": course_count,
        })
        return session_id

    def try_start_session(
        self,
        username: str,
        device: DeviceMeta,
        is_planner: bool,
        target_courses: Optional[Iterable[CourseKey]] = None,
    ) -> StartedSession:
        """
        Start a session after computing the user's grant.

        When target_courses is None the user's standing course selections
        are used.

        Raises:
            UserNotFoundError: If the user does not exist
            ActiveSessionConflictError: If the user already has an active session
        """
        user = EntitlementService(self.db).get_user(username)
        grant = compute_grant(user)

        existing = self.has_active_session(username)
        if existing is not None:
            logger.info("Session start rejected, user already active", extra={
                "username": username,
                "active_device_os": existing.os,
            })
            raise ActiveSessionConflictError(username, existing)

        if target_courses is None:
            courses = self.get_course_selections(username)
        else:
            courses = _dedupe_courses(target_courses)

        session_id = self.create_session(username, grant, device, is_planner, courses)
        return StartedSession(session_id=session_id, grant_level=grant, courses=list(courses))

    def heartbeat(self, session_id: int, client_timestamp: Optional[datetime] = None) -> None:
        """
        Refresh a session's liveness.

        last_heartbeat_at is always the server time at which the heartbeat
        arrived; the reaper compares it against the same clock. The client's
        own timestamp is only checked for being dated in the future. A client
        clock that lags the server is accepted as is.

        Raises:
            ClientClockSkewError: If client_timestamp is more than
                max_clock_skew ahead of the server clock
            SessionNotAliveError: If the session is absent or terminated
        """
        now = self.clock()
        if client_timestamp is not None and client_timestamp > now + self.max_clock_skew:
            logger.warning("Heartbeat rejected, client clock ahead of server", extra={
                "session_id": session_id,
                "client_timestamp": client_timestamp.isoformat(),
                "server_now": now.isoformat(),
            })
            raise ClientClockSkewError(session_id, client_timestamp, now)

        rows = (
            self.db.query(LaunchSession)
            .filter(
                LaunchSession.id == session_id,
                LaunchSession.is_active.is_(True),
                LaunchSession.last_heartbeat_at <= now,
            )
            .update({LaunchSession.last_heartbeat_at: now}, synchronize_session=False)
        )
        self.db.commit()

        if rows:
            return

        if not self.is_session_alive(session_id):
            raise SessionNotAliveError(session_id)

        # Stored heartbeat is ahead of this server's clock (another replica)
        logger.debug("Heartbeat older than stored one ignored", extra={"session_id": session_id})

    def terminate(self, session_id: int, record: TerminationRecord) -> None:
        """
        End a session and write its termination record.

        Only the caller whose conditional update flips is_active writes the
        record; everyone else gets SessionNotAliveError.

        Raises:
            SessionNotAliveError: If the session is absent or already terminated
        """
        try:
            rows = (
                self.db.query(LaunchSession)
                .filter(
                    LaunchSession.id == session_id,
                    LaunchSession.is_active.is_(True),
                )
                .update({LaunchSession.is_active: False}, synchronize_session=False)
            )
            if rows == 0:
                self.db.rollback()
                raise SessionNotAliveError(session_id)

            self.db.add(SessionTermination(
                session_id=session_id,
                did_finish=record.did_finish,
                unknown_crash=record.unknown_crash,
                reason=record.reason,
                avg_cycle_time=record.avg_cycle_time,
                cycle_time_std=record.cycle_time_std,
                avg_sleep_time=record.avg_sleep_time,
                sleep_time_std=record.sleep_time_std,
                terminated_at=self.clock(),
            ))
            self.db.commit()
        except SessionNotAliveError:
            raise
        except Exception:
            self.db.rollback()
            logger.error("Failed to terminate session", extra={
                "session_id": session_id,
            }, exc_info=True)
            raise

        logger.info("Session terminated", extra={
            "session_id": session_id,
            "did_finish": record.did_finish,
            "unknown_crash": record.unknown_crash,
            "reason": record.reason,
        })

    def _lock_live_session(self, session_id: int, username: str) -> Optional[LaunchSession]:
        """Active session owned by username, row-locked until commit where the store supports it."""
        return (
            self.db.query(LaunchSession)
            .filter(
                LaunchSession.id == session_id,
                LaunchSession.username == username,
                LaunchSession.is_active.is_(True),
            )
            .with_for_update()
            .first()
        )

    def mark_registered(
        self,
        username: str,
        session_id: int,
        timestamp: datetime,
        course_id: str,
        section: str,
    ) -> bool:
        """
        Record a successful course registration and meter it.

        The first report for a (session, course, section) debits one credit
        and uses up the demo, unless the session is a planner session.
        Repeated reports are accepted without charging again.

        The liveness check is repeated inside the writing transaction: the
        session row is read FOR UPDATE and the registered_at update only
        applies while the session is still active. A termination that lands
        between the two leaves nothing recorded and nothing charged.

        Returns:
            False if the session is not alive or not owned by username,
            True otherwise.
        """
        session = self._lock_live_session(session_id, username)
        if session is None:
            logger.info("Registration rejected, session not alive", extra={
                "session_id": session_id,
                "username": username,
            })
            return False

        is_planner = session.is_planner
        session_still_active = exists().where(
            LaunchSession.id == session_id,
            LaunchSession.username == username,
            LaunchSession.is_active.is_(True),
        )

        try:
            rows = (
                self.db.query(SessionCourse)
                .filter(
                    SessionCourse.session_id == session_id,
                    SessionCourse.course_id == course_id,
                    SessionCourse.course_section == section,
                    SessionCourse.registered_at.is_(None),
                    session_still_active,
                )
                .update({SessionCourse.registered_at: timestamp}, synchronize_session=False)
            )
            transitioned = rows > 0

            if not transitioned:
                if not self.is_session_alive(session_id):
                    self.db.rollback()
                    logger.info("Registration rejected, session ended mid-report", extra={
                        "session_id": session_id,
                        "username": username,
                    })
                    return False

                existing = self.db.get(SessionCourse, (session_id, course_id, section))
                if existing is None:
                    # Course was not in the launch snapshot
                    self.db.add(SessionCourse(
                        session_id=session_id,
                        course_id=course_id,
                        course_section=section,
                        registered_at=timestamp,
                    ))
                    self.db.flush()
                    transitioned = True

            if transitioned and not is_planner:
                self.ledger.debit_one(username)
                self.ledger.mark_demo_over(username)

            self.db.commit()
        except IntegrityError:
            # A concurrent report inserted the same course first
            self.db.rollback()
            logger.info("Duplicate registration report ignored", extra={
                "session_id": session_id,
                "course_id": course_id,
                "section": section,
            })
            return True
        except Exception:
            self.db.rollback()
            raise

        if transitioned:
            logger.info("Registration recorded", extra={
                "session_id": session_id,
                "username": username,
                "course_id": course_id,
                "section": section,
                "charged": not is_planner,
            })
        else:
            logger.debug("Registration already recorded", extra={
                "session_id": session_id,
                "course_id": course_id,
                "section": section,
            })
        return True
