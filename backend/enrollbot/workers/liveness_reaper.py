"""
Liveness Reaper.

Background job that reclaims sessions whose client stopped heartbeating
(crash, network loss, killed process). Each tick:
1. Selects active sessions whose last heartbeat is older than the
   staleness threshold
2. Ends each one through SessionRegistry.terminate with a synthesized
   "timed out" record, the same path a client shutdown takes

A session the client ends between selection and termination is counted
as skipped. A failure on one session is logged and counted; the rest of
the batch still runs.

Runs in-process as a daemon thread started by the API lifespan, or
standalone as: python -m enrollbot.workers.liveness_reaper

Configuration: config/session_policy.yml (see enrollbot.config.session_policy)
"""

import logging
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from enrollbot.config.session_policy import SessionPolicy, get_session_policy
from enrollbot.models.base import utc_now
from enrollbot.models.launch_session import LaunchSession
from enrollbot.services.session_registry import (
    SessionNotAliveError,
    SessionRegistry,
    TerminationRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class ReapStats:
    """Track reaper tick statistics."""

    checked: int = 0
    reaped: int = 0
    skipped: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "checked": self.checked,
            "reaped": self.reaped,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


class LivenessReaper:
    """
    Periodically terminates sessions that stopped heartbeating.

    Owns no session state; every tick opens a fresh database session from
    the factory it was given.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: Optional[SessionPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.policy = policy or get_session_policy()
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def find_stale_sessions(self, db: Session, now: datetime) -> List[int]:
        """Ids of active sessions whose heartbeat is older than the threshold."""
        cutoff = now - self.policy.staleness_threshold
        rows = (
            db.query(LaunchSession.id)
            .filter(
                LaunchSession.is_active.is_(True),
                LaunchSession.last_heartbeat_at < cutoff,
            )
            .order_by(LaunchSession.last_heartbeat_at)
            .limit(self.policy.reap_batch_size)
            .all()
        )
        return [row.id for row in rows]

    def run_once(self) -> ReapStats:
        """Run a single reap tick."""
        stats = ReapStats()
        db = self.session_factory()

        try:
            stale_ids = self.find_stale_sessions(db, self.clock())
            # Release the read transaction before the per-session writes
            db.commit()
            stats.checked = len(stale_ids)

            registry = SessionRegistry(db, clock=self.clock)
            for session_id in stale_ids:
                try:
                    registry.terminate(session_id, TerminationRecord.timed_out())
                    stats.reaped += 1
                except SessionNotAliveError:
                    # Client ended it first
                    stats.skipped += 1
                except Exception:
                    logger.error("Failed to reap session", extra={
                        "session_id": session_id,
                    }, exc_info=True)
                    db.rollback()
                    stats.errors += 1

        except Exception:
            logger.error("Reaper tick failed", exc_info=True)
            db.rollback()
            stats.errors += 1
        finally:
            db.close()

        if stats.reaped or stats.errors:
            logger.info("Reaper tick complete", extra=stats.to_dict())

        return stats

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Tick on the configured interval until stop_event is set."""
        stop_event = stop_event or self._stop_event
        logger.info("Liveness reaper started", extra=self.policy.to_dict())

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.error("Unexpected reaper failure", exc_info=True)
            stop_event.wait(self.policy.reap_interval_seconds)

        logger.info("Liveness reaper stopped")

    def start(self) -> threading.Thread:
        """Run the reaper on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            args=(self._stop_event,),
            name="liveness-reaper",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the reaper thread to exit and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None


def main():
    from enrollbot.database.session import get_engine, get_session_factory, init_schema

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Shutdown signal received", extra={"signal": signum})
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    init_schema(get_engine())
    reaper = LivenessReaper(get_session_factory())
    reaper.run_forever(stop_event)


if __name__ == "__main__":
    main()
