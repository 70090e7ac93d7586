"""
Root test configuration and fixtures.

Every test gets its own SQLite in-memory database. Services commit their
own transactions, so tests share nothing through the store.

Shared fixtures:
- db_engine / session_factory / db_session: database access
- clock: controllable UTC clock injected into services and the reaper
- make_user / make_session: committed test data
- temp_config_dir / make_yaml_config: YAML config files
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="function")
def db_engine():
    """SQLite in-memory engine with all tables created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from enrollbot.models import Base

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 14, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_user(db_session):
    """
    Factory fixture that commits a user and returns it.

    Usage:
        user = make_user("alice", credits=3)
    """
    def _make(username=None, credits=0, demo_expired_at=None, authentication_key=None):
        from enrollbot.models.user import User

        user = User(
            username=username or f"user-{uuid.uuid4().hex[:8]}",
            email=None,
            authentication_key=authentication_key or uuid.uuid4().hex,
            current_credits=credits,
            demo_expired_at=demo_expired_at,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def device():
    from enrollbot.services.session_registry import DeviceMeta

    return DeviceMeta(
        core_count=8,
        cpu_speed=3200,
        system_arch="x86_64",
        os="Windows",
        name="dorm-desktop",
        ip="10.0.0.5",
    )


@pytest.fixture
def make_session(db_session, clock, device):
    """
    Factory fixture that starts a session through the registry.

    Returns the StartedSession.
    """
    def _make(username, is_planner=False, courses=(("CSC108", "LEC0101"),), device_meta=None):
        from enrollbot.services.session_registry import SessionRegistry

        registry = SessionRegistry(db_session, clock=clock)
        return registry.try_start_session(
            username,
            device_meta or device,
            is_planner=is_planner,
            target_courses=list(courses),
        )
    return _make


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("session_policy.yml", {"liveness": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
