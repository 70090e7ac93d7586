"""
Session liveness policy loader.

Loads the reaper policy from config/session_policy.yml. Environment
variables take precedence over the file so deployments can tune the
reaper without shipping a new config.

Consumers:
  - LivenessReaper: tick interval, staleness threshold, batch size
  - main.py lifespan: builds the reaper from the loaded policy

Usage:
    from enrollbot.config.session_policy import get_session_policy

    policy = get_session_policy()
    policy.staleness_threshold  # timedelta(seconds=45)
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_SECONDS = 45
DEFAULT_REAP_INTERVAL_SECONDS = 10
DEFAULT_REAP_BATCH_SIZE = 500

STALENESS_ENV_VAR = "SESSION_STALENESS_SECONDS"
REAP_INTERVAL_ENV_VAR = "SESSION_REAP_INTERVAL_SECONDS"


@dataclass(frozen=True)
class SessionPolicy:
    """Liveness parameters for the reaper."""
    staleness_threshold_seconds: int = DEFAULT_STALENESS_SECONDS
    reap_interval_seconds: int = DEFAULT_REAP_INTERVAL_SECONDS
    reap_batch_size: int = DEFAULT_REAP_BATCH_SIZE

    def __post_init__(self):
        for name in ("staleness_threshold_seconds", "reap_interval_seconds", "reap_batch_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    @property
    def staleness_threshold(self) -> timedelta:
        return timedelta(seconds=self.staleness_threshold_seconds)

    def to_dict(self) -> Dict[str, int]:
        return {
            "staleness_threshold_seconds": self.staleness_threshold_seconds,
            "reap_interval_seconds": self.reap_interval_seconds,
            "reap_batch_size": self.reap_batch_size,
        }


def _int_from_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class SessionPolicyLoader:
    """
    Thread-safe singleton loader for config/session_policy.yml.

    A missing file is not fatal: the built-in defaults apply and a warning
    is logged.
    """

    _instance: Optional["SessionPolicyLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._policy = SessionPolicy()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            path = Path(self._config_path)
            return path if path.exists() else None

        candidates = [
            # From backend/ directory (typical working dir)
            Path(__file__).parent.parent.parent.parent / "config" / "session_policy.yml",
            Path(os.getcwd()) / "config" / "session_policy.yml",
            Path(os.getcwd()) / ".." / "config" / "session_policy.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved
        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            if path is None:
                logger.warning(
                    "session_policy.yml not found, using built-in defaults",
                    extra={"config_path": self._config_path},
                )
                self._raw = {}
            else:
                logger.info("Loading session policy from %s", path)
                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

            liveness = self._raw.get("liveness", {}) or {}

            staleness = _int_from_env(STALENESS_ENV_VAR)
            if staleness is None:
                staleness = liveness.get("staleness_threshold_seconds", DEFAULT_STALENESS_SECONDS)

            interval = _int_from_env(REAP_INTERVAL_ENV_VAR)
            if interval is None:
                interval = liveness.get("reap_interval_seconds", DEFAULT_REAP_INTERVAL_SECONDS)

            batch_size = liveness.get("reap_batch_size", DEFAULT_REAP_BATCH_SIZE)

            self._policy = SessionPolicy(
                staleness_threshold_seconds=staleness,
                reap_interval_seconds=interval,
                reap_batch_size=batch_size,
            )

            logger.info("Loaded session policy", extra=self._policy.to_dict())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read the YAML from disk (e.g. after a config change)."""
        self._load()

    @property
    def policy(self) -> SessionPolicy:
        return self._policy


# ------------------------------------------------------------------
# Module-level accessors
# ------------------------------------------------------------------

def get_session_policy_loader(
    config_path: Optional[str] = None,
) -> SessionPolicyLoader:
    """Return the singleton SessionPolicyLoader."""
    return SessionPolicyLoader(config_path)


def get_session_policy(config_path: Optional[str] = None) -> SessionPolicy:
    """Return the currently loaded SessionPolicy."""
    return get_session_policy_loader(config_path).policy


def reset_session_policy_loader() -> None:
    """Reset singleton (for tests only)."""
    SessionPolicyLoader._instance = None
