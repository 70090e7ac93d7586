"""
Tests for the session policy loader.
"""

from datetime import timedelta

import pytest

from enrollbot.config.session_policy import (
    DEFAULT_REAP_BATCH_SIZE,
    DEFAULT_REAP_INTERVAL_SECONDS,
    DEFAULT_STALENESS_SECONDS,
    SessionPolicy,
    get_session_policy,
    get_session_policy_loader,
    reset_session_policy_loader,
)


@pytest.fixture(autouse=True)
def _fresh_loader(monkeypatch):
    monkeypatch.delenv("SESSION_STALENESS_SECONDS", raising=False)
    monkeypatch.delenv("SESSION_REAP_INTERVAL_SECONDS", raising=False)
    reset_session_policy_loader()
    yield
    reset_session_policy_loader()


class TestSessionPolicyLoader:

    def test_loads_values_from_yaml(self, make_yaml_config):
        path = make_yaml_config("session_policy.yml", {
            "version": 1,
            "liveness": {
                "staleness_threshold_seconds": 60,
                "reap_interval_seconds": 5,
                "reap_batch_size": 100,
            },
        })

        policy = get_session_policy(str(path))

        assert policy == SessionPolicy(
            staleness_threshold_seconds=60,
            reap_interval_seconds=5,
            reap_batch_size=100,
        )
        assert policy.staleness_threshold == timedelta(seconds=60)

    def test_missing_file_falls_back_to_defaults(self, temp_config_dir, caplog):
        policy = get_session_policy(str(temp_config_dir / "absent.yml"))

        assert policy.staleness_threshold_seconds == DEFAULT_STALENESS_SECONDS == 45
        assert policy.reap_interval_seconds == DEFAULT_REAP_INTERVAL_SECONDS == 10
        assert policy.reap_batch_size == DEFAULT_REAP_BATCH_SIZE
        assert "using built-in defaults" in caplog.text

    def test_partial_yaml_keeps_remaining_defaults(self, make_yaml_config):
        path = make_yaml_config("session_policy.yml", {"liveness": {"reap_interval_seconds": 3}})

        policy = get_session_policy(str(path))

        assert policy.reap_interval_seconds == 3
        assert policy.staleness_threshold_seconds == DEFAULT_STALENESS_SECONDS

    def test_env_overrides_file(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("session_policy.yml", {
            "liveness": {"staleness_threshold_seconds": 60, "reap_interval_seconds": 5},
        })
        monkeypatch.setenv("SESSION_STALENESS_SECONDS", "90")
        monkeypatch.setenv("SESSION_REAP_INTERVAL_SECONDS", "2")

        policy = get_session_policy(str(path))

        assert policy.staleness_threshold_seconds == 90
        assert policy.reap_interval_seconds == 2

    def test_non_integer_env_rejected(self, temp_config_dir, monkeypatch):
        monkeypatch.setenv("SESSION_STALENESS_SECONDS", "soon")

        with pytest.raises(ValueError):
            get_session_policy(str(temp_config_dir / "absent.yml"))

    @pytest.mark.parametrize("field", [
        "staleness_threshold_seconds",
        "reap_interval_seconds",
        "reap_batch_size",
    ])
    def test_non_positive_values_rejected(self, make_yaml_config, field):
        path = make_yaml_config("session_policy.yml", {"liveness": {field: 0}})

        with pytest.raises(ValueError):
            get_session_policy(str(path))

    def test_loader_is_singleton(self, make_yaml_config):
        path = make_yaml_config("session_policy.yml", {"liveness": {"reap_interval_seconds": 7}})

        first = get_session_policy_loader(str(path))
        second = get_session_policy_loader()

        assert first is second
        assert second.policy.reap_interval_seconds == 7

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("session_policy.yml", {"liveness": {"reap_interval_seconds": 7}})
        loader = get_session_policy_loader(str(path))

        make_yaml_config("session_policy.yml", {"liveness": {"reap_interval_seconds": 12}})
        loader.reload()

        assert loader.policy.reap_interval_seconds == 12

    def test_repository_config_matches_defaults(self):
        policy = get_session_policy()

        assert policy.to_dict() == {
            "staleness_threshold_seconds": 45,
            "reap_interval_seconds": 10,
            "reap_batch_size": 500,
        }
