"""Tests for environment-driven configuration."""
from __future__ import annotations

import pytest

from taskagent.config import Config


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKAGENT_POLL_INTERVAL_SECONDS", raising=False)
    settings = Config.from_env()
    assert settings.runtime.poll_interval_seconds == 60.0
    assert settings.runtime.max_concurrent_tasks == 1
    assert settings.retry.max_retries == 3
    assert settings.breaker.failure_threshold == 3
    assert settings.health.shutdown_grace_seconds == 5.0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKAGENT_AGENT_ID", "worker-7")
    monkeypatch.setenv("TASKAGENT_COORDINATOR_URL", "https://coordinator.test/api")
    monkeypatch.setenv("TASKAGENT_TOKEN", "abc")
    monkeypatch.setenv("TASKAGENT_MAX_CONCURRENT_TASKS", "4")
    monkeypatch.setenv("TASKAGENT_RETRY_JITTER_RATIO", "0.25")

    settings = Config.from_env()
    assert settings.agent_id == "worker-7"
    assert settings.coordinator.base_url == "https://coordinator.test/api"
    assert settings.coordinator.token == "abc"
    assert settings.runtime.max_concurrent_tasks == 4
    assert settings.retry.jitter_ratio == 0.25


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TASKAGENT_MAX_RETRIES", "three"),
        ("TASKAGENT_MAX_CONCURRENT_TASKS", "0"),
        ("TASKAGENT_TASK_TIMEOUT_SECONDS", "-1"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        Config.from_env()
