from __future__ import annotations

from pathlib import Path

import allure
import pytest

from autoresume.config import DEFAULT_PHASE_TIMEOUTS, Settings

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Configuration"),
]


def test_defaults_match_documented_values(monkeypatch, tmp_path: Path) -> None:
    for name in ("AUTORESUME_GITHUB_TOKEN", "GITHUB_TOKEN", "AUTORESUME_GITHUB_REPOSITORY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env(queue_dir=tmp_path)

    assert settings.queue.queue_dir == tmp_path
    assert settings.queue.processing_delay_seconds == 10.0
    assert settings.queue.auto_cleanup_days == 7
    assert settings.tasks.priority == 5
    assert settings.tasks.max_retries == 3
    assert settings.completion.phase_timeouts == DEFAULT_PHASE_TIMEOUTS
    assert settings.usage_limit.default_cooldown_seconds == 300
    assert settings.session.clear_between_tasks is True
    assert settings.completion.request_marker is True
    assert settings.github.enabled is False


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AUTORESUME_QUEUE_DIR", str(tmp_path / "q"))
    monkeypatch.setenv("AUTORESUME_REVIEW_TIMEOUT", "900")
    monkeypatch.setenv("AUTORESUME_MERGE_COMPLETION_PATTERNS", "merged!")
    monkeypatch.setenv("AUTORESUME_SESSION_CLEAR_BETWEEN_TASKS", "off")
    monkeypatch.setenv("AUTORESUME_GITHUB_TOKEN", "t0ken")
    monkeypatch.setenv("AUTORESUME_GITHUB_REPOSITORY", "acme/widgets")
    monkeypatch.setenv("AUTORESUME_LOG_LEVEL", "debug")
    monkeypatch.setenv("AUTORESUME_COMPLETION_PROMPT", "no")

    settings = Settings.from_env()

    assert settings.queue.queue_dir == tmp_path / "q"
    assert settings.completion.phase_timeouts["review"] == 900
    assert settings.completion.phase_timeouts["develop"] == 600
    assert settings.completion.pattern_overrides == {"merge": "merged!"}
    assert settings.session.clear_between_tasks is False
    assert settings.github.enabled is True
    assert settings.log_level == "DEBUG"
    assert settings.completion.request_marker is False


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AUTORESUME_LOCK_TIMEOUT", "0", "AUTORESUME_LOCK_TIMEOUT"),
        ("AUTORESUME_TASK_MAX_RETRIES", "-1", "AUTORESUME_TASK_MAX_RETRIES"),
        ("AUTORESUME_DEVELOP_TIMEOUT", "soon", "Invalid AUTORESUME_DEVELOP_TIMEOUT"),
        ("AUTORESUME_CLEAR_TIMEOUT", "0", "Phase timeout for 'clear'"),
        ("AUTORESUME_AUTO_PAUSE_ON_ERROR", "maybe", "Invalid boolean"),
        ("AUTORESUME_USAGE_LIMIT_MAX_WAIT", "10", "MAX_WAIT must be >="),
        ("AUTORESUME_GITHUB_REPOSITORY", "widgets", "owner/name"),
    ],
)
def test_invalid_values_are_rejected(
    monkeypatch,
    tmp_path: Path,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env(queue_dir=tmp_path)
