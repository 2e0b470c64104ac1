from __future__ import annotations

import allure
import pytest

from autoresume.taskqueue.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    RecoveryAction,
    classify_failure,
)
from autoresume.taskqueue.models import ErrorKind
from autoresume.taskqueue.usage_limit import UsageLimitMonitor

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Failures & Retries"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 2


@pytest.mark.parametrize(
    ("output", "kind", "action"),
    [
        ("Claude usage limit reached", ErrorKind.USAGE_LIMIT, RecoveryAction.PAUSE_UNTIL_RESET),
        ("Authentication failed: token expired", ErrorKind.AUTHENTICATION, RecoveryAction.FAIL),
        ("Error: connection refused", ErrorKind.NETWORK, RecoveryAction.RETRY),
        ("can't find session: main", ErrorKind.SESSION_UNRESPONSIVE, RecoveryAction.RETRY),
        ("Unknown slash command: /deev", ErrorKind.SYNTAX, RecoveryAction.FAIL),
        ("the operation timed out", ErrorKind.TIMEOUT, RecoveryAction.RETRY),
        ("something odd happened", ErrorKind.UNKNOWN, RecoveryAction.RETRY),
    ],
)
def test_classifier_maps_output_to_kind(
    output: str,
    kind: ErrorKind,
    action: RecoveryAction,
) -> None:
    classified = classify_failure(output)

    assert classified.kind == kind
    assert classified.action == action


def test_usage_limit_wins_over_network_text() -> None:
    classified = classify_failure("rate limit hit after connection reset")

    assert classified.kind == ErrorKind.USAGE_LIMIT
    assert classified.matched_rule == "usage_limit_text"
    assert classified.matched_pattern == "rate limit"


def test_authentication_wins_over_network_text() -> None:
    classified = classify_failure("Network error, then: Invalid API key")

    assert classified.kind == ErrorKind.AUTHENTICATION


def test_detector_timeout_applies_when_no_text_matches() -> None:
    classified = classify_failure("still thinking...", timed_out=True)

    assert classified.kind == ErrorKind.TIMEOUT
    assert classified.matched_rule == "detector_timeout"
    assert classified.matched_pattern is None


def test_text_match_wins_over_detector_timeout() -> None:
    classified = classify_failure("connection reset by peer", timed_out=True)

    assert classified.kind == ErrorKind.NETWORK


def test_monitor_flag_forces_usage_limit() -> None:
    classified = classify_failure("", usage_limit=True)

    assert classified.kind == ErrorKind.USAGE_LIMIT
    assert classified.to_details() == {
        "classifier_version": 2,
        "kind": "usage_limit",
        "action": "pause_until_reset",
        "matched_rule": "usage_limit_monitor",
        "matched_pattern": None,
    }


@pytest.mark.parametrize(
    "output",
    [
        "5-hour limit reached ∙ resets 3pm",
        "Service busy, please try again later.",
        "API Error: 429 Too Many Requests",
        "Monthly quota exceeded",
        "Rate limited by upstream",
    ],
)
def test_classifier_and_monitor_agree_on_limit_text(output: str) -> None:
    assert classify_failure(output).kind == ErrorKind.USAGE_LIMIT
    assert UsageLimitMonitor().scan(output) is not None


@pytest.mark.parametrize("output", ["limits of the design", "rate the limiter", "retry later"])
def test_classifier_and_monitor_agree_on_ordinary_text(output: str) -> None:
    assert classify_failure(output).kind != ErrorKind.USAGE_LIMIT
    assert UsageLimitMonitor().scan(output) is None
