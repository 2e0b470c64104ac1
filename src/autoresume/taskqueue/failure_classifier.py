"""Deterministic classification of step failures for retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from autoresume.taskqueue.models import ErrorKind

FAILURE_CLASSIFIER_VERSION = 2

# Shared with the usage-limit monitor, which turns the same phrases into a cooldown.
USAGE_LIMIT_PHRASES: tuple[str, ...] = (
    r"usage\s+limit",
    r"rate\s+limit(?:ed)?",
    r"limit\s+reached",
    r"too\s+many\s+requests",
    r"request\s+limit\s+exceeded",
    r"quota\s+exceeded",
    r"temporarily\s+unavailable",
    r"service\s+temporarily\s+overloaded",
    r"try\s+again\s+later",
)
USAGE_LIMIT_RE = re.compile("|".join(USAGE_LIMIT_PHRASES), re.IGNORECASE)

_AUTHENTICATION_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "authentication error",
    "unauthorized",
    "permission denied",
    "invalid api key",
    "not logged in",
    "please run /login",
    "oauth token has expired",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "network error",
    "network is unreachable",
    "could not resolve host",
    "temporary failure in name resolution",
    "econnreset",
    "econnrefused",
    "socket hang up",
)
_SESSION_PATTERNS: tuple[str, ...] = (
    "session not found",
    "no active session",
    "can't find session",
    "no server running",
    "session unresponsive",
)
_SYNTAX_PATTERNS: tuple[str, ...] = (
    "command not found",
    "unknown command",
    "unknown slash command",
    "invalid command",
    "syntax error",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)


class RecoveryAction(str, Enum):
    """What the workflow engine should do with a classified failure."""

    RETRY = "retry"
    PAUSE_UNTIL_RESET = "pause_until_reset"
    FAIL = "fail"


_ACTION_BY_KIND: dict[ErrorKind, RecoveryAction] = {
    ErrorKind.USAGE_LIMIT: RecoveryAction.PAUSE_UNTIL_RESET,
    ErrorKind.AUTHENTICATION: RecoveryAction.FAIL,
    ErrorKind.SYNTAX: RecoveryAction.FAIL,
    ErrorKind.VALIDATION: RecoveryAction.FAIL,
    ErrorKind.NETWORK: RecoveryAction.RETRY,
    ErrorKind.SESSION_UNRESPONSIVE: RecoveryAction.RETRY,
    ErrorKind.TIMEOUT: RecoveryAction.RETRY,
    ErrorKind.IO: RecoveryAction.RETRY,
    ErrorKind.LOCK_TIMEOUT: RecoveryAction.RETRY,
    ErrorKind.UNKNOWN: RecoveryAction.RETRY,
}


@dataclass(slots=True)
class ErrorClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    action: RecoveryAction
    matched_rule: str
    matched_pattern: str | None

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "kind": self.kind.value,
            "action": self.action.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def recovery_action_for(kind: ErrorKind) -> RecoveryAction:
    return _ACTION_BY_KIND[kind]


def classify_failure(
    raw_output: str,
    *,
    timed_out: bool = False,
    usage_limit: bool = False,
) -> ErrorClassification:
    """Map captured output plus detector outcome to one error kind.

    Precedence: usage limit, authentication, network, unresponsive session,
    command syntax, timeout, unknown. ``usage_limit`` is set when the
    usage-limit monitor already matched the same output.
    """

    if usage_limit:
        return _classification(ErrorKind.USAGE_LIMIT, "usage_limit_monitor", None)
    limit = USAGE_LIMIT_RE.search(raw_output)
    if limit is not None:
        phrase = " ".join(limit.group(0).lower().split())
        return _classification(ErrorKind.USAGE_LIMIT, "usage_limit_text", phrase)

    haystack = raw_output.lower()
    ordered_rules: tuple[tuple[ErrorKind, str, tuple[str, ...]], ...] = (
        (ErrorKind.AUTHENTICATION, "authentication", _AUTHENTICATION_PATTERNS),
        (ErrorKind.NETWORK, "network", _NETWORK_PATTERNS),
        (ErrorKind.SESSION_UNRESPONSIVE, "session", _SESSION_PATTERNS),
        (ErrorKind.SYNTAX, "syntax", _SYNTAX_PATTERNS),
    )
    for kind, rule, patterns in ordered_rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classification(kind, rule, pattern)

    if timed_out:
        return _classification(ErrorKind.TIMEOUT, "detector_timeout", None)
    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return _classification(ErrorKind.TIMEOUT, "timeout_text", pattern)

    return _classification(ErrorKind.UNKNOWN, "fallback_unknown", None)


def _classification(kind: ErrorKind, rule: str, pattern: str | None) -> ErrorClassification:
    return ErrorClassification(
        kind=kind,
        action=recovery_action_for(kind),
        matched_rule=rule,
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
