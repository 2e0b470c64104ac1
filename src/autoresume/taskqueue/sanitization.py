"""Redaction of captured session output before it is logged or persisted."""

from __future__ import annotations

import re
from typing import NamedTuple

DEFAULT_EXCERPT_CHARS = 2_000

_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


class _SecretRule(NamedTuple):
    pattern: re.Pattern[str]
    replacement: str


_SECRET_RULES: tuple[_SecretRule, ...] = (
    _SecretRule(
        re.compile(r"(?i)\b(bearer|token)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 <redacted>",
    ),
    _SecretRule(re.compile(r"(?i)\bsk-(?:ant-)?[a-z0-9\-_]{8,}\b"), "<redacted-key>"),
    _SecretRule(
        re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b"),
        "<redacted-key>",
    ),
    _SecretRule(
        re.compile(
            r"(?i)\b(?P<name>(?:autoresume|github|anthropic|claude|openai)\w*(?:key|token))"
            r"\s*[:=]\s*\S+",
        ),
        r"\g<name>=<redacted>",
    ),
    _SecretRule(re.compile(r"(?i)([?&](?:token|key|signature|auth))=[^&\s]+"), r"\1=<redacted>"),
)


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE_RE.sub("", text)


def redact_secrets(text: str) -> str:
    for rule in _SECRET_RULES:
        text = rule.pattern.sub(rule.replacement, text)
    return text


def output_excerpt(text: str, *, max_chars: int = DEFAULT_EXCERPT_CHARS) -> str:
    """Clean terminal output for error records: no colors, no secrets, newest text kept."""

    cleaned = redact_secrets(strip_ansi(text).strip())
    # Terminal captures end with the most recent output.
    return cleaned[-max_chars:] if len(cleaned) > max_chars else cleaned
