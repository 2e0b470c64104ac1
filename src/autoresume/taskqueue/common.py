"""Time and identifier helpers shared by queue modules."""

from __future__ import annotations

import secrets
from datetime import datetime


def local_now() -> datetime:
    """Current timestamp in the machine's local timezone."""

    return datetime.now().astimezone()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO datetime; naive values are taken as local time."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.astimezone()
    return parsed


def generate_id(prefix: str, *, now: datetime | None = None) -> str:
    moment = now or local_now()
    return f"{prefix}-{moment:%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"
