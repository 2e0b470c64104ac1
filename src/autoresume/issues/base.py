"""Issue tracker interface and shared helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

TRUNCATION_SUFFIX = "... (truncated)"


class IssueTrackerError(RuntimeError):
    """Remote tracker call failed; callers log and carry on."""


@dataclass(slots=True)
class IssueMetadata:
    number: str
    title: str
    state: str
    url: str | None = None


class IssueTracker(Protocol):
    """Minimal tracker surface: read an item, comment on it."""

    def fetch_item(self, item_id: str) -> IssueMetadata | None:
        """Return item metadata, or None when the item does not exist."""

    def post_comment(self, item_id: str, text: str) -> None:
        """Post ``text`` as a comment on ``item_id``."""


class NullIssueTracker:
    """Tracker used when mirroring is not configured."""

    def fetch_item(self, item_id: str) -> IssueMetadata | None:
        return None

    def post_comment(self, item_id: str, text: str) -> None:
        return None


def truncate_comment(text: str, *, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    keep = max(0, max_length - len(TRUNCATION_SUFFIX))
    return f"{text[:keep]}{TRUNCATION_SUFFIX}"
