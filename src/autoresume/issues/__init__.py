"""Issue tracker clients used to mirror task status."""

from autoresume.issues.base import (
    IssueMetadata,
    IssueTracker,
    IssueTrackerError,
    NullIssueTracker,
    truncate_comment,
)
from autoresume.issues.github import GitHubIssueTracker

__all__ = [
    "GitHubIssueTracker",
    "IssueMetadata",
    "IssueTracker",
    "IssueTrackerError",
    "NullIssueTracker",
    "truncate_comment",
]
