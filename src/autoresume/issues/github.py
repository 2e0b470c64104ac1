"""GitHub REST client for issue metadata and status comments."""

from __future__ import annotations

import logging

import httpx

from autoresume import __version__
from autoresume.issues.base import IssueMetadata, IssueTrackerError, truncate_comment

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_COMMENT_MAX_LENGTH = 65_000


class GitHubIssueTracker:
    """Thin ``httpx`` wrapper over the issues endpoints of one repository."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        comment_max_length: int = DEFAULT_COMMENT_MAX_LENGTH,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if "/" not in repository:
            raise ValueError(f"GitHub repository must look like 'owner/name', got {repository!r}")
        self.repository = repository
        self.comment_max_length = comment_max_length
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "User-Agent": f"session-autoresume/{__version__}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )

    def fetch_item(self, item_id: str) -> IssueMetadata | None:
        response = self._request("GET", f"/repos/{self.repository}/issues/{item_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        if not response.is_success:
            raise IssueTrackerError(f"GitHub issue {item_id}: HTTP {response.status_code}")
        payload = response.json()
        return IssueMetadata(
            number=str(payload.get("number", item_id)),
            title=str(payload.get("title") or ""),
            state=str(payload.get("state") or "unknown"),
            url=payload.get("html_url"),
        )

    def post_comment(self, item_id: str, text: str) -> None:
        body = truncate_comment(text, max_length=self.comment_max_length)
        response = self._request(
            "POST",
            f"/repos/{self.repository}/issues/{item_id}/comments",
            json={"body": body},
        )
        if not response.is_success:
            raise IssueTrackerError(
                f"GitHub comment on issue {item_id}: HTTP {response.status_code}",
            )
        logger.info("Posted status comment on %s#%s", self.repository, item_id)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubIssueTracker:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling GitHub %s %s", method, url)
            raise IssueTrackerError(f"GitHub request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling GitHub %s %s: %s", method, url, exc)
            raise IssueTrackerError(f"GitHub request failed: {exc}") from exc
