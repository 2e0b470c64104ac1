"""Session transport interface consumed by the workflow engine."""

from __future__ import annotations

from typing import Protocol


class SessionError(RuntimeError):
    """Transport failure; ``unresponsive`` marks hangs as opposed to hard errors."""

    def __init__(self, message: str, *, unresponsive: bool = False) -> None:
        super().__init__(message)
        self.unresponsive = unresponsive


class SessionTransport(Protocol):
    """Opaque channel to the interactive assistant."""

    def is_alive(self) -> bool:
        """Whether the session exists and accepts input."""

    def send(self, command: str) -> None:
        """Type ``command`` into the session and submit it."""

    def capture_recent_output(self) -> str:
        """Return the most recent visible output of the session."""

    def describe(self) -> dict[str, str]:
        """Execution mode and session identifier recorded in checkpoints."""
