"""tmux-backed session transport."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable, Sequence

from autoresume.session.base import SessionError

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess[str]]


class TmuxSessionTransport:
    """Drive an assistant running inside a tmux pane via ``send-keys``/``capture-pane``."""

    def __init__(
        self,
        session_name: str,
        *,
        history_lines: int = 200,
        tmux_binary: str = "tmux",
        command_timeout_seconds: float = 10.0,
        runner: Runner = subprocess.run,
    ) -> None:
        self.session_name = session_name
        self.history_lines = history_lines
        self.tmux_binary = tmux_binary
        self.command_timeout_seconds = command_timeout_seconds
        self._runner = runner

    def is_alive(self) -> bool:
        try:
            self._tmux(["has-session", "-t", self.session_name])
        except SessionError:
            return False
        return True

    def send(self, command: str) -> None:
        logger.debug("Sending to tmux session %s: %s", self.session_name, command)
        self._tmux(["send-keys", "-t", self.session_name, "-l", command])
        self._tmux(["send-keys", "-t", self.session_name, "Enter"])

    def capture_recent_output(self) -> str:
        return self._tmux(
            [
                "capture-pane",
                "-p",
                "-J",
                "-t",
                self.session_name,
                "-S",
                f"-{self.history_lines}",
            ],
        )

    def describe(self) -> dict[str, str]:
        return {"execution_mode": "tmux", "session_id": self.session_name}

    def _tmux(self, args: Sequence[str]) -> str:
        argv = [self.tmux_binary, *args]
        try:
            completed = self._runner(  # noqa: S603
                argv,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.command_timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise SessionError(
                f"tmux {args[0]} timed out after {self.command_timeout_seconds:.0f}s",
                unresponsive=True,
            ) from error
        except OSError as error:
            raise SessionError(f"tmux failed to start: {error}") from error

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise SessionError(
                f"tmux {args[0]} failed for session {self.session_name}: "
                f"{stderr or f'exit code {completed.returncode}'}",
            )
        return completed.stdout or ""
