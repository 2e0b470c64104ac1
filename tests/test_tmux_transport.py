from __future__ import annotations

import subprocess

import allure
import pytest

from autoresume.session.base import SessionError
from autoresume.session.tmux import TmuxSessionTransport

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Session Transport"),
]


class FakeRunner:
    def __init__(self, *results: subprocess.CompletedProcess[str] | Exception) -> None:
        self.results = list(results)
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        assert kwargs["timeout"] == 10.0
        result = self.results.pop(0) if self.results else _completed(argv)
        if isinstance(result, Exception):
            raise result
        return result


def _completed(argv, stdout: str = "", returncode: int = 0, stderr: str = ""):
    return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr=stderr)


def test_send_types_literal_text_then_enter() -> None:
    runner = FakeRunner()
    transport = TmuxSessionTransport("work", runner=runner)

    transport.send("/dev 7")

    assert runner.calls == [
        ["tmux", "send-keys", "-t", "work", "-l", "/dev 7"],
        ["tmux", "send-keys", "-t", "work", "Enter"],
    ]


def test_capture_reads_recent_history() -> None:
    runner = FakeRunner(_completed([], stdout="line 1\nline 2\n"))
    transport = TmuxSessionTransport("work", history_lines=50, runner=runner)

    assert transport.capture_recent_output() == "line 1\nline 2\n"
    assert runner.calls[0] == ["tmux", "capture-pane", "-p", "-J", "-t", "work", "-S", "-50"]


def test_missing_session_raises_session_error() -> None:
    runner = FakeRunner(_completed([], returncode=1, stderr="can't find session: work"))
    transport = TmuxSessionTransport("work", runner=runner)

    with pytest.raises(SessionError, match="can't find session") as excinfo:
        transport.capture_recent_output()
    assert excinfo.value.unresponsive is False


def test_hung_tmux_is_reported_unresponsive() -> None:
    runner = FakeRunner(subprocess.TimeoutExpired(cmd="tmux", timeout=10))
    transport = TmuxSessionTransport("work", runner=runner)

    with pytest.raises(SessionError, match="timed out") as excinfo:
        transport.send("/clear")
    assert excinfo.value.unresponsive is True


def test_missing_binary_raises_session_error() -> None:
    runner = FakeRunner(FileNotFoundError("tmux"))
    transport = TmuxSessionTransport("work", runner=runner)

    with pytest.raises(SessionError, match="failed to start"):
        transport.capture_recent_output()


def test_is_alive_and_describe() -> None:
    alive = TmuxSessionTransport("work", runner=FakeRunner())
    dead = TmuxSessionTransport("work", runner=FakeRunner(_completed([], returncode=1)))

    assert alive.is_alive() is True
    assert dead.is_alive() is False
    assert alive.describe() == {"execution_mode": "tmux", "session_id": "work"}
