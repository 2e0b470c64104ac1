"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from autoresume.session.base import SessionError
from autoresume.taskqueue.completion import (
    TASK_COMPLETE_MARKER,
    CompletionDetector,
    completion_prompt,
)
from autoresume.taskqueue.locking import LockManager
from autoresume.taskqueue.repository import TaskRegistry
from autoresume.taskqueue.retry import RetryPolicy
from autoresume.taskqueue.shutdown import StopToken
from autoresume.taskqueue.store import QueueStore
from autoresume.taskqueue.usage_limit import UsageLimitMonitor
from autoresume.taskqueue.workflow import WorkflowEngine

START = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic wall clock and monotonic clock driven by the tests."""

    def __init__(self, start: datetime = START) -> None:
        self.origin = start
        self.current = start

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return (self.current - self.origin).total_seconds()

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeStopToken(StopToken):
    """Advances the fake clock instead of sleeping."""

    def __init__(self, clock: FakeClock, *, stop_after_waits: int | None = None) -> None:
        super().__init__()
        self.clock = clock
        self.waits: list[float] = []
        self.stop_after_waits = stop_after_waits

    def wait(self, seconds: float) -> bool:
        if self.stop_requested:
            return True
        self.waits.append(seconds)
        self.clock.advance(max(seconds, 0.0))
        if self.stop_after_waits is not None and len(self.waits) >= self.stop_after_waits:
            self.request_stop(signal_name="TEST")
        return self.stop_requested


Reply = str | None | Callable[[], str | None]

_MARKER_INSTRUCTION = completion_prompt("", TASK_COMPLETE_MARKER)


def _default_reply(command: str, *, marker_requested: bool) -> str:
    if marker_requested:
        return f"Done.\n{TASK_COMPLETE_MARKER}"
    if command.startswith("/dev merge-pr"):
        return "Merged successfully into main"
    if command.startswith("/dev "):
        return f"Created pull request #{command.split()[1]}"
    if command == "/clear":
        return "Context cleared"
    if command.startswith("/review"):
        return "Review complete"
    return "Done."


class FakeTransport:
    """Scripted session: each sent command is echoed, then its next reply appended.

    ``replies`` and ``commands`` use the command as queued, without the
    completion instruction. A ``None`` reply leaves only the echo, which looks
    like a hang. Unscripted commands get a plausible reply that prints the
    marker only when the command asked for it.
    """

    def __init__(self, replies: dict[str, list[Reply]] | None = None) -> None:
        self.replies = {command: list(queue) for command, queue in (replies or {}).items()}
        self.lines: list[str] = []
        self.sent: list[str] = []
        self.commands: list[str] = []
        self.send_error: SessionError | None = None

    def send(self, command: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(command)
        marker_requested = command.endswith(_MARKER_INSTRUCTION)
        base = command.removesuffix(_MARKER_INSTRUCTION)
        self.commands.append(base)
        self.lines.append(f"> {command}")
        queue = self.replies.get(base)
        reply: Reply = (
            queue.pop(0) if queue else _default_reply(base, marker_requested=marker_requested)
        )
        if callable(reply):
            reply = reply()
        if reply is not None:
            self.lines.extend(reply.splitlines())

    def capture_recent_output(self) -> str:
        return "\n".join(self.lines)

    def is_alive(self) -> bool:
        return True

    def describe(self) -> dict[str, str]:
        return {"execution_mode": "fake", "session_id": "test-session"}


class RecordingTracker:
    def __init__(self) -> None:
        self.comments: list[tuple[str, str]] = []

    def fetch_item(self, item_id: str):
        return None

    def post_comment(self, item_id: str, text: str) -> None:
        self.comments.append((item_id, text))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def stop_token(clock: FakeClock) -> FakeStopToken:
    return FakeStopToken(clock)


@pytest.fixture()
def queue_dir(tmp_path: Path) -> Path:
    return tmp_path / "queue"


@pytest.fixture()
def store(queue_dir: Path, clock: FakeClock) -> QueueStore:
    return QueueStore(queue_dir, now=clock.now)


@pytest.fixture()
def registry(store: QueueStore, clock: FakeClock) -> TaskRegistry:
    return make_registry(store, clock)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def tracker() -> RecordingTracker:
    return RecordingTracker()


@pytest.fixture()
def engine(
    registry: TaskRegistry,
    transport: FakeTransport,
    clock: FakeClock,
    stop_token: FakeStopToken,
    tracker: RecordingTracker,
) -> WorkflowEngine:
    return make_engine(registry, transport, clock, stop_token, issue_tracker=tracker)


def make_registry(store: QueueStore, clock: FakeClock, **kwargs) -> TaskRegistry:
    return TaskRegistry(
        store=store,
        lock=LockManager(store.lock_path),
        lock_timeout_seconds=5.0,
        now=clock.now,
        **kwargs,
    )


def make_engine(
    registry: TaskRegistry,
    transport: FakeTransport,
    clock: FakeClock,
    stop_token: FakeStopToken,
    **kwargs,
) -> WorkflowEngine:
    detector = CompletionDetector(
        poll_interval_seconds=5.0,
        progress_interval_seconds=60.0,
        stop_token=stop_token,
        monotonic=clock.monotonic,
    )
    options = {
        "retry_policy": RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=300.0),
        "phase_timeouts": {"develop": 600, "clear": 30, "review": 480, "merge": 300},
        "now": clock.now,
    }
    options.update(kwargs)
    return WorkflowEngine(
        registry=registry,
        transport=transport,
        detector=detector,
        monitor=UsageLimitMonitor(registry=registry, now=clock.now),
        stop_token=stop_token,
        **options,
    )


@pytest.fixture()
def registry_factory(clock: FakeClock) -> Callable[..., TaskRegistry]:
    def _factory(store: QueueStore, **kwargs) -> TaskRegistry:
        return make_registry(store, clock, **kwargs)

    return _factory


@pytest.fixture()
def engine_factory(
    clock: FakeClock,
    stop_token: FakeStopToken,
) -> Callable[..., WorkflowEngine]:
    def _factory(registry: TaskRegistry, transport: FakeTransport, **kwargs) -> WorkflowEngine:
        return make_engine(registry, transport, clock, stop_token, **kwargs)

    return _factory
