"""Scheduler loop: claims tasks one at a time and hands them to the engine."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from autoresume.taskqueue.common import local_now
from autoresume.taskqueue.errors import QueueError
from autoresume.taskqueue.models import TaskStatus
from autoresume.taskqueue.repository import TaskRegistry
from autoresume.taskqueue.shutdown import StopToken, signal_handlers
from autoresume.taskqueue.workflow import TaskRunResult, WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    retried: int = 0
    usage_limits: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: SchedulerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.paused += other.paused
        self.retried += other.retried
        self.usage_limits += other.usage_limits
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


class SchedulerLoop:
    """Single-consumer loop over the task registry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        engine: WorkflowEngine,
        stop_token: StopToken | None = None,
        processing_delay_seconds: float = 10.0,
        pause_check_interval_seconds: float = 30.0,
        stale_grace_seconds: int = 300,
        auto_cleanup_days: int = 7,
        cleanup_interval_seconds: float = 3_600.0,
        monotonic: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = local_now,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.stop_token = stop_token or engine.stop_token
        self.processing_delay_seconds = processing_delay_seconds
        self.pause_check_interval_seconds = pause_check_interval_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.auto_cleanup_days = auto_cleanup_days
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._monotonic = monotonic
        self._now = now
        self._last_cleanup: float | None = None

    def run_once(self) -> SchedulerRunSummary:
        """Process at most one task from the queue."""

        summary = SchedulerRunSummary()
        if self.stop_token.stop_requested or self._registry_paused():
            summary.idle_polls = 1
            return summary

        summary.recovered = len(
            self.registry.recover_stale(grace_seconds=self.stale_grace_seconds),
        )
        self._maybe_cleanup()
        if self.stop_token.stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.registry.claim_next()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        result = self.engine.execute(task)
        _count(summary, result)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> SchedulerRunSummary:
        """Run until stopped, ``max_tasks`` processed, or the queue stays idle.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = SchedulerRunSummary()
        consecutive_idle = 0
        with signal_handlers(self.stop_token):
            while True:
                if self.stop_token.stop_requested:
                    logger.info("Scheduler stopping")
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                try:
                    summary = self.run_once()
                except QueueError as error:
                    logger.error("Scheduler iteration failed (%s): %s", error.kind.value, error)
                    summary = SchedulerRunSummary(idle_polls=1)
                except Exception:
                    logger.exception("Unexpected scheduler error")
                    summary = SchedulerRunSummary(idle_polls=1)
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self.stop_token.wait(self._idle_wait_seconds())
                    continue

                consecutive_idle = 0
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate
                self.stop_token.wait(self.processing_delay_seconds)

    def _registry_paused(self) -> bool:
        pause = self.registry.pause_state()
        if not pause.paused:
            return False
        if pause.resume_at is not None and self._now() >= pause.resume_at:
            logger.info("Pause window ended at %s; resuming queue", pause.resume_at.isoformat())
            self.registry.resume()
            return False
        return True

    def _idle_wait_seconds(self) -> float:
        pause = self.registry.pause_state()
        if not pause.paused:
            return self.processing_delay_seconds
        if pause.resume_at is None:
            return self.pause_check_interval_seconds
        remaining = (pause.resume_at - self._now()).total_seconds()
        return max(0.0, min(self.pause_check_interval_seconds, remaining))

    def _maybe_cleanup(self) -> None:
        if self.auto_cleanup_days <= 0:
            return
        now = self._monotonic()
        if (
            self._last_cleanup is not None
            and now - self._last_cleanup < self.cleanup_interval_seconds
        ):
            return
        self._last_cleanup = now
        self.registry.cleanup(older_than_days=self.auto_cleanup_days)
        self.registry.store.prune_backups()


def _count(summary: SchedulerRunSummary, result: TaskRunResult) -> None:
    summary.retried += result.retries
    if result.usage_limited:
        summary.usage_limits += 1
    if result.status == TaskStatus.COMPLETED:
        summary.completed += 1
    elif result.status in {TaskStatus.FAILED, TaskStatus.TIMEOUT}:
        summary.failed += 1
    elif result.status == TaskStatus.PAUSED:
        summary.paused += 1
