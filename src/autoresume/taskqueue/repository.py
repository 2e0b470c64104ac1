"""Task registry: the repository interface over the persisted queue document."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from autoresume.taskqueue.common import generate_id, local_now
from autoresume.taskqueue.errors import TaskNotFoundError, TaskStateError, ValidationError
from autoresume.taskqueue.locking import DEFAULT_LOCK_TIMEOUT_SECONDS, LockManager
from autoresume.taskqueue.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ErrorKind,
    ErrorRecord,
    QueueState,
    StepStatus,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
)
from autoresume.taskqueue.store import QueueStore

logger = logging.getLogger(__name__)

_PHASE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]*$")

TaskMutation = Callable[[Task], None]


@dataclass(slots=True)
class RegistryPause:
    """Registry-wide pause state."""

    paused: bool
    reason: str | None
    paused_at: datetime | None
    resume_at: datetime | None


class TaskRegistry:
    """Add, select and transition tasks.

    Every read-modify-write runs inside ``transaction()``, which holds the
    queue lock from load to save so concurrent CLI invocations and the
    scheduler never lose each other's updates. Plain reads go straight to the
    store and may observe a slightly stale document.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: QueueStore,
        lock: LockManager,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        max_queue_size: int = 0,
        now: Callable[[], datetime] = local_now,
    ) -> None:
        self.store = store
        self.lock = lock
        self.lock_timeout_seconds = lock_timeout_seconds
        self.max_queue_size = max_queue_size
        self._now = now

    @contextmanager
    def transaction(self) -> Iterator[QueueState]:
        """Locked load → mutate → save; nothing is saved if the block raises."""

        with self.lock.acquire(self.lock_timeout_seconds):
            state = self.store.load_or_create()
            yield state
            self.store.save(state)

    def snapshot(self) -> QueueState:
        return self.store.load_or_create()

    def add(self, payload: TaskCreate) -> Task:
        """Validate and enqueue a task; returns the stored task."""

        validate_task_create(payload)
        now = self._now()
        with self.transaction() as state:
            if self.max_queue_size > 0:
                active = sum(1 for task in state.tasks if task.status not in TERMINAL_STATUSES)
                if active >= self.max_queue_size:
                    raise ValidationError(
                        f"Queue is full ({active} active tasks, limit {self.max_queue_size})",
                    )
            prefix = "workflow" if payload.kind == TaskKind.WORKFLOW else "task"
            task = Task(
                id=_unique_id(state, prefix=prefix, now=now),
                kind=payload.kind,
                priority=payload.priority,
                status=TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
                sequence=state.next_sequence,
                command=payload.command,
                steps=list(payload.steps),
                workflow_type=payload.workflow_type,
                timeout=payload.timeout,
                max_retries=payload.max_retries,
                metadata=dict(payload.metadata),
            )
            state.next_sequence += 1
            state.tasks.append(task)
        logger.info(
            "Added task %s (kind=%s priority=%d steps=%d)",
            task.id,
            task.kind.value,
            task.priority,
            len(task.steps),
        )
        return task

    def get(self, task_id: str) -> Task:
        task = self.snapshot().find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def remove(self, task_id: str) -> Task:
        with self.transaction() as state:
            task = _require_task(state, task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                raise TaskStateError(f"Task {task_id} is in progress; cancel it first")
            state.tasks.remove(task)
        logger.info("Removed task %s", task_id)
        return task

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        """Tasks in selection order, optionally filtered by status."""

        tasks = self.snapshot().tasks
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        return sorted(tasks, key=Task.selection_key)

    def next(self) -> Task | None:
        return select_next(self.snapshot())

    def claim_next(self, *, owner_pid: int | None = None) -> Task | None:
        """Select the next runnable task and mark it in progress atomically.

        An in-progress task without an owner (left by a manual resume from a
        step) is adopted instead of selecting a new one.
        """

        pid = owner_pid if owner_pid is not None else os.getpid()
        with self.transaction() as state:
            running = state.in_progress()
            if running is not None and running.owner_pid is None and not state.paused:
                running.owner_pid = pid
                running.updated_at = self._now()
                logger.info("Adopted resumed task %s at step %d", running.id, running.current_step)
                return running
            task = select_next(state)
            if task is None:
                return None
            task.owner_pid = pid
            task.retry_requested = False
            task.pause_reason = None
            task.paused_at = None
            apply_transition(state, task, TaskStatus.IN_PROGRESS, now=self._now())
        logger.info("Claimed task %s (priority=%d)", task.id, task.priority)
        return task

    def update_status(self, task_id: str, status: TaskStatus) -> Task:
        return self.mutate(task_id, lambda _: None, status=status)

    def mutate(
        self,
        task_id: str,
        mutation: TaskMutation,
        *,
        status: TaskStatus | None = None,
    ) -> Task:
        """Apply ``mutation`` and an optional status transition in one locked span."""

        with self.transaction() as state:
            task = _require_task(state, task_id)
            mutation(task)
            if status is not None:
                apply_transition(state, task, status, now=self._now())
            task.updated_at = self._now()
        return task

    def retry(self, task_id: str) -> Task:
        """Operator retry for failed or timed out tasks."""

        def _mark(task: Task) -> None:
            if task.status not in {TaskStatus.FAILED, TaskStatus.TIMEOUT}:
                raise TaskStateError(
                    f"Only failed/timeout tasks can be retried, got {task.status.value}",
                )
            task.retry_requested = True
            task.retry_count = 0
            task.cancellation_reason = None
            task.cancelled_at = None

        task = self.mutate(task_id, _mark)
        logger.info("Task %s marked for retry", task_id)
        return task

    def cleanup(self, *, older_than_days: int) -> int:
        """Drop finished tasks whose last update is older than the retention."""

        cutoff = self._now() - timedelta(days=older_than_days)
        with self.transaction() as state:
            keep: list[Task] = []
            removed = 0
            for task in state.tasks:
                if task.status in TERMINAL_STATUSES and not task.retry_requested:
                    finished = task.completed_at or task.updated_at
                    if finished < cutoff:
                        removed += 1
                        continue
                keep.append(task)
            state.tasks = keep
        if removed:
            logger.info("Cleaned up %d finished tasks older than %d days", removed, older_than_days)
        return removed

    def pause(self, *, reason: str, resume_at: datetime | None = None) -> RegistryPause:
        with self.transaction() as state:
            state.paused = True
            state.pause_reason = reason
            state.paused_at = self._now()
            state.resume_at = resume_at
            pause = _pause_view(state)
        if resume_at is None:
            logger.warning("Queue paused (%s)", reason)
        else:
            logger.warning("Queue paused (%s) until %s", reason, resume_at.isoformat())
        return pause

    def resume(self) -> bool:
        """Lift the registry pause; returns False when it was not paused."""

        with self.transaction() as state:
            was_paused = state.paused
            state.paused = False
            state.pause_reason = None
            state.paused_at = None
            state.resume_at = None
        if was_paused:
            logger.info("Queue resumed")
        return was_paused

    def pause_state(self) -> RegistryPause:
        return _pause_view(self.snapshot())

    def record_usage_limit(self) -> int:
        """Count a usage-limit hit; returns the consecutive occurrence number."""

        with self.transaction() as state:
            state.usage_limit_occurrences += 1
            occurrences = state.usage_limit_occurrences
        return occurrences

    def reset_usage_limit(self) -> None:
        with self.transaction() as state:
            state.usage_limit_occurrences = 0

    def recover_stale(
        self,
        *,
        grace_seconds: int,
        active_task_id: str | None = None,
    ) -> list[str]:
        """Reclassify abandoned ``in_progress`` tasks as ``timeout``.

        A task is abandoned when its owner process is gone, when it is owned
        by this process but not the task currently executing, or when it has
        not been updated within its timeout plus ``grace_seconds``.
        """

        now = self._now()
        recovered: list[str] = []
        with self.transaction() as state:
            for task in state.tasks:
                if task.status != TaskStatus.IN_PROGRESS or task.id == active_task_id:
                    continue
                reason = _stale_reason(task, now=now, grace_seconds=grace_seconds)
                if reason is None:
                    continue
                _reclassify_stale(state, task, now=now, reason=reason)
                recovered.append(task.id)
        for task_id in recovered:
            logger.warning("Recovered stale in-progress task %s", task_id)
        return recovered


def select_next(state: QueueState) -> Task | None:
    """Deterministic selection: priority, then creation time, then insertion order."""

    if state.paused or state.in_progress() is not None:
        return None
    candidates = [task for task in state.tasks if task.is_runnable()]
    if not candidates:
        return None
    return min(candidates, key=Task.selection_key)


def apply_transition(
    state: QueueState,
    task: Task,
    status: TaskStatus,
    *,
    now: datetime,
) -> None:
    """Move ``task`` to ``status`` if the state machine allows it."""

    if task.status == status:
        task.updated_at = now
        return
    if status not in ALLOWED_TRANSITIONS[task.status]:
        raise TaskStateError(
            f"Task {task.id} cannot move from {task.status.value} to {status.value}",
        )
    if status == TaskStatus.IN_PROGRESS:
        running = state.in_progress()
        if running is not None and running.id != task.id:
            raise TaskStateError(f"Task {running.id} is already in progress")
        if task.started_at is None:
            task.started_at = now
    if status == TaskStatus.COMPLETED:
        task.completed_at = now
    if status in TERMINAL_STATUSES:
        task.owner_pid = None
    task.status = status
    task.updated_at = now


def validate_task_create(payload: TaskCreate) -> None:
    """Reject malformed task specs before they reach the queue."""

    if payload.timeout <= 0:
        raise ValidationError("Task timeout must be positive")
    if payload.max_retries < 0:
        raise ValidationError("max_retries must be >= 0")
    if isinstance(payload.priority, bool) or not isinstance(payload.priority, int):
        raise ValidationError("priority must be an integer")

    if payload.kind == TaskKind.SIMPLE:
        if not (payload.command or "").strip():
            raise ValidationError("Simple task requires a non-empty command")
        if payload.steps:
            raise ValidationError("Simple task cannot define workflow steps")
        return

    if not payload.steps:
        raise ValidationError("Workflow task requires at least one step")
    for index, step in enumerate(payload.steps):
        if not _PHASE_NAME_RE.match(step.phase or ""):
            raise ValidationError(f"Step {index} has invalid phase name: {step.phase!r}")
        if not (step.command or "").strip():
            raise ValidationError(f"Step {index} ({step.phase}) has an empty command")
        if step.timeout is not None and step.timeout <= 0:
            raise ValidationError(f"Step {index} ({step.phase}) timeout must be positive")


def _require_task(state: QueueState, task_id: str) -> Task:
    task = state.find(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _unique_id(state: QueueState, *, prefix: str, now: datetime) -> str:
    while True:
        candidate = generate_id(prefix, now=now)
        if state.find(candidate) is None:
            return candidate


def _pause_view(state: QueueState) -> RegistryPause:
    return RegistryPause(
        paused=state.paused,
        reason=state.pause_reason,
        paused_at=state.paused_at,
        resume_at=state.resume_at,
    )


def _stale_reason(task: Task, *, now: datetime, grace_seconds: int) -> str | None:
    if task.owner_pid is not None:
        if task.owner_pid == os.getpid():
            return "owner is this process but the task is not executing"
        if not _pid_alive(task.owner_pid):
            return f"owner process {task.owner_pid} is gone"
    deadline = task.updated_at + timedelta(seconds=task.timeout + grace_seconds)
    if deadline < now:
        return f"no progress since {task.updated_at.isoformat()}"
    return None


def _reclassify_stale(state: QueueState, task: Task, *, now: datetime, reason: str) -> None:
    step_index = task.current_step if task.is_workflow else 0
    if task.is_workflow and 0 <= task.current_step < len(task.steps):
        step = task.steps[task.current_step]
        if step.status == StepStatus.IN_PROGRESS:
            step.status = StepStatus.FAILED
            step.failed_at = now
    task.error_history.append(
        ErrorRecord(
            step_index=step_index,
            error_type=ErrorKind.TIMEOUT,
            raw_output=f"Stale in-progress task recovered: {reason}",
            timestamp=now,
            retry_count_at_failure=task.retry_count,
        ),
    )
    apply_transition(state, task, TaskStatus.TIMEOUT, now=now)
    if task.retry_count < task.max_retries:
        task.retry_count += 1
        task.retry_requested = True
        return
    apply_transition(state, task, TaskStatus.FAILED, now=now)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
