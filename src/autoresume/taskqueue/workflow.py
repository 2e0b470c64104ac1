"""Workflow engine: drives tasks phase by phase through the assistant session."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple

from autoresume.issues.base import IssueTracker, IssueTrackerError, NullIssueTracker
from autoresume.session.base import SessionError, SessionTransport
from autoresume.taskqueue.common import generate_id, local_now
from autoresume.taskqueue.completion import (
    CompletionDetector,
    CompletionOutcome,
    completion_prompt,
)
from autoresume.taskqueue.errors import TaskNotFoundError, TaskStateError, ValidationError
from autoresume.taskqueue.failure_classifier import classify_failure
from autoresume.taskqueue.models import (
    DEFAULT_CANCELLATION_REASON,
    DEFAULT_CHECKPOINT_REASON,
    GENERIC_PHASE,
    PAUSE_REASON_MANUAL,
    PAUSE_REASON_RESTORED,
    PAUSE_REASON_SHUTDOWN,
    PAUSE_REASON_USAGE_LIMIT,
    Checkpoint,
    ErrorKind,
    ErrorRecord,
    RecoveryWindow,
    Step,
    StepStatus,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
    WorkflowType,
)
from autoresume.taskqueue.repository import TaskMutation, TaskRegistry, apply_transition
from autoresume.taskqueue.retry import RetryDecision, RetryPolicy
from autoresume.taskqueue.sanitization import output_excerpt
from autoresume.taskqueue.serialization import step_from_dict, workflow_snapshot
from autoresume.taskqueue.shutdown import StopToken
from autoresume.taskqueue.usage_limit import UsageLimitMonitor

logger = logging.getLogger(__name__)

PRE_RESUME_CHECKPOINT_REASON = "pre_resume"
DEFAULT_CHECKPOINT_RETENTION = 20
_ERROR_EXCERPT_CHARS = 2_000

# Failures that would hit every following task too.
_AUTO_PAUSE_KINDS = frozenset(
    {
        ErrorKind.AUTHENTICATION,
        ErrorKind.NETWORK,
        ErrorKind.SESSION_UNRESPONSIVE,
        ErrorKind.TIMEOUT,
        ErrorKind.IO,
        ErrorKind.LOCK_TIMEOUT,
        ErrorKind.UNKNOWN,
    },
)


def build_issue_merge_steps(issue_id: str) -> list[Step]:
    """Standard develop → clear → review → merge pipeline for one issue."""

    issue = issue_id.strip().lstrip("#")
    if not issue:
        raise ValidationError("Issue id must not be empty")
    return [
        Step(phase="develop", command=f"/dev {issue}", description=f"Implement issue {issue}"),
        Step(phase="clear", command="/clear", description="Clear session context"),
        Step(phase="review", command=f"/review PR-{issue}", description="Review the pull request"),
        Step(
            phase="merge",
            command=f"/dev merge-pr {issue} --focus-main",
            description="Merge the pull request into main",
        ),
    ]


def issue_merge_task(
    issue_id: str,
    *,
    priority: int = 5,
    timeout: int = 3_600,
    max_retries: int = 3,
) -> TaskCreate:
    issue = issue_id.strip().lstrip("#")
    return TaskCreate(
        kind=TaskKind.WORKFLOW,
        steps=build_issue_merge_steps(issue),
        workflow_type=WorkflowType.ISSUE_MERGE,
        priority=priority,
        timeout=timeout,
        max_retries=max_retries,
        metadata={"issue_id": issue},
    )


def parse_step_spec(spec: str) -> Step:
    """Parse ``phase:command`` into a pending step."""

    phase, separator, command = spec.partition(":")
    if not separator or not phase.strip() or not command.strip():
        raise ValidationError(f"Step must look like 'phase:command', got {spec!r}")
    return Step(phase=phase.strip().lower(), command=command.strip())


@dataclass(slots=True)
class WorkflowProgress:
    """Read-only progress view of a task."""

    task_id: str
    status: TaskStatus
    current_step: int
    total_steps: int
    current_phase: str | None
    progress_percent: float
    elapsed_seconds: float
    estimated_completion: datetime | None
    error_count: int
    last_error: ErrorRecord | None


@dataclass(slots=True)
class TaskRunResult:
    """Outcome of one ``execute`` call."""

    task_id: str
    status: TaskStatus
    reason: str
    retries: int = 0
    usage_limited: bool = False


class StepOutcome(NamedTuple):
    succeeded: bool
    kind: ErrorKind | None
    output: str
    window: RecoveryWindow | None = None
    shutdown: bool = False


class WorkflowEngine:
    """Execute simple tasks and workflows with retry, pause and checkpoints.

    The engine owns one task at a time. All state changes go through the
    registry so that an operator cancelling or pausing from another process
    is observed at the next phase boundary.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TaskRegistry,
        transport: SessionTransport,
        detector: CompletionDetector,
        monitor: UsageLimitMonitor,
        retry_policy: RetryPolicy | None = None,
        issue_tracker: IssueTracker | None = None,
        stop_token: StopToken | None = None,
        phase_timeouts: Mapping[str, int] | None = None,
        auto_pause_on_error: bool = True,
        clear_between_tasks: bool = True,
        clear_command: str = "/clear",
        request_completion_marker: bool = True,
        checkpoint_retention: int = DEFAULT_CHECKPOINT_RETENTION,
        now: Callable[[], datetime] = local_now,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.detector = detector
        self.monitor = monitor
        self.retry_policy = retry_policy or RetryPolicy()
        self.issue_tracker: IssueTracker = issue_tracker or NullIssueTracker()
        self.stop_token = stop_token or detector.stop_token
        self.phase_timeouts = dict(phase_timeouts or {})
        self.auto_pause_on_error = auto_pause_on_error
        self.clear_between_tasks = clear_between_tasks
        self.clear_command = clear_command
        self.request_completion_marker = request_completion_marker
        self.checkpoint_retention = checkpoint_retention
        self._now = now

    def execute(self, task: Task) -> TaskRunResult:
        """Run a claimed task until it completes, fails, or has to stop."""

        retries = 0
        logger.info(
            "Executing task %s (%s, step %d/%d)",
            task.id,
            task.kind.value,
            task.current_step + 1,
            task.total_steps,
        )
        while True:
            current = self.registry.get(task.id)
            if current.is_cancelled:
                logger.info("Task %s was cancelled; stopping", current.id)
                return TaskRunResult(current.id, current.status, "cancelled", retries)
            if current.status != TaskStatus.IN_PROGRESS:
                logger.info("Task %s is %s; stopping", current.id, current.status.value)
                return TaskRunResult(current.id, current.status, current.status.value, retries)
            if current.current_step >= current.total_steps:
                return self._complete(current, retries)
            if self.stop_token.stop_requested:
                paused = self._pause_for_shutdown(current)
                return TaskRunResult(paused.id, paused.status, PAUSE_REASON_SHUTDOWN, retries)

            step_index = current.current_step
            outcome = self.execute_step(current, step_index)
            if outcome.shutdown:
                paused = self._pause_for_shutdown(self.registry.get(task.id))
                return TaskRunResult(paused.id, paused.status, PAUSE_REASON_SHUTDOWN, retries)
            if outcome.succeeded:
                self._finish_step(current.id, step_index)
                continue

            kind = outcome.kind or ErrorKind.UNKNOWN
            decision = self.handle_step_error(
                current.id,
                step_index,
                kind=kind,
                output=outcome.output,
                window=outcome.window,
            )
            if decision.pause_queue:
                latest = self.registry.get(task.id)
                return TaskRunResult(
                    latest.id,
                    latest.status,
                    PAUSE_REASON_USAGE_LIMIT,
                    retries,
                    usage_limited=True,
                )
            if not decision.should_retry:
                latest = self.registry.get(task.id)
                return TaskRunResult(latest.id, latest.status, kind.value, retries)

            retries += 1
            logger.warning(
                "Task %s step %d failed (%s); retrying in %.1fs",
                current.id,
                step_index,
                kind.value,
                decision.delay_seconds,
            )
            if self.stop_token.wait(decision.delay_seconds):
                paused = self._pause_for_shutdown(self.registry.get(task.id))
                return TaskRunResult(paused.id, paused.status, PAUSE_REASON_SHUTDOWN, retries)

    def execute_step(self, task: Task, step_index: int) -> StepOutcome:
        """Send one phase command and wait for its outcome."""

        phase, command, timeout = self._step_parameters(task, step_index)
        if task.is_workflow:

            def _start(target: Task) -> None:
                step = target.steps[step_index]
                step.status = StepStatus.IN_PROGRESS
                step.started_at = self._now()
                step.failed_at = None

            self._apply(task.id, _start)

        occurrence = self.registry.snapshot().usage_limit_occurrences + 1
        detected: list[RecoveryWindow] = []

        def _observe(chunk: str) -> bool:
            window = self.monitor.scan(chunk, occurrence=occurrence)
            if window is None:
                return False
            detected.append(window)
            return True

        prompted = self.request_completion_marker and self.detector.requests_marker(phase)
        if prompted:
            command = completion_prompt(command, self.detector.completion_marker)

        logger.info("Task %s step %d: %s (timeout %ds)", task.id, step_index, phase, timeout)
        try:
            baseline = self.transport.capture_recent_output()
            self.transport.send(command)
            result = self.detector.await_completion(
                self.transport,
                phase,
                timeout,
                baseline=baseline,
                sent=command if prompted else "",
                observer=_observe,
            )
        except SessionError as error:
            logger.warning("Session error on task %s step %d: %s", task.id, step_index, error)
            kind = classify_failure(str(error)).kind
            if error.unresponsive or kind == ErrorKind.UNKNOWN:
                kind = ErrorKind.SESSION_UNRESPONSIVE
            return StepOutcome(succeeded=False, kind=kind, output=str(error))

        if result.outcome == CompletionOutcome.COMPLETED:
            return StepOutcome(succeeded=True, kind=None, output=result.output)
        if result.outcome == CompletionOutcome.CANCELLED:
            return StepOutcome(succeeded=False, kind=None, output=result.output, shutdown=True)
        classification = classify_failure(
            result.output,
            timed_out=result.outcome == CompletionOutcome.TIMEOUT,
            usage_limit=result.outcome == CompletionOutcome.INTERRUPTED,
        )
        window = detected[-1] if detected and classification.kind == ErrorKind.USAGE_LIMIT else None
        return StepOutcome(
            succeeded=False,
            kind=classification.kind,
            output=result.output,
            window=window,
        )

    def handle_step_error(  # noqa: PLR0913
        self,
        task_id: str,
        step_index: int,
        *,
        kind: ErrorKind,
        output: str,
        window: RecoveryWindow | None = None,
    ) -> RetryDecision:
        """Record a failed step and apply the retry policy.

        Usage limits pause the task and the registry without spending the
        retry budget. Retryable errors increment ``retry_count``; once the
        budget is spent, or for non-retryable errors, the task fails.
        """

        task = self.registry.get(task_id)
        decision = self.retry_policy.decide(
            kind=kind,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
        )
        now = self._now()

        if decision.pause_queue:
            if window is None:
                occurrence = self.registry.snapshot().usage_limit_occurrences + 1
                window = self.monitor.scan(output, now=now, occurrence=occurrence)
                if window is None:
                    window = self.monitor.cooldown_window(
                        output_excerpt(output, max_chars=200) or "usage limit",
                        now=now,
                        occurrence=occurrence,
                    )

            def _hold(target: Task) -> None:
                _reset_step(target, step_index)
                target.pause_reason = PAUSE_REASON_USAGE_LIMIT
                target.paused_at = now

            self._apply(task_id, _hold, status=TaskStatus.PAUSED)
            self.monitor.apply(window, task=task, step_index=step_index)
            return decision

        record = ErrorRecord(
            step_index=step_index,
            error_type=kind,
            raw_output=output_excerpt(output, max_chars=_ERROR_EXCERPT_CHARS),
            timestamp=now,
            retry_count_at_failure=task.retry_count,
        )
        phase = self._phase_name(task, step_index)

        if decision.should_retry:

            def _count_retry(target: Task) -> None:
                target.error_history.append(record)
                target.retry_count += 1
                _mark_step_failed(target, step_index, now)

            self._apply(task_id, _count_retry)
            return decision

        def _fail(target: Task) -> None:
            target.error_history.append(record)
            _mark_step_failed(target, step_index, now)
            target.results[phase] = f"failed: {kind.value}"

        failed = self._apply(task_id, _fail, status=TaskStatus.FAILED)
        logger.error(
            "Task %s failed at step %d (%s): %s",
            task_id,
            step_index,
            phase,
            decision.reason,
        )
        if self.auto_pause_on_error and kind in _AUTO_PAUSE_KINDS:
            self.registry.pause(reason=f"auto_pause: task {task_id} failed with {kind.value}")
        self._mirror(
            failed,
            f"Task `{task_id}` failed at step {step_index + 1} ({phase}): {kind.value}\n\n"
            f"{decision.reason}",
        )
        return decision

    def resume_from_step(self, task_id: str, step_index: int) -> Task:
        """Restart a workflow at ``step_index``, marking earlier steps completed.

        A ``pre_resume`` checkpoint is taken first. Invalid requests raise
        before anything is written.
        """

        now = self._now()
        with self.registry.transaction() as state:
            task = state.find(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if not task.is_workflow:
                raise ValidationError(f"Task {task_id} is not a workflow")
            if not 0 <= step_index < len(task.steps):
                raise ValidationError(
                    f"Step index {step_index} out of range for {len(task.steps)} steps",
                )
            if task.status == TaskStatus.COMPLETED:
                raise TaskStateError(f"Task {task_id} is already completed")

            task.checkpoints.append(
                self._checkpoint(task, reason=PRE_RESUME_CHECKPOINT_REASON, now=now),
            )
            self._prune_checkpoints(task)
            for index, step in enumerate(task.steps):
                if index < step_index:
                    step.status = StepStatus.COMPLETED
                    step.completed_at = step.completed_at or now
                    step.failed_at = None
                else:
                    _reset_step(task, index)
            task.current_step = step_index
            task.manual_resume = True
            task.resumed_at = now
            task.resume_count += 1
            task.pause_reason = None
            task.paused_at = None
            task.cancelled_at = None
            task.cancellation_reason = None
            task.retry_requested = False
            task.owner_pid = None
            apply_transition(state, task, TaskStatus.IN_PROGRESS, now=now)
        logger.info("Task %s resumed from step %d", task_id, step_index)
        return task

    def create_checkpoint(
        self,
        task_id: str,
        reason: str = DEFAULT_CHECKPOINT_REASON,
    ) -> Checkpoint:
        """Snapshot the resumable state of a task without changing it."""

        now = self._now()
        created: list[Checkpoint] = []

        def _add(task: Task) -> None:
            checkpoint = self._checkpoint(task, reason=reason, now=now)
            task.checkpoints.append(checkpoint)
            self._prune_checkpoints(task)
            created.append(checkpoint)

        self.registry.mutate(task_id, _add)
        logger.info("Checkpoint %s created for task %s (%s)", created[0].id, task_id, reason)
        return created[0]

    def restore_checkpoint(self, task_id: str, checkpoint_id: str) -> Task:
        """Roll a task's steps and results back to a checkpoint.

        Restored tasks become runnable again from the checkpoint's step.
        """

        now = self._now()
        with self.registry.transaction() as state:
            task = state.find(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            checkpoint = next((cp for cp in task.checkpoints if cp.id == checkpoint_id), None)
            if checkpoint is None:
                raise ValidationError(f"Checkpoint {checkpoint_id} not found on task {task_id}")
            if task.status in {TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS}:
                raise TaskStateError(
                    f"Cannot restore a checkpoint while task {task_id} is {task.status.value}",
                )

            snapshot = checkpoint.workflow_state
            task.steps = [step_from_dict(item) for item in snapshot.get("steps", [])]
            for index, step in enumerate(task.steps):
                if step.status == StepStatus.IN_PROGRESS:
                    _reset_step(task, index)
            task.current_step = int(snapshot.get("current_step", 0))
            task.results = {str(k): str(v) for k, v in snapshot.get("results", {}).items()}
            task.cancelled_at = None
            task.cancellation_reason = None
            if task.status == TaskStatus.PAUSED:
                task.pause_reason = PAUSE_REASON_RESTORED
                task.paused_at = now
            elif task.status in {TaskStatus.FAILED, TaskStatus.TIMEOUT}:
                task.retry_requested = True
            task.updated_at = now
        logger.info("Task %s restored from checkpoint %s", task_id, checkpoint_id)
        return task

    def cancel_workflow(self, task_id: str, reason: str = DEFAULT_CANCELLATION_REASON) -> Task:
        """Cancel a task in any state except completed."""

        now = self._now()
        with self.registry.transaction() as state:
            task = state.find(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status == TaskStatus.COMPLETED:
                raise TaskStateError(f"Task {task_id} is already completed")
            if task.is_workflow and 0 <= task.current_step < len(task.steps):
                step = task.steps[task.current_step]
                if step.status == StepStatus.IN_PROGRESS:
                    _mark_step_failed(task, task.current_step, now)
            task.cancelled_at = now
            task.cancellation_reason = reason
            task.retry_requested = False
            task.pause_reason = None
            task.paused_at = None
            apply_transition(state, task, TaskStatus.FAILED, now=now)
        logger.info("Task %s cancelled: %s", task_id, reason)
        self._mirror(task, f"Task `{task_id}` cancelled: {reason}")
        return task

    def pause_workflow(self, task_id: str) -> Task:
        """Hold a task until ``resume_workflow``; the scheduler skips it."""

        def _hold(task: Task) -> None:
            if task.status not in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.PAUSED}:
                raise TaskStateError(f"Cannot pause a {task.status.value} task")
            task.pause_reason = PAUSE_REASON_MANUAL
            task.paused_at = self._now()

        task = self.registry.mutate(task_id, _hold, status=TaskStatus.PAUSED)
        logger.info("Task %s paused", task_id)
        return task

    def resume_workflow(self, task_id: str) -> Task:
        def _release(task: Task) -> None:
            if task.status != TaskStatus.PAUSED:
                raise TaskStateError(f"Task {task_id} is not paused")
            task.pause_reason = None
            task.paused_at = None

        task = self.registry.mutate(task_id, _release)
        logger.info("Task %s released for scheduling", task_id)
        return task

    def progress(self, task: Task, now: datetime | None = None) -> WorkflowProgress:
        """Percent done, average-step ETA and error summary."""

        current_time = now or self._now()
        total = task.total_steps
        done = total if task.status == TaskStatus.COMPLETED else min(task.current_step, total)
        elapsed = max(0.0, (current_time - task.created_at).total_seconds())
        estimated: datetime | None = None
        if task.status == TaskStatus.COMPLETED:
            estimated = task.completed_at
        elif 0 < done < total:
            average = elapsed / done
            estimated = current_time + timedelta(seconds=average * (total - done))
        return WorkflowProgress(
            task_id=task.id,
            status=task.status,
            current_step=task.current_step,
            total_steps=total,
            current_phase=self._phase_name(task, task.current_step) if done < total else None,
            progress_percent=round(100.0 * done / total, 1) if total else 0.0,
            elapsed_seconds=elapsed,
            estimated_completion=estimated,
            error_count=len(task.error_history),
            last_error=task.error_history[-1] if task.error_history else None,
        )

    def _finish_step(self, task_id: str, step_index: int) -> None:
        now = self._now()

        def _advance(task: Task) -> None:
            phase = self._phase_name(task, step_index)
            if task.is_workflow:
                step = task.steps[step_index]
                step.status = StepStatus.COMPLETED
                step.completed_at = now
                step.failed_at = None
            task.results[phase] = "completed"
            task.current_step = step_index + 1

        task = self._apply(task_id, _advance)
        if task.is_workflow and not task.is_cancelled and task.current_step < len(task.steps):
            phase = task.steps[step_index].phase
            self.create_checkpoint(task_id, reason=f"after_{phase}")

    def _complete(self, task: Task, retries: int) -> TaskRunResult:
        completed = self._apply(task.id, lambda _: None, status=TaskStatus.COMPLETED)
        if completed.status != TaskStatus.COMPLETED:
            return TaskRunResult(completed.id, completed.status, completed.status.value, retries)
        self.registry.reset_usage_limit()
        logger.info("Task %s completed (%d steps)", completed.id, completed.total_steps)
        self._mirror(
            completed,
            f"Task `{completed.id}` completed: {completed.total_steps} step(s), "
            f"{len(completed.error_history)} error(s) recovered.",
        )
        if self._should_clear(completed):
            self._clear_context()
        return TaskRunResult(completed.id, TaskStatus.COMPLETED, "completed", retries)

    def _pause_for_shutdown(self, task: Task) -> Task:
        if task.status != TaskStatus.IN_PROGRESS:
            return task
        now = self._now()
        step_index = task.current_step

        def _hold(target: Task) -> None:
            if target.is_workflow and 0 <= step_index < len(target.steps):
                _reset_step(target, step_index)
            target.pause_reason = PAUSE_REASON_SHUTDOWN
            target.paused_at = now

        paused = self._apply(task.id, _hold, status=TaskStatus.PAUSED)
        logger.info("Task %s paused for shutdown at step %d", task.id, step_index)
        return paused

    def _apply(
        self,
        task_id: str,
        mutation: TaskMutation,
        *,
        status: TaskStatus | None = None,
    ) -> Task:
        """Mutate a task unless it was cancelled meanwhile.

        ``status`` is only applied while the task is still in progress, so an
        operator pause or cancel is never overwritten.
        """

        with self.registry.transaction() as state:
            task = state.find(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.is_cancelled:
                return task
            mutation(task)
            if status is not None and task.status == TaskStatus.IN_PROGRESS:
                apply_transition(state, task, status, now=self._now())
            task.updated_at = self._now()
        return task

    def _step_parameters(self, task: Task, step_index: int) -> tuple[str, str, int]:
        if not task.is_workflow:
            return GENERIC_PHASE, task.command or "", task.timeout
        step = task.steps[step_index]
        if step.timeout is not None:
            return step.phase, step.command, step.timeout
        phase_default = self.phase_timeouts.get(step.phase)
        timeout = min(phase_default, task.timeout) if phase_default else task.timeout
        return step.phase, step.command, timeout

    def _phase_name(self, task: Task, step_index: int) -> str:
        if task.is_workflow and 0 <= step_index < len(task.steps):
            return task.steps[step_index].phase
        return GENERIC_PHASE

    def _checkpoint(self, task: Task, *, reason: str, now: datetime) -> Checkpoint:
        return Checkpoint(
            id=generate_id("checkpoint", now=now),
            reason=reason,
            created_at=now,
            workflow_state=workflow_snapshot(task),
            environment=dict(self.transport.describe()),
        )

    def _prune_checkpoints(self, task: Task) -> None:
        if self.checkpoint_retention > 0 and len(task.checkpoints) > self.checkpoint_retention:
            del task.checkpoints[: len(task.checkpoints) - self.checkpoint_retention]

    def _should_clear(self, task: Task) -> bool:
        override = task.metadata.get("clear_context")
        if override is None:
            return self.clear_between_tasks
        return bool(override)

    def _clear_context(self) -> None:
        timeout = self.phase_timeouts.get("clear", 30)
        try:
            baseline = self.transport.capture_recent_output()
            self.transport.send(self.clear_command)
            result = self.detector.await_completion(
                self.transport,
                "clear",
                timeout,
                baseline=baseline,
            )
        except SessionError as error:
            logger.warning("Context clear between tasks failed: %s", error)
            return
        if result.outcome != CompletionOutcome.COMPLETED:
            logger.warning("Context clear between tasks ended with %s", result.outcome.value)

    def _mirror(self, task: Task, message: str) -> None:
        issue_id = task.metadata.get("issue_id")
        if not issue_id:
            return
        try:
            self.issue_tracker.post_comment(str(issue_id), message)
        except IssueTrackerError as error:
            logger.warning("Could not mirror %s to issue %s: %s", task.id, issue_id, error)


def _reset_step(task: Task, step_index: int) -> None:
    if not task.is_workflow or not 0 <= step_index < len(task.steps):
        return
    step = task.steps[step_index]
    step.status = StepStatus.PENDING
    step.started_at = None
    step.completed_at = None
    step.failed_at = None


def _mark_step_failed(task: Task, step_index: int, now: datetime) -> None:
    if not task.is_workflow or not 0 <= step_index < len(task.steps):
        return
    step = task.steps[step_index]
    step.status = StepStatus.FAILED
    step.failed_at = now
