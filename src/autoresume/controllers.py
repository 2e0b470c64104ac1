"""Controllers for autoresume CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from autoresume.config import Settings
from autoresume.issues import GitHubIssueTracker, IssueTracker, IssueTrackerError, NullIssueTracker
from autoresume.session import TmuxSessionTransport
from autoresume.taskqueue.completion import CompletionDetector, patterns_with_overrides
from autoresume.taskqueue.errors import ValidationError
from autoresume.taskqueue.locking import LockManager
from autoresume.taskqueue.models import TaskCreate, TaskKind, TaskStatus, WorkflowType
from autoresume.taskqueue.repository import TaskRegistry
from autoresume.taskqueue.retry import RetryPolicy
from autoresume.taskqueue.scheduler import SchedulerLoop
from autoresume.taskqueue.shutdown import StopToken
from autoresume.taskqueue.store import QueueStore
from autoresume.taskqueue.usage_limit import UsageLimitMonitor, UsageLimitPolicy
from autoresume.taskqueue.workflow import WorkflowEngine, issue_merge_task, parse_step_spec

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for enqueuing a task."""

    queue_dir: Path | None
    command: str | None
    issue: str | None
    steps: tuple[str, ...]
    priority: int | None
    timeout_seconds: int | None
    max_retries: int | None
    clear_context: bool | None = None


@dataclass(slots=True)
class ListTasksCommand:
    queue_dir: Path | None
    status: str | None


@dataclass(slots=True)
class TaskStatusCommand:
    queue_dir: Path | None
    task_id: str | None


@dataclass(slots=True)
class QueuePauseCommand:
    queue_dir: Path | None
    reason: str | None
    task_id: str | None = None


@dataclass(slots=True)
class QueueResumeCommand:
    queue_dir: Path | None
    task_id: str | None = None


@dataclass(slots=True)
class MutateTaskCommand:
    queue_dir: Path | None
    task_id: str
    reason: str | None = None


@dataclass(slots=True)
class CheckpointCommand:
    queue_dir: Path | None
    task_id: str
    reason: str | None


@dataclass(slots=True)
class RestoreCheckpointCommand:
    queue_dir: Path | None
    task_id: str
    checkpoint_id: str


@dataclass(slots=True)
class ResumeFromStepCommand:
    queue_dir: Path | None
    task_id: str
    step_index: int


@dataclass(slots=True)
class RunSchedulerCommand:
    """CLI input for scheduler execution."""

    queue_dir: Path | None
    once: bool
    max_tasks: int | None
    session_name: str | None
    max_idle_polls: int | None = None
    log_level: str | None = None


@dataclass(slots=True)
class CleanupCommand:
    queue_dir: Path | None
    days: int | None


@dataclass(slots=True)
class BackupCommand:
    queue_dir: Path | None
    backup_id: str | None = None


@dataclass(slots=True)
class ScanLimitCommand:
    text: str


@dataclass(slots=True)
class QueueCliController:
    """Coordinates queue, workflow, and scheduler CLI operations."""

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        payload = _task_payload(command, settings)
        if payload.metadata.get("issue_id"):
            with _issue_tracker(settings) as tracker:
                _attach_issue(payload, tracker)
        task = registry.add(payload)
        lines = [
            "Task added: "
            f"task_id={task.id} kind={task.kind.value} priority={task.priority} "
            f"status={task.status.value}",
        ]
        for index, step in enumerate(task.steps):
            lines.append(f"  step {index}: {step.phase} -> {step.command}")
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        tasks = build_registry(settings).list_tasks(status=_parse_status(command.status))
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            step = f" step={task.current_step}/{task.total_steps}" if task.is_workflow else ""
            lines.append(
                f"  {task.id} kind={task.kind.value} status={task.status.value} "
                f"priority={task.priority} retries={task.retry_count}/{task.max_retries}{step}",
            )
        return lines

    def status(self, command: TaskStatusCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        if command.task_id is None:
            return _queue_status_lines(registry)
        task = registry.get(command.task_id)
        progress = build_engine(settings, registry).progress(task)

        lines = [
            f"Task: {task.id}",
            f"Kind: {task.kind.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Progress: {progress.progress_percent:.1f}% "
            f"({min(task.current_step, progress.total_steps)}/{progress.total_steps})",
            f"Elapsed: {progress.elapsed_seconds:.0f}s",
            f"ETA: {_format_datetime(progress.estimated_completion)}",
            f"Errors: {progress.error_count}",
        ]
        if task.command:
            lines.append(f"Command: {task.command}")
        if task.pause_reason:
            lines.append(f"Pause reason: {task.pause_reason}")
        if task.cancellation_reason:
            lines.append(f"Cancelled: {task.cancellation_reason}")
        for index, step in enumerate(task.steps):
            marker = ">" if index == task.current_step else " "
            lines.append(f" {marker}{index} {step.phase} [{step.status.value}] {step.command}")
        if progress.last_error is not None:
            error = progress.last_error
            lines.append(
                f"Last error: {error.error_type.value} at step {error.step_index} "
                f"({error.timestamp.isoformat()})",
            )
        for checkpoint in task.checkpoints:
            lines.append(
                f"  checkpoint {checkpoint.id} reason={checkpoint.reason} "
                f"created_at={checkpoint.created_at.isoformat()}",
            )
        return lines

    def pause(self, command: QueuePauseCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        if command.task_id is not None:
            task = build_engine(settings, registry).pause_workflow(command.task_id)
            return [f"Task paused: {task.id}"]
        registry.pause(reason=command.reason or "manual")
        return ["Queue paused"]

    def resume(self, command: QueueResumeCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        if command.task_id is not None:
            task = build_engine(settings, registry).resume_workflow(command.task_id)
            return [f"Task released: {task.id}"]
        if registry.resume():
            return ["Queue resumed"]
        return ["Queue was not paused"]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        with _issue_tracker(settings) as tracker:
            engine = build_engine(settings, registry, issue_tracker=tracker)
            if command.reason:
                task = engine.cancel_workflow(command.task_id, reason=command.reason)
            else:
                task = engine.cancel_workflow(command.task_id)
        return [f"Task cancelled: {task.id} reason={task.cancellation_reason}"]

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        build_registry(settings).retry(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def remove_task(self, command: MutateTaskCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        build_registry(settings).remove(command.task_id)
        return [f"Task removed: {command.task_id}"]

    def checkpoint(self, command: CheckpointCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        engine = build_engine(settings, build_registry(settings))
        if command.reason:
            checkpoint = engine.create_checkpoint(command.task_id, command.reason)
        else:
            checkpoint = engine.create_checkpoint(command.task_id)
        return [
            f"Checkpoint created: {checkpoint.id} task_id={command.task_id} "
            f"reason={checkpoint.reason}",
        ]

    def restore_checkpoint(self, command: RestoreCheckpointCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        engine = build_engine(settings, build_registry(settings))
        task = engine.restore_checkpoint(command.task_id, command.checkpoint_id)
        return [
            f"Checkpoint restored: {command.checkpoint_id} task_id={task.id} "
            f"step={task.current_step}/{task.total_steps} status={task.status.value}",
        ]

    def resume_from_step(self, command: ResumeFromStepCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        engine = build_engine(settings, build_registry(settings))
        task = engine.resume_from_step(command.task_id, command.step_index)
        return [
            f"Task {task.id} resumes at step {task.current_step} "
            f"({task.steps[task.current_step].phase}); status={task.status.value}",
        ]

    def run_scheduler(self, command: RunSchedulerCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        configure_logging(command.log_level or settings.log_level)
        if command.session_name:
            settings.session.session_name = command.session_name
        registry = build_registry(settings)
        stop_token = StopToken()
        with _issue_tracker(settings) as tracker:
            engine = build_engine(
                settings,
                registry,
                issue_tracker=tracker,
                stop_token=stop_token,
            )
            if not engine.transport.is_alive():
                logger.warning(
                    "tmux session %s is not reachable; steps will fail until it is started",
                    settings.session.session_name,
                )
            scheduler = SchedulerLoop(
                registry=registry,
                engine=engine,
                stop_token=stop_token,
                processing_delay_seconds=settings.queue.processing_delay_seconds,
                pause_check_interval_seconds=settings.queue.pause_check_interval_seconds,
                stale_grace_seconds=settings.queue.stale_grace_seconds,
                auto_cleanup_days=settings.queue.auto_cleanup_days,
                cleanup_interval_seconds=settings.queue.cleanup_interval_seconds,
            )
            summary = (
                scheduler.run_once()
                if command.once
                else scheduler.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Scheduler summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} paused={summary.paused} retried={summary.retried} "
            f"usage_limits={summary.usage_limits} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        days = settings.queue.auto_cleanup_days if command.days is None else command.days
        registry = build_registry(settings)
        removed = registry.cleanup(older_than_days=days)
        pruned = registry.store.prune_backups()
        return [f"Cleanup: removed_tasks={removed} pruned_backups={pruned} older_than_days={days}"]

    def list_backups(self, command: BackupCommand) -> list[str]:
        settings = load_settings(command.queue_dir)
        backups = build_registry(settings).store.list_backups()
        lines = [f"Backups: {len(backups)}"]
        for info in backups:
            lines.append(
                f"  {info.backup_id} created_at={info.created_at.isoformat()} "
                f"size={info.size_bytes}",
            )
        return lines

    def restore_backup(self, command: BackupCommand) -> list[str]:
        if not command.backup_id:
            raise ValidationError("Backup id is required")
        settings = load_settings(command.queue_dir)
        registry = build_registry(settings)
        with registry.lock.acquire(registry.lock_timeout_seconds):
            state = registry.store.restore_backup(command.backup_id)
        return [f"Queue restored from {command.backup_id}: tasks={len(state.tasks)}"]

    def scan_limit(self, command: ScanLimitCommand) -> list[str]:
        settings = load_settings(None)
        monitor = UsageLimitMonitor(policy=_usage_limit_policy(settings))
        window = monitor.scan(command.text)
        if window is None:
            return ["No usage limit detected"]
        lines = [
            f"Usage limit detected: source={window.source} phrase={window.raw_phrase!r}",
            f"Resume at: {window.resume_at.isoformat()} (wait {window.wait_seconds}s)",
        ]
        if window.extracted_hour is not None:
            meridiem = f" {window.extracted_meridiem}" if window.extracted_meridiem else ""
            lines.append(
                f"Extracted time: {window.extracted_hour}:{window.extracted_minute or 0:02d}"
                f"{meridiem}",
            )
        return lines


def load_settings(queue_dir: Path | None) -> Settings:
    try:
        return Settings.from_env(queue_dir=queue_dir)
    except ValueError as error:
        raise ValidationError(f"Invalid configuration: {error}") from error


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_registry(settings: Settings) -> TaskRegistry:
    store = QueueStore(
        settings.queue.queue_dir,
        backup_every_saves=settings.queue.backup_every_saves,
        backup_retention_days=settings.queue.backup_retention_days,
        backup_max_count=settings.queue.backup_max_count,
    )
    return TaskRegistry(
        store=store,
        lock=LockManager(store.lock_path),
        lock_timeout_seconds=settings.queue.lock_timeout_seconds,
        max_queue_size=settings.queue.max_queue_size,
    )


def build_engine(
    settings: Settings,
    registry: TaskRegistry,
    *,
    issue_tracker: IssueTracker | None = None,
    stop_token: StopToken | None = None,
) -> WorkflowEngine:
    token = stop_token or StopToken()
    detector = CompletionDetector(
        patterns=patterns_with_overrides(settings.completion.pattern_overrides),
        completion_marker=settings.completion.completion_marker,
        poll_interval_seconds=settings.completion.poll_interval_seconds,
        progress_interval_seconds=settings.completion.progress_interval_seconds,
        stop_token=token,
    )
    return WorkflowEngine(
        registry=registry,
        transport=TmuxSessionTransport(
            settings.session.session_name,
            history_lines=settings.session.history_lines,
            tmux_binary=settings.session.tmux_binary,
        ),
        detector=detector,
        monitor=UsageLimitMonitor(registry=registry, policy=_usage_limit_policy(settings)),
        retry_policy=RetryPolicy(
            base_delay_seconds=settings.retry.base_delay_seconds,
            max_delay_seconds=settings.retry.max_delay_seconds,
            jitter_seconds=settings.retry.jitter_seconds,
        ),
        issue_tracker=issue_tracker,
        stop_token=token,
        phase_timeouts=settings.completion.phase_timeouts,
        auto_pause_on_error=settings.retry.auto_pause_on_error,
        clear_between_tasks=settings.session.clear_between_tasks,
        clear_command=settings.session.clear_command,
        request_completion_marker=settings.completion.request_marker,
        checkpoint_retention=settings.queue.checkpoint_retention,
    )


def _task_payload(command: AddTaskCommand, settings: Settings) -> TaskCreate:
    given = [bool(command.command), bool(command.issue), bool(command.steps)]
    if sum(given) != 1:
        raise ValidationError("Specify exactly one of --command, --issue or --step")

    defaults = settings.tasks
    priority = defaults.priority if command.priority is None else command.priority
    timeout = command.timeout_seconds
    if timeout is None:
        timeout = defaults.timeout_seconds
    max_retries = defaults.max_retries if command.max_retries is None else command.max_retries
    if command.issue:
        payload = issue_merge_task(
            command.issue,
            priority=priority,
            timeout=timeout,
            max_retries=max_retries,
        )
    elif command.steps:
        payload = TaskCreate(
            kind=TaskKind.WORKFLOW,
            steps=[parse_step_spec(spec) for spec in command.steps],
            workflow_type=WorkflowType.CUSTOM,
            priority=priority,
            timeout=timeout,
            max_retries=max_retries,
        )
    else:
        payload = TaskCreate(
            kind=TaskKind.SIMPLE,
            command=command.command,
            priority=priority,
            timeout=timeout,
            max_retries=max_retries,
        )
    if command.clear_context is not None:
        payload.metadata["clear_context"] = command.clear_context
    return payload


def _attach_issue(payload: TaskCreate, tracker: IssueTracker) -> None:
    issue_id = str(payload.metadata["issue_id"])
    try:
        issue = tracker.fetch_item(issue_id)
    except IssueTrackerError as error:
        logger.warning("Could not verify issue %s: %s", issue_id, error)
        return
    if issue is None:
        if isinstance(tracker, NullIssueTracker):
            return
        raise ValidationError(f"Issue {issue_id} not found")
    payload.metadata["issue_title"] = issue.title
    if issue.url:
        payload.metadata["issue_url"] = issue.url


def _queue_status_lines(registry: TaskRegistry) -> list[str]:
    state = registry.snapshot()
    counts = state.counts()
    lines = [
        "Queue: " + " ".join(f"{status}={count}" for status, count in counts.items()),
        f"Total tasks: {len(state.tasks)}",
    ]
    if state.paused:
        lines.append(
            f"Paused: {state.pause_reason or '-'} "
            f"(since {_format_datetime(state.paused_at)}, resume at "
            f"{_format_datetime(state.resume_at)})",
        )
    else:
        lines.append("Paused: no")
    if state.usage_limit_occurrences:
        lines.append(f"Consecutive usage limits: {state.usage_limit_occurrences}")
    running = state.in_progress()
    if running is not None:
        lines.append(f"In progress: {running.id} step={running.current_step}/{running.total_steps}")
    return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unknown status: {value}") from error


def _usage_limit_policy(settings: Settings) -> UsageLimitPolicy:
    return UsageLimitPolicy(
        min_wait_seconds=settings.usage_limit.min_wait_seconds,
        max_wait_seconds=settings.usage_limit.max_wait_seconds,
        default_cooldown_seconds=settings.usage_limit.default_cooldown_seconds,
        max_cooldown_seconds=settings.usage_limit.max_cooldown_seconds,
        backoff_factor=settings.usage_limit.backoff_factor,
    )


def _format_datetime(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _issue_tracker(settings: Settings) -> Iterator[IssueTracker]:
    if not settings.github.enabled:
        yield NullIssueTracker()
        return
    tracker = GitHubIssueTracker(
        repository=settings.github.repository or "",
        token=settings.github.token or "",
        api_url=settings.github.api_url,
        timeout_seconds=settings.github.timeout_seconds,
        comment_max_length=settings.github.comment_max_length,
    )
    try:
        yield tracker
    finally:
        tracker.close()
