"""CLI entrypoint for autoresume."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from autoresume import __version__
from autoresume.controllers import (
    AddTaskCommand,
    BackupCommand,
    CheckpointCommand,
    CleanupCommand,
    ListTasksCommand,
    MutateTaskCommand,
    QueueCliController,
    QueuePauseCommand,
    QueueResumeCommand,
    RestoreCheckpointCommand,
    ResumeFromStepCommand,
    RunSchedulerCommand,
    ScanLimitCommand,
    TaskStatusCommand,
)
from autoresume.taskqueue.errors import QueueError, TaskNotFoundError
from autoresume.taskqueue.models import ErrorKind, TaskStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_EXIT_CODES = {
    ErrorKind.VALIDATION: 2,
    ErrorKind.LOCK_TIMEOUT: 3,
}
_NOT_FOUND_EXIT_CODE = 4

queue_dir_option = click.option(
    "--queue-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Queue directory (defaults to AUTORESUME_QUEUE_DIR or ~/.autoresume/queue).",
)


class QueueCommandError(click.ClickException):
    """Queue failure reported as ``error[<kind>]: message`` with a kind-specific exit code."""

    def __init__(self, error: QueueError) -> None:
        super().__init__(f"error[{error.kind.value}]: {error}")
        if isinstance(error, TaskNotFoundError):
            self.exit_code = _NOT_FOUND_EXIT_CODE
        else:
            self.exit_code = _EXIT_CODES.get(error.kind, 1)


@click.group()
@click.version_option(version=__version__, prog_name="autoresume")
def autoresume() -> None:
    """Task queue that drives an assistant session and resumes after usage limits."""


@autoresume.command("add")
@queue_dir_option
@click.option("--command", "command_text", default=None, help="Single command to send.")
@click.option("--issue", default=None, help="Issue number for a develop/review/merge workflow.")
@click.option(
    "--step",
    "steps",
    multiple=True,
    help="Custom workflow step as `phase:command`. Can be repeated.",
)
@click.option("--priority", type=int, default=None, help="Lower runs first (default 5).")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-phase timeout in seconds.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry budget.")
@click.option(
    "--no-clear",
    is_flag=True,
    default=False,
    help="Do not clear the session context after this task.",
)
def add(  # noqa: PLR0913
    queue_dir: Path | None,
    command_text: str | None,
    issue: str | None,
    steps: tuple[str, ...],
    priority: int | None,
    timeout_seconds: int | None,
    max_retries: int | None,
    no_clear: bool,
) -> None:
    """Add a command, issue workflow, or custom workflow to the queue."""

    _run(
        lambda: QUEUE_CONTROLLER.add_task(
            AddTaskCommand(
                queue_dir=queue_dir,
                command=command_text,
                issue=issue,
                steps=steps,
                priority=priority,
                timeout_seconds=timeout_seconds,
                max_retries=max_retries,
                clear_context=False if no_clear else None,
            ),
        ),
    )


@autoresume.command("list")
@queue_dir_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by status.",
)
def list_tasks(queue_dir: Path | None, status: str | None) -> None:
    """List tasks in scheduling order."""

    _run(lambda: QUEUE_CONTROLLER.list_tasks(ListTasksCommand(queue_dir=queue_dir, status=status)))


@autoresume.command("status")
@queue_dir_option
@click.argument("task_id", required=False)
def status(queue_dir: Path | None, task_id: str | None) -> None:
    """Show queue summary, or details and progress of one task."""

    _run(lambda: QUEUE_CONTROLLER.status(TaskStatusCommand(queue_dir=queue_dir, task_id=task_id)))


@autoresume.command("pause")
@queue_dir_option
@click.option("--reason", default=None, help="Reason recorded with the pause.")
@click.option("--task", "task_id", default=None, help="Hold one task instead of the queue.")
def pause(queue_dir: Path | None, reason: str | None, task_id: str | None) -> None:
    """Pause the whole queue, or hold a single task."""

    _run(
        lambda: QUEUE_CONTROLLER.pause(
            QueuePauseCommand(queue_dir=queue_dir, reason=reason, task_id=task_id),
        ),
    )


@autoresume.command("resume")
@queue_dir_option
@click.option("--task", "task_id", default=None, help="Release one held task.")
def resume(queue_dir: Path | None, task_id: str | None) -> None:
    """Resume the queue, or release a held task."""

    _run(
        lambda: QUEUE_CONTROLLER.resume(QueueResumeCommand(queue_dir=queue_dir, task_id=task_id)),
    )


@autoresume.command("cancel")
@queue_dir_option
@click.argument("task_id")
@click.option("--reason", default=None, help="Cancellation reason.")
def cancel(queue_dir: Path | None, task_id: str, reason: str | None) -> None:
    """Cancel a task; a running workflow stops at the next phase boundary."""

    _run(
        lambda: QUEUE_CONTROLLER.cancel_task(
            MutateTaskCommand(queue_dir=queue_dir, task_id=task_id, reason=reason),
        ),
    )


@autoresume.command("retry")
@queue_dir_option
@click.argument("task_id")
def retry(queue_dir: Path | None, task_id: str) -> None:
    """Re-queue a failed or timed out task."""

    _run(
        lambda: QUEUE_CONTROLLER.retry_task(
            MutateTaskCommand(queue_dir=queue_dir, task_id=task_id),
        ),
    )


@autoresume.command("remove")
@queue_dir_option
@click.argument("task_id")
def remove(queue_dir: Path | None, task_id: str) -> None:
    """Remove a task that is not running."""

    _run(
        lambda: QUEUE_CONTROLLER.remove_task(
            MutateTaskCommand(queue_dir=queue_dir, task_id=task_id),
        ),
    )


@autoresume.command("checkpoint")
@queue_dir_option
@click.argument("task_id")
@click.argument("reason", required=False)
def checkpoint(queue_dir: Path | None, task_id: str, reason: str | None) -> None:
    """Snapshot a task's workflow state."""

    _run(
        lambda: QUEUE_CONTROLLER.checkpoint(
            CheckpointCommand(queue_dir=queue_dir, task_id=task_id, reason=reason),
        ),
    )


@autoresume.command("restore-checkpoint")
@queue_dir_option
@click.argument("task_id")
@click.argument("checkpoint_id")
def restore_checkpoint(queue_dir: Path | None, task_id: str, checkpoint_id: str) -> None:
    """Roll a task back to one of its checkpoints."""

    _run(
        lambda: QUEUE_CONTROLLER.restore_checkpoint(
            RestoreCheckpointCommand(
                queue_dir=queue_dir,
                task_id=task_id,
                checkpoint_id=checkpoint_id,
            ),
        ),
    )


@autoresume.command("resume-from-step")
@queue_dir_option
@click.argument("task_id")
@click.argument("step_index", type=int)
def resume_from_step(queue_dir: Path | None, task_id: str, step_index: int) -> None:
    """Restart a workflow at STEP_INDEX (0-based); earlier steps count as done."""

    _run(
        lambda: QUEUE_CONTROLLER.resume_from_step(
            ResumeFromStepCommand(queue_dir=queue_dir, task_id=task_id, step_index=step_index),
        ),
    )


@autoresume.command("run")
@queue_dir_option
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after N processed tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after N consecutive empty polls (default: keep polling).",
)
@click.option("--session", "session_name", default=None, help="tmux session name.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (defaults to AUTORESUME_LOG_LEVEL or INFO).",
)
def run(  # noqa: PLR0913
    queue_dir: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    session_name: str | None,
    log_level: str | None,
) -> None:
    """Run the scheduler against the assistant session."""

    _run(
        lambda: QUEUE_CONTROLLER.run_scheduler(
            RunSchedulerCommand(
                queue_dir=queue_dir,
                once=once,
                max_tasks=max_tasks,
                session_name=session_name,
                max_idle_polls=max_idle_polls,
                log_level=log_level,
            ),
        ),
    )


@autoresume.command("cleanup")
@queue_dir_option
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Remove finished tasks older than N days (default AUTORESUME_AUTO_CLEANUP_DAYS).",
)
def cleanup(queue_dir: Path | None, days: int | None) -> None:
    """Drop old finished tasks and prune backups."""

    _run(lambda: QUEUE_CONTROLLER.cleanup(CleanupCommand(queue_dir=queue_dir, days=days)))


@autoresume.group()
def backups() -> None:
    """Queue backup commands."""


@backups.command("list")
@queue_dir_option
def backups_list(queue_dir: Path | None) -> None:
    """List queue backups, newest first."""

    _run(lambda: QUEUE_CONTROLLER.list_backups(BackupCommand(queue_dir=queue_dir)))


@backups.command("restore")
@queue_dir_option
@click.argument("backup_id")
def backups_restore(queue_dir: Path | None, backup_id: str) -> None:
    """Replace the queue with a backup."""

    _run(
        lambda: QUEUE_CONTROLLER.restore_backup(
            BackupCommand(queue_dir=queue_dir, backup_id=backup_id),
        ),
    )


@autoresume.command("scan-limit")
@click.argument("text")
def scan_limit(text: str) -> None:
    """Show the resume time a usage-limit message would produce."""

    _run(lambda: QUEUE_CONTROLLER.scan_limit(ScanLimitCommand(text=text)))


def _run(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except QueueError as error:
        raise QueueCommandError(error) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autoresume()
