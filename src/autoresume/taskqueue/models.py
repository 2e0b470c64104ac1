"""Domain models for the task queue, workflows and usage-limit recovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

QUEUE_SCHEMA_VERSION = "1.0"
DEFAULT_CHECKPOINT_REASON = "manual_checkpoint"
DEFAULT_CANCELLATION_REASON = "user_cancelled"
GENERIC_PHASE = "generic"

PAUSE_REASON_MANUAL = "manual"
PAUSE_REASON_USAGE_LIMIT = "usage_limit"
PAUSE_REASON_SHUTDOWN = "shutdown"
PAUSE_REASON_RESTORED = "checkpoint_restored"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.PAUSED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.PAUSED},
    ),
    TaskStatus.PAUSED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
}


class TaskKind(str, Enum):
    """Simple tasks run one command, workflows run an ordered phase list."""

    SIMPLE = "simple"
    WORKFLOW = "workflow"


class WorkflowType(str, Enum):
    ISSUE_MERGE = "issue-merge"
    CUSTOM = "custom"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Closed error taxonomy shared by classifier, retry policy and CLI."""

    NETWORK = "network"
    AUTHENTICATION = "authentication"
    SYNTAX = "syntax"
    USAGE_LIMIT = "usage_limit"
    SESSION_UNRESPONSIVE = "session_unresponsive"
    TIMEOUT = "timeout"
    IO = "io"
    LOCK_TIMEOUT = "lock_timeout"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class Step:
    """One workflow phase."""

    phase: str
    command: str
    status: StepStatus = StepStatus.PENDING
    description: str = ""
    timeout: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None


@dataclass(slots=True)
class ErrorRecord:
    """Failure entry appended to a task's error history."""

    step_index: int
    error_type: ErrorKind
    raw_output: str
    timestamp: datetime
    retry_count_at_failure: int
    resume_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot of workflow state."""

    id: str
    reason: str
    created_at: datetime
    workflow_state: dict[str, Any]
    environment: dict[str, str]


@dataclass(slots=True)
class Task:
    """Queued unit of work, simple or multi-phase."""

    id: str
    kind: TaskKind
    priority: int
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    sequence: int = 0
    command: str | None = None
    steps: list[Step] = field(default_factory=list)
    workflow_type: WorkflowType | None = None
    current_step: int = 0
    timeout: int = 3_600
    retry_count: int = 0
    max_retries: int = 3
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_history: list[ErrorRecord] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    results: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    owner_pid: int | None = None
    manual_resume: bool = False
    resumed_at: datetime | None = None
    resume_count: int = 0
    pause_reason: str | None = None
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    retry_requested: bool = False

    @property
    def is_workflow(self) -> bool:
        return self.kind == TaskKind.WORKFLOW

    @property
    def total_steps(self) -> int:
        return len(self.steps) if self.is_workflow else 1

    @property
    def is_cancelled(self) -> bool:
        return self.cancellation_reason is not None

    def is_runnable(self) -> bool:
        """Whether the scheduler may pick this task up."""

        if self.status == TaskStatus.PENDING:
            return True
        if self.status == TaskStatus.PAUSED:
            return self.pause_reason != PAUSE_REASON_MANUAL
        if self.status in {TaskStatus.FAILED, TaskStatus.TIMEOUT}:
            return self.retry_requested and not self.is_cancelled
        return False

    def selection_key(self) -> tuple[int, datetime, int]:
        return (self.priority, self.created_at, self.sequence)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    kind: TaskKind
    command: str | None = None
    steps: list[Step] = field(default_factory=list)
    workflow_type: WorkflowType | None = None
    priority: int = 5
    timeout: int = 3_600
    max_retries: int = 3
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueState:
    """Aggregate persisted document: all tasks plus registry pause state."""

    created_at: datetime
    last_updated: datetime
    version: str = QUEUE_SCHEMA_VERSION
    tasks: list[Task] = field(default_factory=list)
    next_sequence: int = 1
    paused: bool = False
    pause_reason: str | None = None
    paused_at: datetime | None = None
    resume_at: datetime | None = None
    usage_limit_occurrences: int = 0

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def in_progress(self) -> Task | None:
        for task in self.tasks:
            if task.status == TaskStatus.IN_PROGRESS:
                return task
        return None

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status.value] += 1
        return counts


@dataclass(slots=True)
class RecoveryWindow:
    """Pause interval computed from a usage-limit message."""

    detected_at: datetime
    raw_phrase: str
    resume_at: datetime
    wait_seconds: int
    source: str
    extracted_hour: int | None = None
    extracted_minute: int | None = None
    extracted_meridiem: str | None = None
