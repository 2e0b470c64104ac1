"""Typed JSON codec for the queue document.

This is the only place that knows the on-disk field names; everything else
works with the dataclasses from ``models``. Decoders raise ``ValueError`` on
any structural problem so the store can treat the document as corrupt.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from autoresume.taskqueue.common import from_iso, to_iso
from autoresume.taskqueue.models import (
    QUEUE_SCHEMA_VERSION,
    Checkpoint,
    ErrorKind,
    ErrorRecord,
    QueueState,
    Step,
    StepStatus,
    Task,
    TaskKind,
    TaskStatus,
    WorkflowType,
)

_REQUIRED_STATE_FIELDS = ("version", "tasks")
_REQUIRED_TASK_FIELDS = ("id", "type", "status", "priority", "created_at")


def state_to_dict(state: QueueState) -> dict[str, Any]:
    return {
        "version": state.version,
        "created_at": to_iso(state.created_at),
        "last_updated": to_iso(state.last_updated),
        "counts": state.counts(),
        "next_sequence": state.next_sequence,
        "paused": state.paused,
        "pause_reason": state.pause_reason,
        "paused_at": to_iso(state.paused_at),
        "resume_at": to_iso(state.resume_at),
        "usage_limit_occurrences": state.usage_limit_occurrences,
        "tasks": [task_to_dict(task) for task in state.tasks],
    }


def state_from_dict(payload: object) -> QueueState:
    if not isinstance(payload, dict):
        raise ValueError("Queue document must be a JSON object.")
    for name in _REQUIRED_STATE_FIELDS:
        if name not in payload:
            raise ValueError(f"Queue document is missing required field: {name}")
    tasks_raw = payload["tasks"]
    if not isinstance(tasks_raw, list):
        raise ValueError("Queue document field 'tasks' must be a list.")

    tasks = [task_from_dict(item) for item in tasks_raw]
    ids = [task.id for task in tasks]
    if len(set(ids)) != len(ids):
        raise ValueError("Queue document contains duplicate task ids.")

    created_at = _required_datetime(payload, "created_at", fallback_key="last_updated")
    max_sequence = max((task.sequence for task in tasks), default=0)
    return QueueState(
        version=str(payload["version"] or QUEUE_SCHEMA_VERSION),
        created_at=created_at,
        last_updated=from_iso(payload.get("last_updated")) or created_at,
        tasks=tasks,
        next_sequence=max(int(payload.get("next_sequence", 1)), max_sequence + 1),
        paused=bool(payload.get("paused", False)),
        pause_reason=payload.get("pause_reason"),
        paused_at=from_iso(payload.get("paused_at")),
        resume_at=from_iso(payload.get("resume_at")),
        usage_limit_occurrences=int(payload.get("usage_limit_occurrences", 0)),
    )


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "type": task.kind.value,
        "priority": task.priority,
        "status": task.status.value,
        "sequence": task.sequence,
        "command": task.command,
        "workflow_type": task.workflow_type.value if task.workflow_type else None,
        "steps": [step_to_dict(step) for step in task.steps],
        "current_step": task.current_step,
        "timeout": task.timeout,
        "retry_count": task.retry_count,
        "max_retries": task.max_retries,
        "created_at": to_iso(task.created_at),
        "updated_at": to_iso(task.updated_at),
        "started_at": to_iso(task.started_at),
        "completed_at": to_iso(task.completed_at),
        "error_history": [error_record_to_dict(record) for record in task.error_history],
        "checkpoints": [checkpoint_to_dict(checkpoint) for checkpoint in task.checkpoints],
        "results": dict(task.results),
        "metadata": copy.deepcopy(task.metadata),
        "owner_pid": task.owner_pid,
        "manual_resume": task.manual_resume,
        "resumed_at": to_iso(task.resumed_at),
        "resume_count": task.resume_count,
        "pause_reason": task.pause_reason,
        "paused_at": to_iso(task.paused_at),
        "cancelled_at": to_iso(task.cancelled_at),
        "cancellation_reason": task.cancellation_reason,
        "retry_requested": task.retry_requested,
    }


def task_from_dict(payload: object) -> Task:
    if not isinstance(payload, dict):
        raise ValueError("Task entry must be a JSON object.")
    for name in _REQUIRED_TASK_FIELDS:
        if name not in payload:
            raise ValueError(f"Task entry is missing required field: {name}")

    created_at = _required_datetime(payload, "created_at")
    workflow_type = payload.get("workflow_type")
    steps_raw = payload.get("steps") or []
    if not isinstance(steps_raw, list):
        raise ValueError(f"Task {payload['id']} has invalid steps.")
    return Task(
        id=str(payload["id"]),
        kind=TaskKind(payload["type"]),
        priority=int(payload["priority"]),
        status=TaskStatus(payload["status"]),
        created_at=created_at,
        updated_at=from_iso(payload.get("updated_at")) or created_at,
        sequence=int(payload.get("sequence", 0)),
        command=payload.get("command"),
        steps=[step_from_dict(item) for item in steps_raw],
        workflow_type=WorkflowType(workflow_type) if workflow_type else None,
        current_step=int(payload.get("current_step", 0)),
        timeout=int(payload.get("timeout", 3_600)),
        retry_count=int(payload.get("retry_count", 0)),
        max_retries=int(payload.get("max_retries", 3)),
        started_at=from_iso(payload.get("started_at")),
        completed_at=from_iso(payload.get("completed_at")),
        error_history=[error_record_from_dict(item) for item in payload.get("error_history", [])],
        checkpoints=[checkpoint_from_dict(item) for item in payload.get("checkpoints", [])],
        results={str(key): str(value) for key, value in payload.get("results", {}).items()},
        metadata=dict(payload.get("metadata") or {}),
        owner_pid=payload.get("owner_pid"),
        manual_resume=bool(payload.get("manual_resume", False)),
        resumed_at=from_iso(payload.get("resumed_at")),
        resume_count=int(payload.get("resume_count", 0)),
        pause_reason=payload.get("pause_reason"),
        paused_at=from_iso(payload.get("paused_at")),
        cancelled_at=from_iso(payload.get("cancelled_at")),
        cancellation_reason=payload.get("cancellation_reason"),
        retry_requested=bool(payload.get("retry_requested", False)),
    )


def step_to_dict(step: Step) -> dict[str, Any]:
    return {
        "phase": step.phase,
        "command": step.command,
        "status": step.status.value,
        "description": step.description,
        "timeout": step.timeout,
        "started_at": to_iso(step.started_at),
        "completed_at": to_iso(step.completed_at),
        "failed_at": to_iso(step.failed_at),
    }


def step_from_dict(payload: object) -> Step:
    if not isinstance(payload, dict):
        raise ValueError("Step entry must be a JSON object.")
    timeout = payload.get("timeout")
    return Step(
        phase=str(payload["phase"]),
        command=str(payload["command"]),
        status=StepStatus(payload.get("status", StepStatus.PENDING.value)),
        description=str(payload.get("description") or ""),
        timeout=int(timeout) if timeout is not None else None,
        started_at=from_iso(payload.get("started_at")),
        completed_at=from_iso(payload.get("completed_at")),
        failed_at=from_iso(payload.get("failed_at")),
    )


def error_record_to_dict(record: ErrorRecord) -> dict[str, Any]:
    return {
        "step_index": record.step_index,
        "error_type": record.error_type.value,
        "raw_output": record.raw_output,
        "timestamp": to_iso(record.timestamp),
        "retry_count_at_failure": record.retry_count_at_failure,
        "resume_at": to_iso(record.resume_at),
    }


def error_record_from_dict(payload: dict[str, Any]) -> ErrorRecord:
    return ErrorRecord(
        step_index=int(payload["step_index"]),
        error_type=ErrorKind(payload["error_type"]),
        raw_output=str(payload.get("raw_output") or ""),
        timestamp=_required_datetime(payload, "timestamp"),
        retry_count_at_failure=int(payload.get("retry_count_at_failure", 0)),
        resume_at=from_iso(payload.get("resume_at")),
    )


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    return {
        "id": checkpoint.id,
        "reason": checkpoint.reason,
        "created_at": to_iso(checkpoint.created_at),
        "workflow_state": copy.deepcopy(checkpoint.workflow_state),
        "environment": dict(checkpoint.environment),
    }


def checkpoint_from_dict(payload: dict[str, Any]) -> Checkpoint:
    workflow_state = payload.get("workflow_state")
    if not isinstance(workflow_state, dict):
        raise ValueError(f"Checkpoint {payload.get('id')} has no workflow_state.")
    return Checkpoint(
        id=str(payload["id"]),
        reason=str(payload.get("reason") or ""),
        created_at=_required_datetime(payload, "created_at"),
        workflow_state=copy.deepcopy(workflow_state),
        environment={str(key): str(value) for key, value in payload.get("environment", {}).items()},
    )


def workflow_snapshot(task: Task) -> dict[str, Any]:
    """Plain-data copy of the resumable part of a task."""

    return {
        "status": task.status.value,
        "current_step": task.current_step,
        "steps": [step_to_dict(step) for step in task.steps],
        "results": dict(task.results),
    }


def _required_datetime(
    payload: dict[str, Any],
    key: str,
    *,
    fallback_key: str | None = None,
) -> datetime:
    value = payload.get(key)
    if value is None and fallback_key is not None:
        value = payload.get(fallback_key)
    parsed = from_iso(value)
    if parsed is None:
        raise ValueError(f"Missing timestamp field: {key}")
    return parsed
