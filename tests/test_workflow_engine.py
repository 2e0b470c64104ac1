from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from autoresume.session.base import SessionError
from autoresume.taskqueue.completion import TASK_COMPLETE_MARKER, completion_prompt
from autoresume.taskqueue.errors import TaskStateError, ValidationError
from autoresume.taskqueue.models import (
    PAUSE_REASON_RESTORED,
    PAUSE_REASON_SHUTDOWN,
    PAUSE_REASON_USAGE_LIMIT,
    ErrorKind,
    Step,
    StepStatus,
    TaskCreate,
    TaskKind,
    TaskStatus,
)
from autoresume.taskqueue.repository import TaskRegistry
from autoresume.taskqueue.serialization import workflow_snapshot
from autoresume.taskqueue.store import QueueStore
from autoresume.taskqueue.workflow import (
    PRE_RESUME_CHECKPOINT_REASON,
    WorkflowEngine,
    build_issue_merge_steps,
    issue_merge_task,
    parse_step_spec,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Phase Execution & Recovery"),
]

ISSUE_COMMANDS = ["/dev 7", "/clear", "/review PR-7", "/dev merge-pr 7 --focus-main"]


def _claim(registry: TaskRegistry, payload: TaskCreate):
    task = registry.add(payload)
    claimed = registry.claim_next()
    assert claimed is not None
    assert claimed.id == task.id
    return claimed


def _develop_only(*, timeout: int | None = None, max_retries: int = 3) -> TaskCreate:
    return TaskCreate(
        kind=TaskKind.WORKFLOW,
        steps=[Step(phase="develop", command="/dev 7", timeout=timeout)],
        max_retries=max_retries,
    )


def test_issue_merge_steps_follow_fixed_order() -> None:
    steps = build_issue_merge_steps("#7")

    assert [step.phase for step in steps] == ["develop", "clear", "review", "merge"]
    assert [step.command for step in steps] == ISSUE_COMMANDS
    assert issue_merge_task("7").metadata == {"issue_id": "7"}


def test_issue_merge_rejects_empty_issue() -> None:
    with pytest.raises(ValidationError):
        build_issue_merge_steps(" # ")


def test_parse_step_spec() -> None:
    step = parse_step_spec("Lint: ruff check .")

    assert (step.phase, step.command) == ("lint", "ruff check .")
    with pytest.raises(ValidationError, match="phase:command"):
        parse_step_spec("no separator")


def test_issue_workflow_runs_all_phases_in_order(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    tracker,
) -> None:
    task = _claim(registry, issue_merge_task("7"))

    result = engine.execute(task)

    done = registry.get(task.id)
    assert result.status == TaskStatus.COMPLETED
    assert transport.sent == [*ISSUE_COMMANDS, "/clear"]
    assert all(step.status == StepStatus.COMPLETED for step in done.steps)
    assert done.results == {phase: "completed" for phase in ("develop", "clear", "review", "merge")}
    assert done.current_step == 4
    assert [cp.reason for cp in done.checkpoints] == [
        "after_develop",
        "after_clear",
        "after_review",
    ]
    assert tracker.comments[-1][0] == "7"
    assert "completed: 4 step(s)" in tracker.comments[-1][1]


def test_context_clear_can_be_disabled_per_task(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    task = _claim(
        registry,
        TaskCreate(kind=TaskKind.SIMPLE, command="echo hi", metadata={"clear_context": False}),
    )

    result = engine.execute(task)

    assert result.status == TaskStatus.COMPLETED
    assert transport.commands == ["echo hi"]
    assert registry.get(task.id).results == {"generic": "completed"}


def test_simple_task_asks_for_the_marker_and_completes_on_it(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    task = _claim(registry, TaskCreate(kind=TaskKind.SIMPLE, command="fix the flaky test"))

    result = engine.execute(task)

    assert result.status == TaskStatus.COMPLETED
    assert transport.sent[0] == completion_prompt("fix the flaky test")
    assert transport.commands == ["fix the flaky test", "/clear"]


def test_custom_step_without_patterns_asks_for_the_marker(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    task = _claim(
        registry,
        TaskCreate(
            kind=TaskKind.WORKFLOW,
            steps=[parse_step_spec("lint: ruff check ."), Step(phase="develop", command="/dev 7")],
            metadata={"clear_context": False},
        ),
    )

    result = engine.execute(task)

    assert result.status == TaskStatus.COMPLETED
    assert transport.sent == [completion_prompt("ruff check ."), "/dev 7"]


def test_echoed_marker_instruction_alone_does_not_complete(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    transport.replies["fix the flaky test"] = [None]
    task = _claim(
        registry,
        TaskCreate(kind=TaskKind.SIMPLE, command="fix the flaky test", timeout=30, max_retries=0),
    )

    result = engine.execute(task)

    failed = registry.get(task.id)
    assert TASK_COMPLETE_MARKER in transport.lines[0]
    assert result.status == TaskStatus.FAILED
    assert failed.error_history[-1].error_type == ErrorKind.TIMEOUT


def test_reply_without_marker_does_not_complete_simple_task(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    transport.replies["fix the flaky test"] = ["I changed the retry decorator."]
    task = _claim(
        registry,
        TaskCreate(kind=TaskKind.SIMPLE, command="fix the flaky test", timeout=30, max_retries=0),
    )

    result = engine.execute(task)

    assert result.status == TaskStatus.FAILED
    assert registry.get(task.id).error_history[-1].error_type == ErrorKind.TIMEOUT


def test_marker_instruction_can_be_turned_off(
    registry: TaskRegistry,
    transport,
    engine_factory,
) -> None:
    engine = engine_factory(registry, transport, request_completion_marker=False)
    transport.replies["echo hi"] = [f"hi\n{TASK_COMPLETE_MARKER}"]
    task = _claim(
        registry,
        TaskCreate(kind=TaskKind.SIMPLE, command="echo hi", metadata={"clear_context": False}),
    )

    result = engine.execute(task)

    assert result.status == TaskStatus.COMPLETED
    assert transport.sent == ["echo hi"]


def test_hung_phase_times_out_and_is_retried(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    stop_token,
) -> None:
    transport.replies["/dev 7"] = [None, None, "Pull request #7 created"]
    task = _claim(registry, _develop_only(timeout=20))

    result = engine.execute(task)

    done = registry.get(task.id)
    assert result.status == TaskStatus.COMPLETED
    assert result.retries == 2
    assert done.retry_count == 2
    assert [record.error_type for record in done.error_history] == [ErrorKind.TIMEOUT] * 2
    assert [record.retry_count_at_failure for record in done.error_history] == [0, 1]
    assert [wait for wait in stop_token.waits if wait >= 10] == [10.0, 20.0]
    assert transport.sent == ["/dev 7", "/dev 7", "/dev 7", "/clear"]


def test_network_errors_exhaust_budget_and_pause_registry(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    stop_token,
    tracker,
) -> None:
    transport.replies["/dev 7"] = ["Error: connection refused"] * 4
    task = _claim(registry, issue_merge_task("7", max_retries=3))

    result = engine.execute(task)

    failed = registry.get(task.id)
    assert result.status == TaskStatus.FAILED
    assert result.reason == "network"
    assert failed.retry_count == 3
    assert len(failed.error_history) == 4
    assert failed.steps[0].status == StepStatus.FAILED
    assert failed.results["develop"] == "failed: network"
    assert stop_token.waits == [10.0, 20.0, 40.0]
    assert registry.pause_state().paused is True
    assert "failed at step 1 (develop): network" in tracker.comments[-1][1]


def test_syntax_error_fails_without_retry_or_registry_pause(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    stop_token,
) -> None:
    transport.replies["/dev 7"] = ["Unknown slash command: /dev"]
    task = _claim(registry, _develop_only())

    result = engine.execute(task)

    assert result.status == TaskStatus.FAILED
    assert registry.get(task.id).retry_count == 0
    assert stop_token.waits == []
    assert registry.pause_state().paused is False


def test_auto_pause_can_be_disabled(
    registry: TaskRegistry,
    transport,
    engine_factory,
) -> None:
    engine = engine_factory(registry, transport, auto_pause_on_error=False)
    transport.replies["/dev 7"] = ["Authentication failed"]
    task = _claim(registry, _develop_only())

    result = engine.execute(task)

    assert result.reason == "authentication"
    assert registry.pause_state().paused is False


def test_usage_limit_pauses_task_and_registry_without_spending_retries(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    clock,
) -> None:
    transport.replies["/review PR-7"] = [
        "Claude usage limit reached. Your limit will reset at 5pm",
    ]
    task = _claim(registry, issue_merge_task("7"))

    result = engine.execute(task)

    paused = registry.get(task.id)
    pause = registry.pause_state()
    assert result.usage_limited is True
    assert paused.status == TaskStatus.PAUSED
    assert paused.pause_reason == PAUSE_REASON_USAGE_LIMIT
    assert paused.retry_count == 0
    assert paused.current_step == 2
    assert paused.steps[2].status == StepStatus.PENDING
    assert paused.error_history[-1].error_type == ErrorKind.USAGE_LIMIT
    assert pause.paused is True
    assert pause.resume_at == clock.now().replace(hour=17)
    assert paused.is_runnable()


def test_usage_limit_text_after_failure_still_pauses(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    clock,
) -> None:
    task = _claim(registry, _develop_only())

    decision = engine.handle_step_error(
        task.id,
        0,
        kind=ErrorKind.USAGE_LIMIT,
        output="rate limited",
    )

    assert decision.pause_queue is True
    assert registry.pause_state().resume_at == clock.now() + timedelta(seconds=300)
    assert registry.get(task.id).status == TaskStatus.PAUSED


def test_session_error_is_classified_as_unresponsive(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    transport.send_error = SessionError("tmux send-keys timed out after 10s", unresponsive=True)
    task = _claim(registry, _develop_only(max_retries=0))

    result = engine.execute(task)

    failed = registry.get(task.id)
    assert result.status == TaskStatus.FAILED
    assert failed.error_history[-1].error_type == ErrorKind.SESSION_UNRESPONSIVE


def test_cancel_during_phase_is_observed_at_boundary(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    tracker,
) -> None:
    task = _claim(registry, issue_merge_task("7"))

    def _cancel_then_finish() -> str:
        engine.cancel_workflow(task.id, reason="operator stop")
        return "Pull request #7 created"

    transport.replies["/dev 7"] = [_cancel_then_finish]

    result = engine.execute(task)

    cancelled = registry.get(task.id)
    assert result.reason == "cancelled"
    assert transport.sent == ["/dev 7"]
    assert cancelled.status == TaskStatus.FAILED
    assert cancelled.cancellation_reason == "operator stop"
    assert cancelled.steps[0].status == StepStatus.FAILED
    assert cancelled.current_step == 0
    assert not cancelled.is_runnable()
    assert tracker.comments == [("7", f"Task `{task.id}` cancelled: operator stop")]


def test_cancel_completed_task_is_rejected(
    registry: TaskRegistry,
    engine: WorkflowEngine,
) -> None:
    task = _claim(registry, TaskCreate(kind=TaskKind.SIMPLE, command="echo"))
    engine.execute(task)

    with pytest.raises(TaskStateError, match="already completed"):
        engine.cancel_workflow(task.id)


def test_shutdown_pauses_running_task(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    stop_token,
    transport,
) -> None:
    task = _claim(registry, issue_merge_task("7"))
    stop_token.request_stop(signal_name="SIGTERM")

    result = engine.execute(task)

    paused = registry.get(task.id)
    assert result.reason == PAUSE_REASON_SHUTDOWN
    assert paused.status == TaskStatus.PAUSED
    assert paused.pause_reason == PAUSE_REASON_SHUTDOWN
    assert transport.sent == []
    assert paused.is_runnable()


def test_resume_from_step_skips_completed_phases(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
) -> None:
    task = registry.add(issue_merge_task("7"))

    resumed = engine.resume_from_step(task.id, 2)

    assert resumed.status == TaskStatus.IN_PROGRESS
    assert resumed.current_step == 2
    assert [step.status for step in resumed.steps] == [
        StepStatus.COMPLETED,
        StepStatus.COMPLETED,
        StepStatus.PENDING,
        StepStatus.PENDING,
    ]
    assert resumed.manual_resume is True
    assert resumed.resume_count == 1
    assert resumed.checkpoints[-1].reason == PRE_RESUME_CHECKPOINT_REASON
    assert resumed.owner_pid is None

    adopted = registry.claim_next()
    assert adopted is not None
    assert adopted.id == task.id
    result = engine.execute(adopted)

    assert result.status == TaskStatus.COMPLETED
    assert transport.sent == [*ISSUE_COMMANDS[2:], "/clear"]


@pytest.mark.parametrize("step_index", [-1, 4])
def test_resume_from_invalid_step_changes_nothing(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    step_index: int,
) -> None:
    task = registry.add(issue_merge_task("7"))

    with pytest.raises(ValidationError, match="out of range"):
        engine.resume_from_step(task.id, step_index)

    unchanged = registry.get(task.id)
    assert unchanged.status == TaskStatus.PENDING
    assert unchanged.steps == task.steps
    assert unchanged.checkpoints == []
    assert unchanged.resume_count == 0


def test_resume_from_step_rejects_simple_task(
    registry: TaskRegistry,
    engine: WorkflowEngine,
) -> None:
    task = registry.add(TaskCreate(kind=TaskKind.SIMPLE, command="echo"))

    with pytest.raises(ValidationError, match="not a workflow"):
        engine.resume_from_step(task.id, 0)


def test_checkpoint_restore_returns_identical_workflow_state(
    registry: TaskRegistry,
    engine: WorkflowEngine,
) -> None:
    task = registry.add(issue_merge_task("7"))
    checkpoint = engine.create_checkpoint(task.id, "before work")
    assert checkpoint.environment == {"execution_mode": "fake", "session_id": "test-session"}
    engine.pause_workflow(task.id)

    def _fake_progress(target) -> None:
        target.current_step = 2
        target.steps[0].status = StepStatus.COMPLETED
        target.steps[1].status = StepStatus.FAILED
        target.results["develop"] = "completed"

    registry.mutate(task.id, _fake_progress)

    restored = engine.restore_checkpoint(task.id, checkpoint.id)

    assert restored.steps == task.steps
    assert restored.current_step == 0
    assert restored.results == {}
    assert restored.status == TaskStatus.PAUSED
    assert restored.pause_reason == PAUSE_REASON_RESTORED
    assert registry.next().id == task.id


def test_mid_workflow_checkpoint_reloads_with_identical_state(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    transport,
    queue_dir,
    clock,
) -> None:
    transport.replies["/review PR-7"] = ["Usage limit reached. Resets at 5pm"]
    task = _claim(registry, issue_merge_task("7"))
    engine.execute(task)

    checkpoint = engine.create_checkpoint(task.id, "mid-workflow")
    stored = QueueStore(queue_dir, now=clock.now).load().find(task.id)

    assert stored.checkpoints[-1] == checkpoint
    assert checkpoint.workflow_state == workflow_snapshot(stored)
    assert [step["status"] for step in checkpoint.workflow_state["steps"]] == [
        "completed",
        "completed",
        "pending",
        "pending",
    ]

    registry.mutate(task.id, lambda target: setattr(target, "current_step", 3))
    restored = engine.restore_checkpoint(task.id, checkpoint.id)

    assert restored.steps == stored.steps
    assert restored.current_step == 2
    assert restored.results == stored.results


def test_restore_unknown_checkpoint_is_rejected(
    registry: TaskRegistry,
    engine: WorkflowEngine,
) -> None:
    task = registry.add(issue_merge_task("7"))

    with pytest.raises(ValidationError, match="not found"):
        engine.restore_checkpoint(task.id, "checkpoint-missing")


def test_checkpoints_are_pruned_to_retention(
    registry: TaskRegistry,
    transport,
    engine_factory,
) -> None:
    engine = engine_factory(registry, transport, checkpoint_retention=2)
    task = registry.add(issue_merge_task("7"))

    ids = [engine.create_checkpoint(task.id, f"cp {n}").id for n in range(4)]

    assert [cp.id for cp in registry.get(task.id).checkpoints] == ids[2:]


def test_pause_and_resume_single_task(
    registry: TaskRegistry,
    engine: WorkflowEngine,
) -> None:
    held = registry.add(issue_merge_task("7", priority=1))
    other = registry.add(issue_merge_task("8", priority=9))

    engine.pause_workflow(held.id)
    assert registry.next().id == other.id

    engine.resume_workflow(held.id)
    assert registry.next().id == held.id

    with pytest.raises(TaskStateError, match="not paused"):
        engine.resume_workflow(other.id)


def test_progress_estimates_completion_from_average_step(
    registry: TaskRegistry,
    engine: WorkflowEngine,
    clock,
) -> None:
    task = _claim(registry, issue_merge_task("7"))
    clock.advance(600)
    registry.mutate(task.id, lambda target: setattr(target, "current_step", 1))

    progress = engine.progress(registry.get(task.id))

    assert progress.progress_percent == 25.0
    assert progress.current_phase == "clear"
    assert progress.elapsed_seconds == 600.0
    assert progress.estimated_completion == clock.now() + timedelta(seconds=1_800)
    assert progress.error_count == 0
    assert progress.last_error is None
