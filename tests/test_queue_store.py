from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from autoresume.taskqueue.errors import StoreError
from autoresume.taskqueue.models import (
    Checkpoint,
    ErrorKind,
    ErrorRecord,
    Step,
    StepStatus,
    Task,
    TaskCreate,
    TaskKind,
    TaskStatus,
)
from autoresume.taskqueue.store import QUEUE_FILE_NAME, QueueStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence & Backups"),
]


def _simple(command: str, priority: int = 5) -> TaskCreate:
    return TaskCreate(kind=TaskKind.SIMPLE, command=command, priority=priority)


def test_load_returns_none_when_queue_file_is_missing(store: QueueStore) -> None:
    assert store.load() is None
    state = store.load_or_create()
    assert state.tasks == []
    assert state.paused is False


def test_saved_queue_reloads_with_identical_fields(
    store: QueueStore,
    clock,
    queue_dir: Path,
    registry_factory,
) -> None:
    registry = registry_factory(store)
    simple = registry.add(_simple("/dev 1", priority=2))
    workflow = registry.add(
        TaskCreate(
            kind=TaskKind.WORKFLOW,
            steps=[Step(phase="develop", command="/dev 7"), Step(phase="review", command="/r")],
            metadata={"issue_id": "7", "labels": ["a", "b"]},
        ),
    )

    reloaded = QueueStore(queue_dir, now=clock.now).load()

    assert reloaded is not None
    assert [task.id for task in reloaded.tasks] == [simple.id, workflow.id]
    restored = reloaded.find(workflow.id)
    assert restored is not None
    assert restored.steps == workflow.steps
    assert restored.metadata == {"issue_id": "7", "labels": ["a", "b"]}
    assert restored.created_at == workflow.created_at
    assert reloaded.next_sequence == 3


def test_task_with_history_reloads_equal_to_the_original(
    store: QueueStore,
    clock,
    queue_dir: Path,
    registry_factory,
) -> None:
    registry = registry_factory(store)
    task = registry.add(
        TaskCreate(
            kind=TaskKind.WORKFLOW,
            steps=[
                Step(phase="develop", command="/dev 7", timeout=900),
                Step(phase="review", command="/review PR-7", description="Review"),
            ],
            metadata={"issue_id": "7", "clear_context": False},
        ),
    )
    clock.advance(90)
    now = clock.now()

    def _populate(target: Task) -> None:
        target.status = TaskStatus.PAUSED
        target.current_step = 1
        target.retry_count = 1
        target.started_at = now
        target.steps[0].status = StepStatus.COMPLETED
        target.steps[0].started_at = now
        target.steps[0].completed_at = now
        target.results = {"develop": "completed"}
        target.error_history.append(
            ErrorRecord(
                step_index=1,
                error_type=ErrorKind.USAGE_LIMIT,
                raw_output="Usage limit reached. Resets at 5pm",
                timestamp=now,
                retry_count_at_failure=1,
                resume_at=now + timedelta(hours=3),
            ),
        )
        target.checkpoints.append(
            Checkpoint(
                id="checkpoint-1",
                reason="after_develop",
                created_at=now,
                workflow_state={"current_step": 1, "results": {"develop": "completed"}},
                environment={"execution_mode": "tmux", "session_id": "main"},
            ),
        )
        target.owner_pid = 4242
        target.manual_resume = True
        target.resumed_at = now
        target.resume_count = 2
        target.pause_reason = "usage_limit"
        target.paused_at = now
        target.cancellation_reason = None
        target.retry_requested = True

    expected = registry.mutate(task.id, _populate)

    reloaded = QueueStore(queue_dir, now=clock.now).load()

    assert reloaded is not None
    assert reloaded.find(task.id) == expected


def test_save_writes_json_document_without_leftover_temp_file(
    store: QueueStore,
    clock,
    queue_dir: Path,
    registry_factory,
) -> None:
    registry_factory(store).add(_simple("echo hi"))

    payload = json.loads((queue_dir / QUEUE_FILE_NAME).read_text("utf-8"))
    assert payload["version"] == "1.0"
    assert payload["tasks"][0]["type"] == "simple"
    assert payload["tasks"][0]["status"] == "pending"
    assert payload["counts"]["pending"] == 1
    assert not list(queue_dir.glob(".*.tmp"))


def test_corrupt_queue_recovers_from_newest_backup(
    store: QueueStore,
    clock,
    queue_dir: Path,
    registry_factory,
) -> None:
    registry = registry_factory(store)
    first = registry.add(_simple("first"))
    clock.advance(1)
    second = registry.add(_simple("second"))
    (queue_dir / QUEUE_FILE_NAME).write_text("{not json", encoding="utf-8")

    state = QueueStore(queue_dir, now=clock.now).load()

    assert state is not None
    assert [task.id for task in state.tasks] == [first.id, second.id]
    assert list(queue_dir.glob(f"{QUEUE_FILE_NAME}.corrupt-*"))


def test_corrupt_queue_without_backups_starts_empty(
    queue_dir: Path,
    clock,
    registry_factory,
) -> None:
    store = QueueStore(queue_dir, backup_every_saves=0, now=clock.now)
    registry_factory(store).add(_simple("lost"))
    (queue_dir / QUEUE_FILE_NAME).write_text('{"version": "1.0"}', encoding="utf-8")

    state = store.load()

    assert state is not None
    assert state.tasks == []
    assert not store.list_backups()


def test_duplicate_task_ids_are_treated_as_corruption(
    store: QueueStore,
    clock,
    queue_dir: Path,
    registry_factory,
) -> None:
    registry_factory(store).add(_simple("only"))
    path = queue_dir / QUEUE_FILE_NAME
    payload = json.loads(path.read_text("utf-8"))
    payload["tasks"].append(dict(payload["tasks"][0]))
    path.write_text(json.dumps(payload), encoding="utf-8")

    state = QueueStore(queue_dir, backup_every_saves=0, now=clock.now).load()

    assert state is not None
    assert len(state.tasks) == 1


def test_backup_count_is_capped(
    queue_dir: Path,
    clock,
    registry_factory,
) -> None:
    store = QueueStore(queue_dir, backup_max_count=3, now=clock.now)
    registry = registry_factory(store)
    for index in range(5):
        registry.add(_simple(f"cmd {index}"))
        clock.advance(1)

    backups = store.list_backups()

    assert len(backups) == 3
    assert backups[0].created_at > backups[-1].created_at


def test_prune_backups_keeps_newest_even_when_expired(
    queue_dir: Path,
    clock,
    registry_factory,
) -> None:
    store = QueueStore(queue_dir, backup_retention_days=1, now=clock.now)
    registry = registry_factory(store)
    registry.add(_simple("a"))
    clock.advance(10)
    registry.add(_simple("b"))
    newest = store.list_backups()[0].backup_id
    clock.advance(5 * 24 * 3600)

    removed = store.prune_backups()

    assert removed == 1
    assert [info.backup_id for info in store.list_backups()] == [newest]


def test_restore_backup_replaces_primary_document(
    store: QueueStore,
    clock,
    registry_factory,
) -> None:
    registry = registry_factory(store)
    kept = registry.add(_simple("kept"))
    snapshot_id = store.list_backups()[0].backup_id
    clock.advance(1)
    registry.add(_simple("dropped"))

    state = store.restore_backup(snapshot_id)

    assert [task.id for task in state.tasks] == [kept.id]
    assert [task.id for task in registry.list_tasks()] == [kept.id]
    assert registry.get(kept.id).status == TaskStatus.PENDING


def test_restore_unknown_backup_raises_store_error(store: QueueStore) -> None:
    with pytest.raises(StoreError, match="Backup not found"):
        store.restore_backup("backup-missing")
