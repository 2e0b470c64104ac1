"""Atomic JSON persistence of the queue document with rotating backups."""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from autoresume.taskqueue.common import local_now
from autoresume.taskqueue.errors import StoreError
from autoresume.taskqueue.models import QueueState
from autoresume.taskqueue.serialization import state_from_dict, state_to_dict

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "task-queue.json"
LOCK_FILE_SUFFIX = ".lock"
BACKUP_DIR_NAME = "backups"
BACKUP_PREFIX = "backup-"

_CORRUPTION_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


@dataclass(slots=True)
class BackupInfo:
    backup_id: str
    path: Path
    created_at: datetime
    size_bytes: int


class QueueStore:
    """Reads and writes ``task-queue.json`` inside ``queue_dir``.

    Writes go to a temporary sibling which is fsynced and renamed over the
    primary file, so readers only ever see a complete document. Callers that
    read-modify-write must hold the queue lock; the store itself does not lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        queue_dir: Path,
        *,
        backup_every_saves: int = 1,
        backup_retention_days: int = 30,
        backup_max_count: int = 50,
        now: Callable[[], datetime] = local_now,
    ) -> None:
        self.queue_dir = queue_dir
        self.backup_every_saves = max(0, backup_every_saves)
        self.backup_retention_days = backup_retention_days
        self.backup_max_count = backup_max_count
        self._now = now
        self._saves_since_backup = 0

    @property
    def queue_path(self) -> Path:
        return self.queue_dir / QUEUE_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.queue_dir / f"{QUEUE_FILE_NAME}{LOCK_FILE_SUFFIX}"

    @property
    def backup_dir(self) -> Path:
        return self.queue_dir / BACKUP_DIR_NAME

    def new_state(self) -> QueueState:
        now = self._now()
        return QueueState(created_at=now, last_updated=now)

    def load(self) -> QueueState | None:
        """Load the primary document; ``None`` when no queue exists yet.

        A corrupt document is preserved next to the primary file and replaced
        by the newest valid backup (see ``recover``).
        """

        if not self.queue_path.exists():
            return None
        try:
            return _read_state(self.queue_path)
        except OSError as error:
            raise StoreError(f"Cannot read queue file {self.queue_path}: {error}") from error
        except _CORRUPTION_ERRORS as error:
            logger.error("Queue file %s is corrupt: %s", self.queue_path, error)
            self._preserve_corrupt_file()
            return self.recover()

    def load_or_create(self) -> QueueState:
        state = self.load()
        if state is None:
            return self.new_state()
        return state

    def save(self, state: QueueState) -> None:
        """Atomically replace the primary document, then back it up if due."""

        state.last_updated = self._now()
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        try:
            _atomic_write_json(self.queue_path, state_to_dict(state))
        except OSError as error:
            raise StoreError(f"Cannot write queue file {self.queue_path}: {error}") from error

        self._saves_since_backup += 1
        if self.backup_every_saves and self._saves_since_backup >= self.backup_every_saves:
            self.backup(state)

    def backup(self, state: QueueState) -> str:
        """Write a timestamped copy of ``state``; returns the backup id."""

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._now().astimezone().strftime("%Y%m%d-%H%M%S-%f")
        backup_id = f"{BACKUP_PREFIX}{stamp}"
        suffix = 1
        while (self.backup_dir / f"{backup_id}.json").exists():
            backup_id = f"{BACKUP_PREFIX}{stamp}-{suffix}"
            suffix += 1
        try:
            _atomic_write_json(self.backup_dir / f"{backup_id}.json", state_to_dict(state))
        except OSError as error:
            raise StoreError(f"Cannot write queue backup {backup_id}: {error}") from error
        self._saves_since_backup = 0
        self._prune_by_count()
        return backup_id

    def recover(self) -> QueueState:
        """Newest backup that parses, or an empty queue when none does."""

        for info in self.list_backups():
            try:
                state = _read_state(info.path)
            except (OSError, *_CORRUPTION_ERRORS) as error:
                logger.warning("Skipping unusable backup %s: %s", info.backup_id, error)
                continue
            logger.warning(
                "Recovered queue from backup %s (%d tasks)",
                info.backup_id,
                len(state.tasks),
            )
            return state

        logger.error(
            "No valid backup in %s; starting with an empty queue, previous task data is lost",
            self.backup_dir,
        )
        return self.new_state()

    def restore_backup(self, backup_id: str) -> QueueState:
        """Make backup ``backup_id`` the primary document."""

        path = self.backup_dir / f"{backup_id}.json"
        if not path.exists():
            raise StoreError(f"Backup not found: {backup_id}")
        try:
            state = _read_state(path)
        except (OSError, *_CORRUPTION_ERRORS) as error:
            raise StoreError(f"Backup {backup_id} is not a valid queue file: {error}") from error
        self.save(state)
        logger.info("Restored queue from backup %s", backup_id)
        return state

    def list_backups(self) -> list[BackupInfo]:
        """Backups sorted newest first."""

        if not self.backup_dir.exists():
            return []
        backups: list[BackupInfo] = []
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"):
            try:
                stat = path.stat()
            except OSError:
                continue
            backups.append(
                BackupInfo(
                    backup_id=path.stem,
                    path=path,
                    created_at=_backup_created_at(path.stem, mtime=stat.st_mtime),
                    size_bytes=stat.st_size,
                ),
            )
        backups.sort(key=lambda info: (info.created_at, info.backup_id), reverse=True)
        return backups

    def prune_backups(self) -> int:
        """Drop backups older than the retention age or beyond the max count."""

        cutoff = self._now() - timedelta(days=self.backup_retention_days)
        removed = 0
        for index, info in enumerate(self.list_backups()):
            # The newest backup survives the age rule so recovery always has a source.
            expired = index > 0 and info.created_at < cutoff
            overflow = self.backup_max_count > 0 and index >= self.backup_max_count
            if expired or overflow:
                info.path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Pruned %d queue backups", removed)
        return removed

    def _prune_by_count(self) -> None:
        if self.backup_max_count <= 0:
            return
        for info in self.list_backups()[self.backup_max_count :]:
            info.path.unlink(missing_ok=True)

    def _preserve_corrupt_file(self) -> None:
        target = self.queue_path.with_name(
            f"{QUEUE_FILE_NAME}.corrupt-{self._now():%Y%m%d-%H%M%S}",
        )
        try:
            shutil.copy2(self.queue_path, target)
        except OSError as error:
            logger.warning("Could not preserve corrupt queue file: %s", error)
            return
        logger.warning("Corrupt queue file preserved as %s", target)


def _read_state(path: Path) -> QueueState:
    payload = json.loads(path.read_text("utf-8"))
    return state_from_dict(payload)


def _atomic_write_json(path: Path, payload: dict[str, object]) -> None:
    temp_path = path.with_name(f".{path.name}.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp_path, path)


def _backup_created_at(backup_id: str, *, mtime: float) -> datetime:
    stamp = backup_id.removeprefix(BACKUP_PREFIX)[:22]
    try:
        return datetime.strptime(stamp, "%Y%m%d-%H%M%S-%f").astimezone()
    except ValueError:
        return datetime.fromtimestamp(mtime).astimezone()
