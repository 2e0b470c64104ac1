"""Cross-process exclusive lock around the queue document."""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from autoresume.taskqueue.common import local_now
from autoresume.taskqueue.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_INTERVAL_SECONDS = 0.1


@dataclass(slots=True)
class LockHandle:
    """Proof that the caller holds the queue lock."""

    path: Path
    pid: int
    acquired_at: datetime


class LockManager:
    """``flock``-based lock on a sibling file of the queue document.

    The kernel drops the lock when the holding process dies, so a crashed
    scheduler never wedges the queue. Acquisition is re-entrant within the
    thread that already holds it.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lock_path = lock_path
        self.retry_interval_seconds = retry_interval_seconds
        self._monotonic = monotonic
        self._sleep = sleep
        self._owner_thread: int | None = None
        self._depth = 0
        self._handle: LockHandle | None = None

    @contextmanager
    def acquire(self, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> Iterator[LockHandle]:
        """Hold the lock for the duration of the ``with`` block.

        Raises:
            LockTimeoutError: The lock stayed busy for ``timeout`` seconds.
        """

        if self._owner_thread == threading.get_ident() and self._handle is not None:
            self._depth += 1
            try:
                yield self._handle
            finally:
                self._depth -= 1
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._wait_for_lock(fd, timeout=timeout)
            handle = LockHandle(path=self.lock_path, pid=os.getpid(), acquired_at=local_now())
            _write_holder(fd, handle)
            self._owner_thread = threading.get_ident()
            self._depth = 1
            self._handle = handle
            try:
                yield handle
            finally:
                self._owner_thread = None
                self._depth = 0
                self._handle = None
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _wait_for_lock(self, fd: int, *, timeout: float) -> None:
        deadline = self._monotonic() + max(0.0, timeout)
        attempts = 0
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                if attempts:
                    logger.debug("Acquired queue lock after %d retries", attempts)
                return
            except BlockingIOError:
                attempts += 1
            if self._monotonic() >= deadline:
                holder = _read_holder(self.lock_path)
                raise LockTimeoutError(
                    f"Timed out after {timeout:.1f}s waiting for queue lock "
                    f"{self.lock_path} (holder: {holder or 'unknown'})",
                )
            self._sleep(self.retry_interval_seconds)


def _write_holder(fd: int, handle: LockHandle) -> None:
    payload = f"{handle.pid} {handle.acquired_at.isoformat()}\n".encode()
    os.ftruncate(fd, 0)
    os.pwrite(fd, payload, 0)


def _read_holder(path: Path) -> str:
    try:
        return path.read_text("utf-8").strip()
    except OSError:
        return ""
