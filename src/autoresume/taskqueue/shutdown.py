"""Cancellable waits and SIGINT/SIGTERM handling for the scheduler."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class StopToken:
    """Cancellation token shared by every suspension point.

    ``wait`` replaces ``time.sleep``: it returns early, with ``True``, as soon
    as a stop is requested.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    def request_stop(self, *, signal_name: str | None = None) -> None:
        if self._event.is_set():
            return
        self.signal_name = signal_name
        if signal_name:
            logger.info("Stop requested by %s", signal_name)
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """Wait up to ``seconds``; returns True when a stop was requested."""

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(timeout=seconds)


@contextmanager
def signal_handlers(token: StopToken) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``token`` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        token.request_stop(signal_name=name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
