"""Retry and backoff policy for failed workflow steps."""

from __future__ import annotations

import random
from dataclasses import dataclass

from autoresume.taskqueue.failure_classifier import RecoveryAction, recovery_action_for
from autoresume.taskqueue.models import ErrorKind


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    should_retry: bool
    pause_queue: bool
    delay_seconds: float
    reason: str


class RetryPolicy:
    """Exponential backoff capped at ``max_delay_seconds``.

    The delay for a retry is ``base_delay * 2 ** retry_count`` where
    ``retry_count`` is the value after incrementing, plus optional jitter.
    """

    def __init__(
        self,
        *,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 300.0,
        jitter_seconds: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_seconds = jitter_seconds
        self._random = rng or random.Random()  # noqa: S311

    def compute_delay(self, *, retry_count: int) -> float:
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(retry_count, 0)))
        if self.jitter_seconds > 0:
            delay += self._random.uniform(-self.jitter_seconds, self.jitter_seconds)
        return max(0.0, delay)

    def decide(self, *, kind: ErrorKind, retry_count: int, max_retries: int) -> RetryDecision:
        """Decide what to do after a failure given the budget already spent."""

        action = recovery_action_for(kind)
        if action == RecoveryAction.PAUSE_UNTIL_RESET:
            return RetryDecision(
                should_retry=False,
                pause_queue=True,
                delay_seconds=0.0,
                reason="Usage limit pauses the queue without spending the retry budget.",
            )
        if action == RecoveryAction.FAIL:
            return RetryDecision(
                should_retry=False,
                pause_queue=False,
                delay_seconds=0.0,
                reason=f"{kind.value} errors are not retryable.",
            )
        if retry_count >= max_retries:
            return RetryDecision(
                should_retry=False,
                pause_queue=False,
                delay_seconds=0.0,
                reason=f"Retry budget exhausted ({retry_count}/{max_retries}).",
            )
        return RetryDecision(
            should_retry=True,
            pause_queue=False,
            delay_seconds=self.compute_delay(retry_count=retry_count + 1),
            reason=f"Retry {retry_count + 1}/{max_retries} after {kind.value} error.",
        )
