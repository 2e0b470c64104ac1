"""Phase completion detection from captured session output.

Scraped terminal text is the only signal that the assistant has finished a
phase, so detection is best-effort and every wait is bounded by a timeout.
Each phase owns an ordered list of failure and success patterns; failure
patterns are checked first. Phases without their own patterns only recognize
the literal completion marker, which is also accepted in every phase. Commands
for such phases carry an instruction asking the assistant to print the marker;
the pane echoes that instruction back, so the sent text is ignored when matching.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from autoresume.session.base import SessionTransport
from autoresume.taskqueue.shutdown import StopToken

logger = logging.getLogger(__name__)

TASK_COMPLETE_MARKER = "###TASK_COMPLETE###"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 60.0
_MAX_COLLECTED_CHARS = 20_000

OutputObserver = Callable[[str], bool]
ProgressCallback = Callable[[str, float], None]


class CompletionOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    CANCELLED = "cancelled"


def completion_prompt(command: str, marker: str = TASK_COMPLETE_MARKER) -> str:
    """Append the marker instruction; one line so ``send-keys`` submits once."""

    return f"{command} (When this task is complete, please output exactly: {marker})"


def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE | re.MULTILINE)


def _compile_all(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(_compile(pattern) for pattern in patterns)


@dataclass(frozen=True, slots=True)
class PhasePatterns:
    """Ordered success and failure signatures for one phase."""

    success: tuple[re.Pattern[str], ...]
    failure: tuple[re.Pattern[str], ...] = field(default=())

    @classmethod
    def from_strings(
        cls,
        success: Iterable[str],
        failure: Iterable[str] = (),
    ) -> PhasePatterns:
        return cls(
            success=_compile_all(success),
            failure=_compile_all(failure),
        )


_COMMON_FAILURES: tuple[str, ...] = (
    r"authentication (?:failed|error)",
    r"invalid api key",
    r"connection (?:refused|reset)",
    r"network error",
    r"unknown (?:slash )?command",
    r"command not found",
    r"session not found",
    r"no active session",
)

DEFAULT_PHASE_PATTERNS: dict[str, PhasePatterns] = {
    "develop": PhasePatterns.from_strings(
        success=(
            r"pull request.*created",
            r"\bpr\b.*created",
            r"created pull request",
            r"committed.*changes",
            r"created.*branch",
            r"pushed.*to",
            r"issue.*complete",
            r"\bimplemented\b",
            r"development.*finished",
        ),
        failure=(*_COMMON_FAILURES, r"failed to create pull request"),
    ),
    "clear": PhasePatterns.from_strings(
        success=(
            r"context.*cleared",
            r"clear.*complete",
            r"conversation.*reset",
            r"claude>",
            r"^\s*[>❯]\s*$",
        ),
        failure=_COMMON_FAILURES,
    ),
    "review": PhasePatterns.from_strings(
        success=(
            r"review.*complete",
            r"analysis.*complete",
            r"review.*finished",
            r"\bsummary\b",
            r"\brecommendations?\b",
            r"\bconclusion\b",
            r"\boverall\b",
        ),
        failure=_COMMON_FAILURES,
    ),
    "merge": PhasePatterns.from_strings(
        success=(
            r"merge.*successful",
            r"merged.*successfully",
            r"merge.*complete",
            r"main.*updated",
            r"merged.*into.*main",
            r"issue.*closed",
        ),
        failure=(
            *_COMMON_FAILURES,
            r"merge conflict",
            r"automatic merge failed",
            r"failed to merge",
        ),
    ),
}


@dataclass(slots=True)
class DetectionResult:
    """Outcome of waiting for one phase."""

    outcome: CompletionOutcome
    phase: str
    elapsed_seconds: float
    matched_pattern: str | None = None
    output: str = ""


class OutputTracker:
    """Yield only the lines that appeared since the previous capture.

    Successive captures of a scrolling pane overlap: the tail of the previous
    capture is the head of the next one. The last line is treated as volatile
    because the assistant redraws it in place.
    """

    def __init__(self, baseline: str = "") -> None:
        self._previous = _trim(baseline.splitlines())

    def feed(self, capture: str) -> str:
        current = _trim(capture.splitlines())
        new_lines = _new_lines(self._previous, current)
        self._previous = current
        return "\n".join(new_lines)


class CompletionDetector:
    """Poll a transport until a phase succeeds, fails, or runs out of time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        patterns: Mapping[str, PhasePatterns] | None = None,
        completion_marker: str = TASK_COMPLETE_MARKER,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        progress_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        stop_token: StopToken | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.patterns = dict(DEFAULT_PHASE_PATTERNS if patterns is None else patterns)
        self.completion_marker = completion_marker
        self.poll_interval_seconds = poll_interval_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.stop_token = stop_token or StopToken()
        self._monotonic = monotonic

    def match(self, phase: str, text: str) -> tuple[CompletionOutcome, str] | None:
        """First failure or success signature found in ``text``."""

        phase_patterns = self.patterns.get(phase)
        if phase_patterns is not None:
            for pattern in phase_patterns.failure:
                if pattern.search(text):
                    return CompletionOutcome.FAILED, pattern.pattern
            for pattern in phase_patterns.success:
                if pattern.search(text):
                    return CompletionOutcome.COMPLETED, pattern.pattern
        if self.completion_marker and self.completion_marker in text:
            return CompletionOutcome.COMPLETED, self.completion_marker
        return None

    def requests_marker(self, phase: str) -> bool:
        """Whether ``phase`` can only finish on the literal marker."""

        return bool(self.completion_marker) and phase not in self.patterns

    def await_completion(  # noqa: PLR0913
        self,
        transport: SessionTransport,
        phase: str,
        timeout: float,
        *,
        baseline: str = "",
        sent: str = "",
        observer: OutputObserver | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DetectionResult:
        """Wait for ``phase`` to finish on ``transport``.

        ``observer`` sees every new chunk before pattern matching; returning
        True ends the wait with ``INTERRUPTED``. The echo of ``sent`` is
        removed before either sees a chunk. Transport errors propagate.
        """

        tracker = OutputTracker(baseline)
        started = self._monotonic()
        deadline = started + max(0.0, timeout)
        next_progress = started + self.progress_interval_seconds
        collected = ""

        while True:
            chunk = tracker.feed(transport.capture_recent_output())
            if chunk:
                collected = f"{collected}\n{chunk}"[-_MAX_COLLECTED_CHARS:]
                visible = chunk.replace(sent, "") if sent else chunk
                if observer is not None and observer(visible):
                    return self._result(CompletionOutcome.INTERRUPTED, phase, started, collected)
                matched = self.match(phase, visible)
                if matched is not None:
                    outcome, pattern = matched
                    logger.info("Phase %s %s (pattern %r)", phase, outcome.value, pattern)
                    return self._result(outcome, phase, started, collected, pattern=pattern)

            now = self._monotonic()
            if now >= deadline:
                logger.warning("Phase %s timed out after %.0fs", phase, now - started)
                return self._result(CompletionOutcome.TIMEOUT, phase, started, collected)
            if now >= next_progress:
                elapsed = now - started
                logger.info("Phase %s still running (%.0fs of %.0fs)", phase, elapsed, timeout)
                if on_progress is not None:
                    on_progress(phase, elapsed)
                next_progress += self.progress_interval_seconds

            if self.stop_token.wait(min(self.poll_interval_seconds, deadline - now)):
                return self._result(CompletionOutcome.CANCELLED, phase, started, collected)

    def _result(
        self,
        outcome: CompletionOutcome,
        phase: str,
        started: float,
        collected: str,
        *,
        pattern: str | None = None,
    ) -> DetectionResult:
        return DetectionResult(
            outcome=outcome,
            phase=phase,
            elapsed_seconds=self._monotonic() - started,
            matched_pattern=pattern,
            output=collected.strip(),
        )


def patterns_with_overrides(
    overrides: Mapping[str, str],
    *,
    base: Mapping[str, PhasePatterns] | None = None,
) -> dict[str, PhasePatterns]:
    """Replace the success patterns of phases named in ``overrides``.

    Each override is one regular expression (alternation allowed); failure
    patterns of an overridden phase are kept.
    """

    merged = dict(DEFAULT_PHASE_PATTERNS if base is None else base)
    for phase, expression in overrides.items():
        existing = merged.get(phase)
        merged[phase] = PhasePatterns(
            success=(_compile(expression),),
            failure=existing.failure if existing is not None else _compile_all(_COMMON_FAILURES),
        )
    return merged


def _trim(lines: list[str]) -> list[str]:
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1
    return [line.rstrip() for line in lines[:end]]


def _new_lines(previous: list[str], current: list[str]) -> list[str]:
    if not previous:
        return current
    for candidate in (previous, previous[:-1]):
        for overlap in range(min(len(candidate), len(current)), 0, -1):
            if candidate[-overlap:] == current[:overlap]:
                return current[overlap:]
    return current
