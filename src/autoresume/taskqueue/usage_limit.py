"""Usage-limit detection and resume-time arithmetic.

The assistant announces temporary unavailability in free text, usually with a
clock time in the machine's local timezone ("available again at 5pm"). The
monitor turns such a message into a ``RecoveryWindow`` whose ``resume_at`` is
the next occurrence of that time of day, and pauses the registry until then.

Recognized forms, first match wins:

- ``...limit reached|1735689600``: Unix epoch appended to the limit message.
- ``tomorrow at 2pm``: always the next calendar day.
- ``<lead> 5pm`` / ``<lead> 5:30 am``: 12-hour clock time.
- ``<lead> 17:30``: 24-hour clock time.
- ``try again in 2 hours``: relative duration.
- generic limit phrases without a time: cooldown with per-occurrence backoff.

A message that looks like a clock template but does not parse (``blocked
until 25pm``) falls back to the fixed default cooldown.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from autoresume.taskqueue.common import local_now
from autoresume.taskqueue.failure_classifier import USAGE_LIMIT_RE
from autoresume.taskqueue.models import ErrorKind, ErrorRecord, RecoveryWindow, Task
from autoresume.taskqueue.repository import TaskRegistry
from autoresume.taskqueue.sanitization import output_excerpt

logger = logging.getLogger(__name__)

SOURCE_EPOCH = "epoch"
SOURCE_TOMORROW = "tomorrow"
SOURCE_CLOCK = "clock_time"
SOURCE_CLOCK_24H = "clock_time_24h"
SOURCE_DURATION = "duration"
SOURCE_FALLBACK = "fallback"
SOURCE_UNPARSEABLE = "unparseable"

_LEAD = (
    r"(?:blocked\s+until|try\s+again\s+at|available\s+again\s+at|available\s+at"
    r"|wait\s+until|retry\s+at|resumes?(?:\s+at)?|resets?(?:\s+at)?|reset\s+time\s*:?)"
)
_MERIDIEM = r"(?P<meridiem>[ap])\.?\s?m\b\.?"

_EPOCH_RE = re.compile(r"limit[^\n|]{0,80}\|\s*(?P<epoch>\d{10})\b", re.IGNORECASE)
_TOMORROW_RE = re.compile(
    rf"\btomorrow\s+at\s+(?P<hour>\d{{1,2}})(?::(?P<minute>\d{{2}}))?\s*{_MERIDIEM}",
    re.IGNORECASE,
)
_CLOCK_12H_RE = re.compile(
    rf"\b{_LEAD}\s+(?P<hour>\d{{1,2}})(?::(?P<minute>\d{{2}}))?\s*{_MERIDIEM}",
    re.IGNORECASE,
)
_CLOCK_24H_RE = re.compile(
    rf"\b{_LEAD}\s+(?P<hour>\d{{1,2}}):(?P<minute>\d{{2}})\b(?!\s*[ap]\.?\s?m\b)",
    re.IGNORECASE,
)
_DURATION_RE = re.compile(
    r"\b(?:try\s+again|retry|available(?:\s+again)?|resets?|resumes?|wait)\s+in\s+"
    r"(?P<amount>\d+)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)\b"
    r"(?:\s*(?:and\s+)?(?P<extra_amount>\d+)\s*(?P<extra_unit>minutes?|mins?|m)\b)?",
    re.IGNORECASE,
)

_UNIT_SECONDS = {"h": 3_600, "m": 60, "s": 1}


@dataclass(slots=True)
class UsageLimitPolicy:
    """Clamping and cooldown parameters."""

    min_wait_seconds: int = 60
    max_wait_seconds: int = 172_800
    default_cooldown_seconds: int = 300
    max_cooldown_seconds: int = 1_800
    backoff_factor: float = 1.5


def to_24_hour(hour: int, meridiem: str) -> int:
    """Normalize a 12-hour clock hour: 12am is 0, 12pm is 12, pm adds 12."""

    if not 1 <= hour <= 12:
        raise ValueError(f"Hour out of range for a 12-hour clock: {hour}")
    marker = meridiem.lower()[:1]
    if marker == "a":
        return 0 if hour == 12 else hour
    if marker == "p":
        return 12 if hour == 12 else hour + 12
    raise ValueError(f"Unknown meridiem: {meridiem!r}")


def next_occurrence(
    now: datetime,
    *,
    hour: int,
    minute: int,
    force_next_day: bool = False,
) -> datetime:
    """Next wall-clock ``hour:minute`` at or after ``now``.

    ``local_now()`` carries a fixed UTC offset, which is wrong for a target
    date on the other side of a DST change; such targets are re-localized
    from their naive wall-clock time.
    """

    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValueError(f"Invalid time of day: {hour}:{minute:02d}")
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if force_next_day or target < now:
        target += timedelta(days=1)
    if _is_system_local(now):
        target = target.replace(tzinfo=None).astimezone()
    return target


def _is_system_local(moment: datetime) -> bool:
    return (
        isinstance(moment.tzinfo, timezone)
        and moment.utcoffset() == moment.astimezone().utcoffset()
    )


class UsageLimitMonitor:
    """Scan session output for service-unavailability messages."""

    def __init__(
        self,
        *,
        registry: TaskRegistry | None = None,
        policy: UsageLimitPolicy | None = None,
        now: Callable[[], datetime] = local_now,
    ) -> None:
        self.registry = registry
        self.policy = policy or UsageLimitPolicy()
        self._now = now

    def scan(
        self,
        output: str,
        *,
        now: datetime | None = None,
        occurrence: int = 1,
    ) -> RecoveryWindow | None:
        """Return a recovery window when ``output`` reports a usage limit.

        ``occurrence`` is the consecutive usage-limit count, used only for
        the cooldown of messages that carry no time.
        """

        if not output:
            return None
        detected_at = now or self._now()

        match = _EPOCH_RE.search(output)
        if match is not None:
            resume_at = datetime.fromtimestamp(int(match.group("epoch")), tz=detected_at.tzinfo)
            if detected_at.tzinfo is None:
                resume_at = resume_at.replace(tzinfo=None)
            return self._window(detected_at, match.group(0), resume_at, source=SOURCE_EPOCH)

        for pattern, source in (
            (_TOMORROW_RE, SOURCE_TOMORROW),
            (_CLOCK_12H_RE, SOURCE_CLOCK),
        ):
            match = pattern.search(output)
            if match is None:
                continue
            hour = int(match.group("hour"))
            minute = int(match.group("minute") or 0)
            meridiem = f"{match.group('meridiem').lower()}m"
            try:
                resume_at = next_occurrence(
                    detected_at,
                    hour=to_24_hour(hour, meridiem),
                    minute=minute,
                    force_next_day=source == SOURCE_TOMORROW,
                )
            except ValueError as error:
                logger.warning("Unparseable usage-limit time %r: %s", match.group(0), error)
                return self._cooldown(detected_at, match.group(0), source=SOURCE_UNPARSEABLE)
            return self._window(
                detected_at,
                match.group(0),
                resume_at,
                source=source,
                hour=hour,
                minute=minute,
                meridiem=meridiem,
            )

        match = _CLOCK_24H_RE.search(output)
        if match is not None:
            hour = int(match.group("hour"))
            minute = int(match.group("minute"))
            try:
                resume_at = next_occurrence(detected_at, hour=hour, minute=minute)
            except ValueError as error:
                logger.warning("Unparseable usage-limit time %r: %s", match.group(0), error)
                return self._cooldown(detected_at, match.group(0), source=SOURCE_UNPARSEABLE)
            return self._window(
                detected_at,
                match.group(0),
                resume_at,
                source=SOURCE_CLOCK_24H,
                hour=hour,
                minute=minute,
            )

        match = _DURATION_RE.search(output)
        if match is not None:
            seconds = _duration_seconds(
                match.group("amount"),
                match.group("unit"),
                match.group("extra_amount"),
                match.group("extra_unit"),
            )
            resume_at = detected_at + timedelta(seconds=seconds)
            return self._window(detected_at, match.group(0), resume_at, source=SOURCE_DURATION)

        match = USAGE_LIMIT_RE.search(output)
        if match is not None:
            return self._cooldown(
                detected_at,
                match.group(0),
                source=SOURCE_FALLBACK,
                occurrence=occurrence,
            )
        return None

    def cooldown_window(
        self,
        raw_phrase: str,
        *,
        now: datetime | None = None,
        occurrence: int = 1,
    ) -> RecoveryWindow:
        """Window for a limit reported without a usable time."""

        return self._cooldown(
            now or self._now(),
            raw_phrase,
            source=SOURCE_FALLBACK,
            occurrence=occurrence,
        )

    def apply(
        self,
        window: RecoveryWindow,
        *,
        task: Task | None = None,
        step_index: int = 0,
    ) -> None:
        """Pause the registry until ``window.resume_at`` and log it on ``task``."""

        if self.registry is None:
            raise RuntimeError("UsageLimitMonitor.apply requires a registry.")
        self.registry.pause(reason=f"usage_limit: {window.raw_phrase}", resume_at=window.resume_at)
        self.registry.record_usage_limit()
        if task is None:
            return

        def _append(target: Task) -> None:
            target.error_history.append(
                ErrorRecord(
                    step_index=step_index,
                    error_type=ErrorKind.USAGE_LIMIT,
                    raw_output=output_excerpt(window.raw_phrase, max_chars=500),
                    timestamp=window.detected_at,
                    retry_count_at_failure=target.retry_count,
                    resume_at=window.resume_at,
                ),
            )

        self.registry.mutate(task.id, _append)
        logger.warning(
            "Usage limit on task %s: pausing for %ds until %s (%s)",
            task.id,
            window.wait_seconds,
            window.resume_at.isoformat(),
            window.source,
        )

    def _window(  # noqa: PLR0913
        self,
        detected_at: datetime,
        raw_phrase: str,
        resume_at: datetime,
        *,
        source: str,
        hour: int | None = None,
        minute: int | None = None,
        meridiem: str | None = None,
    ) -> RecoveryWindow:
        # Timestamps, because same-tzinfo subtraction ignores a DST offset change.
        wait_seconds = max(0, math.ceil(resume_at.timestamp() - detected_at.timestamp()))
        clamped = min(max(wait_seconds, self.policy.min_wait_seconds), self.policy.max_wait_seconds)
        if clamped != wait_seconds:
            logger.info(
                "Clamped usage-limit wait from %ds to %ds",
                wait_seconds,
                clamped,
            )
            resume_at = detected_at + timedelta(seconds=clamped)
        return RecoveryWindow(
            detected_at=detected_at,
            raw_phrase=raw_phrase.strip(),
            resume_at=resume_at,
            wait_seconds=clamped,
            source=source,
            extracted_hour=hour,
            extracted_minute=minute,
            extracted_meridiem=meridiem,
        )

    def _cooldown(
        self,
        detected_at: datetime,
        raw_phrase: str,
        *,
        source: str,
        occurrence: int = 1,
    ) -> RecoveryWindow:
        if source == SOURCE_UNPARSEABLE:
            seconds = self.policy.default_cooldown_seconds
        else:
            scaled = self.policy.default_cooldown_seconds * (
                self.policy.backoff_factor ** max(occurrence - 1, 0)
            )
            seconds = int(min(self.policy.max_cooldown_seconds, scaled))
        return RecoveryWindow(
            detected_at=detected_at,
            raw_phrase=raw_phrase.strip(),
            resume_at=detected_at + timedelta(seconds=seconds),
            wait_seconds=seconds,
            source=source,
        )


def _duration_seconds(
    amount: str,
    unit: str,
    extra_amount: str | None,
    extra_unit: str | None,
) -> int:
    seconds = int(amount) * _UNIT_SECONDS[unit.lower()[0]]
    if extra_amount and extra_unit:
        seconds += int(extra_amount) * _UNIT_SECONDS[extra_unit.lower()[0]]
    return seconds
