"""Runtime configuration for the task queue, scheduler and collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

KNOWN_PHASES: tuple[str, ...] = ("develop", "clear", "review", "merge")

DEFAULT_PHASE_TIMEOUTS: dict[str, int] = {
    "develop": 600,
    "clear": 30,
    "review": 480,
    "merge": 300,
}


def _default_queue_dir() -> Path:
    return Path.home() / ".autoresume" / "queue"


@dataclass(slots=True)
class QueueSettings:
    """Persistence, locking and housekeeping settings."""

    queue_dir: Path = field(default_factory=_default_queue_dir)
    lock_timeout_seconds: float = 30.0
    max_queue_size: int = 0
    processing_delay_seconds: float = 10.0
    pause_check_interval_seconds: float = 30.0
    auto_cleanup_days: int = 7
    cleanup_interval_seconds: int = 3_600
    backup_every_saves: int = 1
    backup_retention_days: int = 30
    backup_max_count: int = 50
    stale_grace_seconds: int = 300
    checkpoint_retention: int = 20


@dataclass(slots=True)
class TaskDefaults:
    """Defaults applied to tasks added without explicit values."""

    timeout_seconds: int = 3_600
    max_retries: int = 3
    priority: int = 5


@dataclass(slots=True)
class RetrySettings:
    """Step retry backoff and failure escalation."""

    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    jitter_seconds: float = 0.0
    auto_pause_on_error: bool = True


@dataclass(slots=True)
class CompletionSettings:
    """Completion detection for session phases."""

    completion_marker: str = "###TASK_COMPLETE###"
    request_marker: bool = True
    poll_interval_seconds: float = 5.0
    progress_interval_seconds: float = 60.0
    phase_timeouts: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS))
    pattern_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class UsageLimitSettings:
    """Usage-limit wait clamping and cooldowns."""

    min_wait_seconds: int = 60
    max_wait_seconds: int = 172_800
    default_cooldown_seconds: int = 300
    max_cooldown_seconds: int = 1_800
    backoff_factor: float = 1.5


@dataclass(slots=True)
class SessionSettings:
    """Assistant session transport settings."""

    session_name: str = "claude-auto-resume"
    clear_between_tasks: bool = True
    clear_command: str = "/clear"
    history_lines: int = 200
    tmux_binary: str = "tmux"


@dataclass(slots=True)
class GitHubSettings:
    """Issue mirroring settings; mirroring is off without a token and repository."""

    token: str | None = None
    repository: str | None = None
    api_url: str = "https://api.github.com"
    timeout_seconds: float = 30.0
    comment_max_length: int = 65_000

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.repository)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    queue: QueueSettings = field(default_factory=QueueSettings)
    tasks: TaskDefaults = field(default_factory=TaskDefaults)
    retry: RetrySettings = field(default_factory=RetrySettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    usage_limit: UsageLimitSettings = field(default_factory=UsageLimitSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, queue_dir: Path | None = None) -> Settings:
        """Load settings from ``AUTORESUME_*`` environment variables."""

        env_queue_dir = os.getenv("AUTORESUME_QUEUE_DIR")
        settings = cls(
            queue=QueueSettings(
                queue_dir=queue_dir
                or (Path(env_queue_dir).expanduser() if env_queue_dir else _default_queue_dir()),
                lock_timeout_seconds=float(os.getenv("AUTORESUME_LOCK_TIMEOUT", "30")),
                max_queue_size=int(os.getenv("AUTORESUME_QUEUE_MAX_SIZE", "0")),
                processing_delay_seconds=float(os.getenv("AUTORESUME_PROCESSING_DELAY", "10")),
                pause_check_interval_seconds=float(
                    os.getenv("AUTORESUME_PAUSE_CHECK_INTERVAL", "30"),
                ),
                auto_cleanup_days=int(os.getenv("AUTORESUME_AUTO_CLEANUP_DAYS", "7")),
                cleanup_interval_seconds=int(os.getenv("AUTORESUME_CLEANUP_INTERVAL", "3600")),
                backup_every_saves=int(os.getenv("AUTORESUME_BACKUP_FREQUENCY", "1")),
                backup_retention_days=int(os.getenv("AUTORESUME_BACKUP_RETENTION_DAYS", "30")),
                backup_max_count=int(os.getenv("AUTORESUME_BACKUP_MAX_COUNT", "50")),
                stale_grace_seconds=int(os.getenv("AUTORESUME_STALE_GRACE_SECONDS", "300")),
                checkpoint_retention=int(os.getenv("AUTORESUME_CHECKPOINT_RETENTION", "20")),
            ),
            tasks=TaskDefaults(
                timeout_seconds=int(os.getenv("AUTORESUME_TASK_DEFAULT_TIMEOUT", "3600")),
                max_retries=int(os.getenv("AUTORESUME_TASK_MAX_RETRIES", "3")),
                priority=int(os.getenv("AUTORESUME_TASK_DEFAULT_PRIORITY", "5")),
            ),
            retry=RetrySettings(
                base_delay_seconds=float(os.getenv("AUTORESUME_RETRY_BASE_DELAY", "5")),
                max_delay_seconds=float(os.getenv("AUTORESUME_RETRY_MAX_DELAY", "300")),
                jitter_seconds=float(os.getenv("AUTORESUME_RETRY_JITTER", "0")),
                auto_pause_on_error=_env_bool("AUTORESUME_AUTO_PAUSE_ON_ERROR", default=True),
            ),
            completion=CompletionSettings(
                completion_marker=os.getenv("AUTORESUME_COMPLETION_MARKER", "###TASK_COMPLETE###"),
                request_marker=_env_bool("AUTORESUME_COMPLETION_PROMPT", default=True),
                poll_interval_seconds=float(os.getenv("AUTORESUME_POLL_INTERVAL", "5")),
                progress_interval_seconds=float(os.getenv("AUTORESUME_PROGRESS_INTERVAL", "60")),
                phase_timeouts=_collect_phase_timeouts(),
                pattern_overrides=_collect_pattern_overrides(),
            ),
            usage_limit=UsageLimitSettings(
                min_wait_seconds=int(os.getenv("AUTORESUME_USAGE_LIMIT_MIN_WAIT", "60")),
                max_wait_seconds=int(os.getenv("AUTORESUME_USAGE_LIMIT_MAX_WAIT", "172800")),
                default_cooldown_seconds=int(os.getenv("AUTORESUME_USAGE_LIMIT_COOLDOWN", "300")),
                max_cooldown_seconds=int(
                    os.getenv("AUTORESUME_USAGE_LIMIT_MAX_COOLDOWN", "1800"),
                ),
                backoff_factor=float(os.getenv("AUTORESUME_USAGE_LIMIT_BACKOFF_FACTOR", "1.5")),
            ),
            session=SessionSettings(
                session_name=os.getenv("AUTORESUME_SESSION_NAME", "claude-auto-resume"),
                clear_between_tasks=_env_bool(
                    "AUTORESUME_SESSION_CLEAR_BETWEEN_TASKS",
                    default=True,
                ),
                clear_command=os.getenv("AUTORESUME_CLEAR_COMMAND", "/clear"),
                history_lines=int(os.getenv("AUTORESUME_TMUX_HISTORY_LINES", "200")),
                tmux_binary=os.getenv("AUTORESUME_TMUX_BINARY", "tmux"),
            ),
            github=GitHubSettings(
                token=os.getenv("AUTORESUME_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or None,
                repository=os.getenv("AUTORESUME_GITHUB_REPOSITORY") or None,
                api_url=os.getenv("AUTORESUME_GITHUB_API_URL", "https://api.github.com"),
                timeout_seconds=float(os.getenv("AUTORESUME_GITHUB_TIMEOUT", "30")),
                comment_max_length=int(
                    os.getenv("AUTORESUME_GITHUB_COMMENT_MAX_LENGTH", "65000"),
                ),
            ),
            log_level=os.getenv("AUTORESUME_LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.queue.lock_timeout_seconds <= 0:
            raise ValueError("AUTORESUME_LOCK_TIMEOUT must be > 0.")
        if self.queue.max_queue_size < 0:
            raise ValueError("AUTORESUME_QUEUE_MAX_SIZE must be >= 0.")
        if self.queue.processing_delay_seconds < 0:
            raise ValueError("AUTORESUME_PROCESSING_DELAY must be >= 0.")
        if self.queue.auto_cleanup_days < 0:
            raise ValueError("AUTORESUME_AUTO_CLEANUP_DAYS must be >= 0.")
        if self.tasks.timeout_seconds <= 0:
            raise ValueError("AUTORESUME_TASK_DEFAULT_TIMEOUT must be > 0.")
        if self.tasks.max_retries < 0:
            raise ValueError("AUTORESUME_TASK_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.completion.poll_interval_seconds <= 0:
            raise ValueError("AUTORESUME_POLL_INTERVAL must be > 0.")
        if self.usage_limit.min_wait_seconds < 0:
            raise ValueError("AUTORESUME_USAGE_LIMIT_MIN_WAIT must be >= 0.")
        if self.usage_limit.max_wait_seconds < self.usage_limit.min_wait_seconds:
            raise ValueError(
                "AUTORESUME_USAGE_LIMIT_MAX_WAIT must be >= AUTORESUME_USAGE_LIMIT_MIN_WAIT.",
            )
        if self.github.repository and "/" not in self.github.repository:
            raise ValueError("AUTORESUME_GITHUB_REPOSITORY must look like 'owner/name'.")
        for phase, seconds in self.completion.phase_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"Phase timeout for {phase!r} must be > 0.")


def _collect_phase_timeouts() -> dict[str, int]:
    timeouts = dict(DEFAULT_PHASE_TIMEOUTS)
    for phase in KNOWN_PHASES:
        raw = os.getenv(f"AUTORESUME_{phase.upper()}_TIMEOUT")
        if raw is None or not raw.strip():
            continue
        try:
            timeouts[phase] = int(raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid AUTORESUME_{phase.upper()}_TIMEOUT value: {raw!r}",
            ) from error
    return timeouts


def _collect_pattern_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for phase in KNOWN_PHASES:
        raw = os.getenv(f"AUTORESUME_{phase.upper()}_COMPLETION_PATTERNS", "").strip()
        if raw:
            overrides[phase] = raw
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
