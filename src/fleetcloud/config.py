"""Configuration management with validation.

Bounds are enforced at configuration load time so a bad environment fails
before any provider is contacted.
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field
from pathlib import Path

from .errors import InvalidConfig


class ConfigurationError(InvalidConfig):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
STATE_DIR_NAME = ".fleetcloud"
DEFAULT_RESOURCE_FILE = "fleetcloud.yaml"
MAX_RESOURCE_FILE_SIZE_BYTES = 1024 * 1024  # 1 MB

DEFAULT_LOCK_TTL_SECONDS = 3600  # Lock older than one hour is considered stale
MIN_LOCK_TTL_SECONDS = 1
MAX_LOCK_TTL_SECONDS = 7 * 24 * 3600

DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
DEFAULT_RETRY_BACKOFF_MULTIPLIER = 2.0
MAX_RETRY_ATTEMPTS = 20

DEFAULT_COMMAND_TIMEOUT_SECONDS = 300
MAX_COMMAND_TIMEOUT_SECONDS = 3600

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff policy for transient backend failures.

    Attributes:
        max_attempts: Total tries per action, including the first.
        initial_delay: Delay after the first failed attempt, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
        backoff_multiplier: Growth factor between consecutive delays.
        jitter: Fraction of the computed delay added at random (0 disables).
    """

    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY_SECONDS
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_RETRY_BACKOFF_MULTIPLIER
    jitter: float = 0.0

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not (1 <= self.max_attempts <= MAX_RETRY_ATTEMPTS):
            errors.append(f"max_attempts must be between 1 and {MAX_RETRY_ATTEMPTS}")
        if self.initial_delay < 0:
            errors.append("initial_delay must not be negative")
        if self.max_delay < self.initial_delay:
            errors.append("max_delay must be >= initial_delay")
        if self.backoff_multiplier < 1.0:
            errors.append("backoff_multiplier must be >= 1.0")
        if not (0.0 <= self.jitter <= 1.0):
            errors.append("jitter must be between 0.0 and 1.0")
        if errors:
            raise ConfigurationError(
                "Retry configuration invalid:\n  - " + "\n  - ".join(errors)
            )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        delay = min(
            self.initial_delay * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter:
            delay = min(delay + random.uniform(0, delay * self.jitter), self.max_delay)
        return delay

    def delays(self) -> list[float]:
        """Per-attempt delay schedule, one entry per attempt."""
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts + 1)]


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    project_dir: Path = field(default_factory=Path.cwd)
    state_dir: Path | None = None

    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS
    retry: RetryConfig = field(default_factory=RetryConfig)

    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_LOCK_TTL_SECONDS <= self.lock_ttl_seconds <= MAX_LOCK_TTL_SECONDS):
            errors.append(
                f"FLEETCLOUD_LOCK_TTL must be between {MIN_LOCK_TTL_SECONDS} "
                f"and {MAX_LOCK_TTL_SECONDS} seconds"
            )

        if not (1 <= self.command_timeout_seconds <= MAX_COMMAND_TIMEOUT_SECONDS):
            errors.append(
                f"FLEETCLOUD_COMMAND_TIMEOUT must be between 1 "
                f"and {MAX_COMMAND_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"FLEETCLOUD_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if self.state_dir is None and not self.project_dir.is_dir():
            errors.append(f"Project directory does not exist: {self.project_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resolved_state_dir(self) -> Path:
        """Directory holding state records and lock files."""
        if self.state_dir is not None:
            return self.state_dir
        return self.project_dir / STATE_DIR_NAME

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            FLEETCLOUD_PROJECT_DIR: Project root (default: current directory)
            FLEETCLOUD_STATE_DIR: State directory (default: <project>/.fleetcloud)
            FLEETCLOUD_LOCK_TTL: Seconds before a held lock counts as stale (default: 3600)
            FLEETCLOUD_COMMAND_TIMEOUT: Per backend call timeout in seconds (default: 300)
            FLEETCLOUD_RETRY_MAX_ATTEMPTS: Tries per action (default: 3)
            FLEETCLOUD_RETRY_INITIAL_DELAY: First backoff delay in seconds (default: 1.0)
            FLEETCLOUD_RETRY_MAX_DELAY: Backoff cap in seconds (default: 30.0)
            FLEETCLOUD_RETRY_BACKOFF: Backoff multiplier (default: 2.0)
            FLEETCLOUD_RETRY_JITTER: Random jitter fraction (default: 0)
            FLEETCLOUD_LOG_LEVEL: Logging level (default: INFO)
            FLEETCLOUD_LOG_JSON: If "true", emit JSON log lines (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        state_dir = os.environ.get("FLEETCLOUD_STATE_DIR")

        return cls(
            project_dir=Path(os.environ.get("FLEETCLOUD_PROJECT_DIR", ".")).resolve(),
            state_dir=Path(state_dir) if state_dir else None,
            lock_ttl_seconds=get_int("FLEETCLOUD_LOCK_TTL", DEFAULT_LOCK_TTL_SECONDS),
            command_timeout_seconds=get_int(
                "FLEETCLOUD_COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT_SECONDS
            ),
            retry=RetryConfig(
                max_attempts=get_int(
                    "FLEETCLOUD_RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS
                ),
                initial_delay=get_float(
                    "FLEETCLOUD_RETRY_INITIAL_DELAY", DEFAULT_RETRY_INITIAL_DELAY_SECONDS
                ),
                max_delay=get_float(
                    "FLEETCLOUD_RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS
                ),
                backoff_multiplier=get_float(
                    "FLEETCLOUD_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_MULTIPLIER
                ),
                jitter=get_float("FLEETCLOUD_RETRY_JITTER", 0.0),
            ),
            log_level=os.environ.get("FLEETCLOUD_LOG_LEVEL", "INFO").upper(),
            log_json=get_bool("FLEETCLOUD_LOG_JSON", False),
        )
