"""Configuration management with validation.

Retry and cleanup tuning is carried by immutable values threaded into the
executor, the cleanup orchestrator and the API client, so several
independently configured instances can live in one process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Request retry defaults
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_JITTER_FRACTION = 0.1
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

# Cleanup defaults
DEFAULT_CLEANUP_TIMEOUT_SECONDS = 600.0
DEFAULT_CLEANUP_BACKOFF_BASE_SECONDS = 30.0
DEFAULT_CLEANUP_BACKOFF_MAX_SECONDS = 300.0
DEFAULT_CLEANUP_BACKOFF_EXPONENT = 3
DEFAULT_CLEANUP_BACKOFF_MAX_SHIFT = 10

# Hard bounds
MAX_ATTEMPTS_LIMIT = 20
MAX_JITTER_FRACTION = 1.0

DEFAULT_API_URL = "https://api.uptimerobot.com/v3"


@dataclass(frozen=True)
class BackoffParameters:
    """Retry tuning for one logical outbound call.

    Attributes:
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for any single wait, in seconds.
        jitter_fraction: Relative jitter applied to each computed wait.
        max_attempts: Retries allowed after the first attempt.
    """

    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    jitter_fraction: float = DEFAULT_JITTER_FRACTION
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.base_delay < 0:
            errors.append("base_delay must not be negative")
        if self.max_delay < 0:
            errors.append("max_delay must not be negative")
        elif self.max_delay < self.base_delay:
            errors.append("max_delay must be greater than or equal to base_delay")
        if not (0 <= self.jitter_fraction <= MAX_JITTER_FRACTION):
            errors.append(f"jitter_fraction must be between 0 and {MAX_JITTER_FRACTION}")
        if not (0 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"max_attempts must be between 0 and {MAX_ATTEMPTS_LIMIT}")

        if errors:
            raise ConfigurationError(
                "Backoff parameters invalid:\n  - " + "\n  - ".join(errors)
            )


@dataclass(frozen=True)
class CleanupBackoffParameters:
    """Cleanup requeue tuning.

    The defaults give the 30s, 60s, 120s, 240s, 5m progression as the
    deletion deadline approaches.
    """

    base_delay: float = DEFAULT_CLEANUP_BACKOFF_BASE_SECONDS
    max_delay: float = DEFAULT_CLEANUP_BACKOFF_MAX_SECONDS
    exponent: int = DEFAULT_CLEANUP_BACKOFF_EXPONENT
    max_shift: int = DEFAULT_CLEANUP_BACKOFF_MAX_SHIFT

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.base_delay <= 0:
            errors.append("cleanup base_delay must be positive")
        if self.max_delay < self.base_delay:
            errors.append("cleanup max_delay must be greater than or equal to base_delay")
        if self.exponent < 0:
            errors.append("cleanup exponent must not be negative")
        if not (0 <= self.max_shift <= 62):
            errors.append("cleanup max_shift must be between 0 and 62")

        if errors:
            raise ConfigurationError(
                "Cleanup backoff parameters invalid:\n  - " + "\n  - ".join(errors)
            )


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    api_url: str = DEFAULT_API_URL
    api_key: str = ""
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    retry: BackoffParameters = field(default_factory=BackoffParameters)

    cleanup_timeout_seconds: float = DEFAULT_CLEANUP_TIMEOUT_SECONDS
    cleanup_backoff: CleanupBackoffParameters = field(default_factory=CleanupBackoffParameters)

    store_dir: Path = field(default_factory=lambda: Path("resources"))
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.api_url.startswith(("http://", "https://")):
            errors.append(f"UPTIME_ROBOT_API must be an http(s) URL: {self.api_url}")
        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT_SECONDS must be positive")
        if self.cleanup_timeout_seconds <= 0:
            errors.append("CLEANUP_TIMEOUT_SECONDS must be positive")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"LOG_LEVEL is not a valid level: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            UPTIME_ROBOT_API: API base URL (default: https://api.uptimerobot.com/v3)
            UPTIME_ROBOT_API_KEY: Bearer token for the API
            REQUEST_TIMEOUT_SECONDS: Timeout for one HTTP attempt (default: 30)
            RETRY_MAX_ATTEMPTS: Retries after the first attempt (default: 5)
            RETRY_BASE_DELAY_SECONDS: First retry delay (default: 1)
            RETRY_MAX_DELAY_SECONDS: Cap on any retry delay (default: 60)
            RETRY_JITTER_FRACTION: Relative jitter (default: 0.1)
            CLEANUP_TIMEOUT_SECONDS: Deletion deadline (default: 600)
            CLEANUP_BACKOFF_BASE_SECONDS: First cleanup requeue (default: 30)
            CLEANUP_BACKOFF_MAX_SECONDS: Cap on cleanup requeue (default: 300)
            RESOURCE_STORE_DIR: Directory holding resource manifests (default: resources)
            LOG_LEVEL: Root log level (default: INFO)
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

        return cls(
            api_url=os.environ.get("UPTIME_ROBOT_API", DEFAULT_API_URL).rstrip("/"),
            api_key=os.environ.get("UPTIME_ROBOT_API_KEY", ""),
            request_timeout_seconds=get_float(
                "REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            retry=BackoffParameters(
                base_delay=get_float("RETRY_BASE_DELAY_SECONDS", DEFAULT_BASE_DELAY_SECONDS),
                max_delay=get_float("RETRY_MAX_DELAY_SECONDS", DEFAULT_MAX_DELAY_SECONDS),
                jitter_fraction=get_float("RETRY_JITTER_FRACTION", DEFAULT_JITTER_FRACTION),
                max_attempts=get_int("RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            ),
            cleanup_timeout_seconds=get_float(
                "CLEANUP_TIMEOUT_SECONDS", DEFAULT_CLEANUP_TIMEOUT_SECONDS
            ),
            cleanup_backoff=CleanupBackoffParameters(
                base_delay=get_float(
                    "CLEANUP_BACKOFF_BASE_SECONDS", DEFAULT_CLEANUP_BACKOFF_BASE_SECONDS
                ),
                max_delay=get_float(
                    "CLEANUP_BACKOFF_MAX_SECONDS", DEFAULT_CLEANUP_BACKOFF_MAX_SECONDS
                ),
            ),
            store_dir=Path(os.environ.get("RESOURCE_STORE_DIR", "resources")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
