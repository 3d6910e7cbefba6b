"""Configuration management with validation.

Every bound is enforced at load time so a run never starts with a timeout
or retry budget that could stall or hammer the provider.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RUN_TIMEOUT_SECONDS = 900
MIN_RUN_TIMEOUT_SECONDS = 30
MAX_RUN_TIMEOUT_SECONDS = 3600

DEFAULT_CALL_TIMEOUT_SECONDS = 60
MIN_CALL_TIMEOUT_SECONDS = 1
MAX_CALL_TIMEOUT_SECONDS = 300

DEFAULT_MAX_ATTEMPTS = 3
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10

DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
MAX_RETRY_BASE_DELAY_SECONDS = 60.0

DEFAULT_OBSERVE_CONCURRENCY = 5
MAX_OBSERVE_CONCURRENCY = 16

# Security constraints - enforced limits to prevent abuse
MAX_DOCUMENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max desired-state document
MAX_ARTIFACT_FILE_SIZE_BYTES = 50 * 1024 * 1024  # Provider limit for direct zip upload

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov|-iso[a-z]*)?-[a-z]+-\d$"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    desired_state_path: Path

    # Provider
    region: str | None = None

    # Timing
    run_timeout_seconds: int = DEFAULT_RUN_TIMEOUT_SECONDS
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS

    # Retry
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS

    # Observation
    observe_concurrency: int = DEFAULT_OBSERVE_CONCURRENCY

    # Enable structured audit logging (JSON format to stdout)
    enable_audit_logging: bool = True

    # Free-form labels copied into the provenance record
    labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not str(self.desired_state_path) or str(self.desired_state_path) == ".":
            errors.append("DESIRED_STATE_PATH is required")
        elif not self.desired_state_path.is_file():
            errors.append(f"Desired state file does not exist: {self.desired_state_path}")

        if self.region is not None and not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid region name: {self.region}")

        if not MIN_RUN_TIMEOUT_SECONDS <= self.run_timeout_seconds <= MAX_RUN_TIMEOUT_SECONDS:
            errors.append(
                f"RUN_TIMEOUT must be between {MIN_RUN_TIMEOUT_SECONDS} "
                f"and {MAX_RUN_TIMEOUT_SECONDS} seconds"
            )

        if not MIN_CALL_TIMEOUT_SECONDS <= self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS:
            errors.append(
                f"CALL_TIMEOUT must be between {MIN_CALL_TIMEOUT_SECONDS} "
                f"and {MAX_CALL_TIMEOUT_SECONDS} seconds"
            )
        elif self.call_timeout_seconds > self.run_timeout_seconds:
            errors.append("CALL_TIMEOUT cannot exceed RUN_TIMEOUT")

        if not MIN_MAX_ATTEMPTS <= self.max_attempts <= MAX_MAX_ATTEMPTS:
            errors.append(
                f"MAX_ATTEMPTS must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )

        if not 0 <= self.retry_base_delay_seconds <= MAX_RETRY_BASE_DELAY_SECONDS:
            errors.append(
                f"RETRY_BASE_DELAY must be between 0 and {MAX_RETRY_BASE_DELAY_SECONDS} seconds"
            )

        if not 1 <= self.observe_concurrency <= MAX_OBSERVE_CONCURRENCY:
            errors.append(f"OBSERVE_CONCURRENCY must be between 1 and {MAX_OBSERVE_CONCURRENCY}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DESIRED_STATE_PATH: Path to the desired-state YAML document
            AWS_REGION / AWS_DEFAULT_REGION: Target region (default: SDK resolution)
            RUN_TIMEOUT: Deadline for the whole run in seconds (default: 900)
            CALL_TIMEOUT: Timeout for a single provider call in seconds (default: 60)
            MAX_ATTEMPTS: Attempts per action for retryable failures (default: 3)
            RETRY_BASE_DELAY: First backoff delay in seconds (default: 1.0)
            OBSERVE_CONCURRENCY: Parallel lookups during observation (default: 5)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
            RUN_LABELS: Comma-separated key=value pairs for provenance
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

        def get_labels(value: str) -> dict[str, str]:
            labels: dict[str, str] = {}
            for pair in filter(None, (p.strip() for p in value.split(","))):
                key, sep, val = pair.partition("=")
                if not sep or not key.strip():
                    raise ConfigurationError(f"RUN_LABELS entries must be key=value: {pair}")
                labels[key.strip()] = val.strip()
            return labels

        return cls(
            desired_state_path=Path(os.environ.get("DESIRED_STATE_PATH", "")),
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or None,
            run_timeout_seconds=get_int("RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT_SECONDS),
            call_timeout_seconds=get_int("CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            observe_concurrency=get_int("OBSERVE_CONCURRENCY", DEFAULT_OBSERVE_CONCURRENCY),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            labels=get_labels(os.environ.get("RUN_LABELS", "")),
        )
