"""Configuration management with validation.

All limits are checked at load time so a bad setting fails the process at
startup instead of half-way through a run against a live fleet.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .pacing import PacingConfig


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BATCH_SIZE = 25
MIN_BATCH_SIZE_LIMIT = 1
MAX_BATCH_SIZE_LIMIT = 500

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10

DEFAULT_FAILURE_THRESHOLD = 0.2

DEFAULT_CONCURRENCY_CAP = 10
MAX_CONCURRENCY_CAP = 64

DEFAULT_MIN_BATCH_SIZE = 5
DEFAULT_SHRINK_FACTOR = 0.5
DEFAULT_PACING_DELAY_SECONDS = 30.0
MAX_PACING_DELAY_SECONDS = 3600.0

DEFAULT_WRITE_TIMEOUT_SECONDS = 120.0
DEFAULT_BACKOFF_BASE_SECONDS = 1.0

DEFAULT_VCENTER_PORT = 443
DEFAULT_POLICY_FILE = "/policy/policy.yaml"

MAX_POLICY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max policy file

# Input validation patterns
VALID_HOST_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9.\-]{0,252}$"


@dataclass(frozen=True)
class RunOptions:
    """Per-run execution knobs."""

    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    failure_threshold: float = DEFAULT_FAILURE_THRESHOLD
    concurrency_cap: int = DEFAULT_CONCURRENCY_CAP
    write_timeout_seconds: float = DEFAULT_WRITE_TIMEOUT_SECONDS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    dry_run: bool = False
    pacing: PacingConfig = field(default_factory=PacingConfig)

    def __post_init__(self) -> None:
        errors = validate_run_options(
            batch_size=self.batch_size,
            max_retries=self.max_retries,
            failure_threshold=self.failure_threshold,
            concurrency_cap=self.concurrency_cap,
        )
        if self.write_timeout_seconds <= 0:
            errors.append("WRITE_TIMEOUT_SECONDS must be positive")
        if self.backoff_base_seconds < 0:
            errors.append("BACKOFF_BASE_SECONDS cannot be negative")
        if errors:
            raise ConfigurationError(
                "Run options validation failed:\n  - " + "\n  - ".join(errors)
            )


def validate_run_options(
    batch_size: int,
    max_retries: int,
    failure_threshold: float,
    concurrency_cap: int,
) -> list[str]:
    """Check the run knobs against their bounds and list every problem."""
    errors: list[str] = []
    if not MIN_BATCH_SIZE_LIMIT <= batch_size <= MAX_BATCH_SIZE_LIMIT:
        errors.append(
            f"BATCH_SIZE must be between {MIN_BATCH_SIZE_LIMIT} and {MAX_BATCH_SIZE_LIMIT}"
        )
    if not 0 <= max_retries <= MAX_RETRIES_LIMIT:
        errors.append(f"MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")
    if not 0.0 < failure_threshold <= 1.0:
        errors.append("FAILURE_THRESHOLD must be greater than 0 and at most 1")
    if not 1 <= concurrency_cap <= MAX_CONCURRENCY_CAP:
        errors.append(f"CONCURRENCY_CAP must be between 1 and {MAX_CONCURRENCY_CAP}")
    return errors


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    vcenter_hosts: tuple[str, ...]
    username: str
    password: str = field(repr=False)

    # Connection
    port: int = DEFAULT_VCENTER_PORT
    verify_ssl: bool = True

    # Paths
    policy_file: Path = field(default_factory=lambda: Path(DEFAULT_POLICY_FILE))

    # Execution
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    failure_threshold: float = DEFAULT_FAILURE_THRESHOLD
    concurrency_cap: int = DEFAULT_CONCURRENCY_CAP
    write_timeout_seconds: float = DEFAULT_WRITE_TIMEOUT_SECONDS

    # Pacing
    min_batch_size: int = DEFAULT_MIN_BATCH_SIZE
    shrink_factor: float = DEFAULT_SHRINK_FACTOR
    pacing_delay_seconds: float = DEFAULT_PACING_DELAY_SECONDS

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.vcenter_hosts:
            errors.append("VCENTER_HOSTS is required")
        for host in self.vcenter_hosts:
            if not re.match(VALID_HOST_PATTERN, host):
                errors.append(f"VCENTER_HOSTS entry is not a valid host name: {host}")
        if len(set(self.vcenter_hosts)) != len(self.vcenter_hosts):
            errors.append("VCENTER_HOSTS contains duplicate entries")

        if not self.username:
            errors.append("VCENTER_USER is required")
        if not self.password:
            errors.append("VCENTER_PASSWORD is required")

        if not 1 <= self.port <= 65535:
            errors.append(f"VCENTER_PORT must be between 1 and 65535: {self.port}")

        errors.extend(
            validate_run_options(
                batch_size=self.batch_size,
                max_retries=self.max_retries,
                failure_threshold=self.failure_threshold,
                concurrency_cap=self.concurrency_cap,
            )
        )

        if self.write_timeout_seconds <= 0:
            errors.append("WRITE_TIMEOUT_SECONDS must be positive")

        if self.min_batch_size < 1:
            errors.append("MIN_BATCH_SIZE must be at least 1")
        if not 0.0 < self.shrink_factor < 1.0:
            errors.append("SHRINK_FACTOR must be between 0 and 1 (exclusive)")
        if not 0 <= self.pacing_delay_seconds <= MAX_PACING_DELAY_SECONDS:
            errors.append(
                f"PACING_DELAY_SECONDS must be between 0 and {MAX_PACING_DELAY_SECONDS:.0f}"
            )

        if not self.policy_file.exists():
            errors.append(f"Policy file does not exist: {self.policy_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def run_options(self) -> RunOptions:
        """Build the per-run options from this configuration."""
        return RunOptions(
            batch_size=self.batch_size,
            max_retries=self.max_retries,
            failure_threshold=self.failure_threshold,
            concurrency_cap=self.concurrency_cap,
            write_timeout_seconds=self.write_timeout_seconds,
            dry_run=self.dry_run,
            pacing=PacingConfig(
                min_batch_size=self.min_batch_size,
                shrink_factor=self.shrink_factor,
                delay_seconds=self.pacing_delay_seconds,
            ),
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VCENTER_HOSTS: Comma-separated vCenter hosts, reconciled in order
            VCENTER_USER: vCenter user name
            VCENTER_PASSWORD: vCenter password
            VCENTER_PORT: vCenter port (default: 443)
            VCENTER_VERIFY_SSL: Verify TLS certificates (default: true)
            POLICY_FILE: Path to the YAML policy (default: /policy/policy.yaml)
            BATCH_SIZE: Initial batch size (default: 25)
            MAX_RETRIES: Retries for transient failures (default: 3)
            FAILURE_THRESHOLD: Failed fraction that halts a run (default: 0.2)
            CONCURRENCY_CAP: Max concurrent writes per batch (default: 10)
            WRITE_TIMEOUT_SECONDS: Timeout for one endpoint call (default: 120)
            MIN_BATCH_SIZE: Floor for adaptive shrinking (default: 5)
            SHRINK_FACTOR: Multiplier applied on shrink (default: 0.5)
            PACING_DELAY_SECONDS: Inter-batch delay under load (default: 30)
            DRY_RUN: If "true", only compute the change-set (default: false)
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

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        return cls(
            vcenter_hosts=get_list("VCENTER_HOSTS"),
            username=os.environ.get("VCENTER_USER", ""),
            password=os.environ.get("VCENTER_PASSWORD", ""),
            port=get_int("VCENTER_PORT", DEFAULT_VCENTER_PORT),
            verify_ssl=get_bool("VCENTER_VERIFY_SSL", True),
            policy_file=Path(os.environ.get("POLICY_FILE", DEFAULT_POLICY_FILE)),
            batch_size=get_int("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            max_retries=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            failure_threshold=get_float("FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD),
            concurrency_cap=get_int("CONCURRENCY_CAP", DEFAULT_CONCURRENCY_CAP),
            write_timeout_seconds=get_float(
                "WRITE_TIMEOUT_SECONDS", DEFAULT_WRITE_TIMEOUT_SECONDS
            ),
            min_batch_size=get_int("MIN_BATCH_SIZE", DEFAULT_MIN_BATCH_SIZE),
            shrink_factor=get_float("SHRINK_FACTOR", DEFAULT_SHRINK_FACTOR),
            pacing_delay_seconds=get_float(
                "PACING_DELAY_SECONDS", DEFAULT_PACING_DELAY_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
        )
