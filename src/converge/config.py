"""Configuration management with validation.

Bounds are enforced at configuration load time so that a reconciliation
pass never starts with an unusable concurrency limit or retry budget.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONCURRENCY_LIMIT = 4
MIN_CONCURRENCY_LIMIT = 1
MAX_CONCURRENCY_LIMIT = 64

DEFAULT_MAX_ATTEMPTS = 5
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 20

DEFAULT_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 300.0
BACKOFF_JITTER_RATIO = 0.2

DEFAULT_API_TIMEOUT_SECONDS = 60
MAX_API_TIMEOUT_SECONDS = 900

DEFAULT_WATCH_INTERVAL_SECONDS = 300
MIN_WATCH_INTERVAL_SECONDS = 10
MAX_WATCH_INTERVAL_SECONDS = 3600

# Refuse passes that would touch more objects than this without review
DEFAULT_MAX_CHANGES_PER_PASS = 200

# Input limits
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per manifest file
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024

# Target names become file names in the state directory
VALID_TARGET_PATTERN = r"^[a-z0-9][a-z0-9._-]{0,62}$"


@dataclass(frozen=True)
class Config:
    """Reconciler configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Reconciliation target identity (keys the persisted state)
    target: str = "default"

    # Paths
    manifests_dir: Path = field(default_factory=lambda: Path("manifests"))
    state_dir: Path = field(default_factory=lambda: Path(".converge"))

    # Cluster access
    kubeconfig: str | None = None
    kube_context: str | None = None

    # Executor
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    api_timeout_seconds: int = DEFAULT_API_TIMEOUT_SECONDS

    # Retry budget
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS

    # Operator mode
    watch_interval_seconds: int = DEFAULT_WATCH_INTERVAL_SECONDS

    # Safety
    max_changes_per_pass: int = DEFAULT_MAX_CHANGES_PER_PASS

    # Diff tuning
    ignore_rules_file: Path | None = None
    enable_default_rules: bool = True

    # Variable overrides (name -> raw string value)
    variables: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not re.match(VALID_TARGET_PATTERN, self.target):
            errors.append(f"target must match pattern {VALID_TARGET_PATTERN}: {self.target}")

        if not (MIN_CONCURRENCY_LIMIT <= self.concurrency_limit <= MAX_CONCURRENCY_LIMIT):
            errors.append(
                f"concurrency limit must be between {MIN_CONCURRENCY_LIMIT} "
                f"and {MAX_CONCURRENCY_LIMIT}"
            )

        if not (MIN_MAX_ATTEMPTS <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"max attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )

        if not (0 <= self.backoff_seconds <= MAX_BACKOFF_SECONDS):
            errors.append(f"backoff must be between 0 and {MAX_BACKOFF_SECONDS} seconds")

        if not (1 <= self.api_timeout_seconds <= MAX_API_TIMEOUT_SECONDS):
            errors.append(f"API timeout must be between 1 and {MAX_API_TIMEOUT_SECONDS} seconds")

        if not (
            MIN_WATCH_INTERVAL_SECONDS
            <= self.watch_interval_seconds
            <= MAX_WATCH_INTERVAL_SECONDS
        ):
            errors.append(
                f"watch interval must be between {MIN_WATCH_INTERVAL_SECONDS} "
                f"and {MAX_WATCH_INTERVAL_SECONDS} seconds"
            )

        if self.max_changes_per_pass < 1:
            errors.append("max changes per pass must be at least 1")

        if self.ignore_rules_file is not None and not self.ignore_rules_file.is_file():
            errors.append(f"Ignore rules file does not exist: {self.ignore_rules_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def state_file(self) -> Path:
        """Path of the persisted observed-state snapshot for this target."""
        return self.state_dir / f"{self.target}.state.json"

    @property
    def audit_file(self) -> Path:
        """Path of the append-only run history for this target."""
        return self.state_dir / f"{self.target}.runs.jsonl"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_TARGET: Reconciliation target name (default: default)
            CONVERGE_MANIFESTS_DIR: Directory of YAML declarations (default: manifests)
            CONVERGE_STATE_DIR: Directory for persisted state (default: .converge)
            KUBECONFIG: Path to kubeconfig (default: client library lookup)
            CONVERGE_KUBE_CONTEXT: kubeconfig context to use
            CONVERGE_CONCURRENCY: Max in-flight actions (default: 4)
            CONVERGE_API_TIMEOUT: Per-call timeout in seconds (default: 60)
            CONVERGE_MAX_ATTEMPTS: Passes before giving up (default: 5)
            CONVERGE_BACKOFF: Base backoff in seconds (default: 2)
            CONVERGE_WATCH_INTERVAL: Seconds between runs in watch mode (default: 300)
            CONVERGE_MAX_CHANGES: Max actionable changes per pass (default: 200)
            CONVERGE_IGNORE_RULES_FILE: YAML file with extra ignore rules
            CONVERGE_DEFAULT_RULES: If "false", disable built-in diff rules
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

        rules_file = os.environ.get("CONVERGE_IGNORE_RULES_FILE")

        return cls(
            target=os.environ.get("CONVERGE_TARGET", "default"),
            manifests_dir=Path(os.environ.get("CONVERGE_MANIFESTS_DIR", "manifests")),
            state_dir=Path(os.environ.get("CONVERGE_STATE_DIR", ".converge")),
            kubeconfig=os.environ.get("KUBECONFIG") or None,
            kube_context=os.environ.get("CONVERGE_KUBE_CONTEXT") or None,
            concurrency_limit=get_int("CONVERGE_CONCURRENCY", DEFAULT_CONCURRENCY_LIMIT),
            api_timeout_seconds=get_int("CONVERGE_API_TIMEOUT", DEFAULT_API_TIMEOUT_SECONDS),
            max_attempts=get_int("CONVERGE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_seconds=get_float("CONVERGE_BACKOFF", DEFAULT_BACKOFF_SECONDS),
            watch_interval_seconds=get_int(
                "CONVERGE_WATCH_INTERVAL", DEFAULT_WATCH_INTERVAL_SECONDS
            ),
            max_changes_per_pass=get_int("CONVERGE_MAX_CHANGES", DEFAULT_MAX_CHANGES_PER_PASS),
            ignore_rules_file=Path(rules_file) if rules_file else None,
            enable_default_rules=get_bool("CONVERGE_DEFAULT_RULES", True),
        )
