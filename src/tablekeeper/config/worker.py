"""Worker configuration derived from application settings."""

from __future__ import annotations

import os
import uuid
from dataclasses import asdict, dataclass
from typing import Any

from croniter import croniter

from tablekeeper.config.settings import Settings
from tablekeeper.core.errors import ConfigurationError

# croniter takes seconds as the sixth field
ENVIRONMENT_SCHEDULES: dict[str, str] = {
    "development": "* * * * * */30",
    "testing": "*/5 * * * * 0",
    "production": "*/15 * * * * 0",
}
DEFAULT_SCHEDULE = "*/10 * * * * 0"
MONITORING_SCHEDULE = "*/10 * * * * 0"


@dataclass
class WorkerConfig:
    schedule: str
    environment: str
    required_tables: list[str]
    lock_file_path: str
    status_file_path: str
    lock_timeout: float = 1800.0
    lock_retry_interval: float = 5.0
    max_retries: int = 5
    retry_delay: float = 2.0
    backoff_multiplier: float = 2.0
    monitoring_schedule: str = MONITORING_SCHEDULE

    # Feature flags
    dry_run: bool = False
    skip_validation: bool = False
    force_recreate: bool = False
    run_once: bool = True

    # Deletion flags, mutated only under the orchestrator's lock
    deletion_scheduled: bool = False
    deletion_requested: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def schedule_for_environment(environment: str) -> str:
    """Frequent in development, sparse in production."""
    return ENVIRONMENT_SCHEDULES.get(environment, DEFAULT_SCHEDULE)


def generate_owner_id() -> str:
    hostname = os.environ.get("HOSTNAME") or "localhost"
    return f"worker-{hostname}-{uuid.uuid4().hex[:8]}"


def build_worker_config(settings: Settings) -> WorkerConfig:
    """Build and validate the worker configuration for this process."""
    env = settings.environment
    config = WorkerConfig(
        schedule=settings.schedule or schedule_for_environment(env),
        environment=env,
        required_tables=list(settings.required_tables),
        lock_file_path=settings.lock_file_path or f"/tmp/tablekeeper-infrastructure-{env}.lock",
        status_file_path=settings.status_file_path or f"/tmp/tablekeeper-status-{env}.json",
        lock_timeout=settings.lock_timeout_seconds,
        lock_retry_interval=settings.lock_retry_interval_seconds,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        backoff_multiplier=settings.backoff_multiplier,
        dry_run=settings.dry_run,
        skip_validation=settings.skip_validation,
        force_recreate=settings.force_recreate,
        run_once=settings.run_once,
    )
    validate_worker_config(config)
    return config


def validate_worker_config(config: WorkerConfig) -> None:
    """Raise ConfigurationError for invalid values or conflicting flags."""
    if not config.environment:
        raise ConfigurationError("environment is required")
    if config.lock_timeout <= 0:
        raise ConfigurationError("lock timeout must be positive")
    if config.lock_retry_interval < 0:
        raise ConfigurationError("lock retry interval cannot be negative")
    if config.max_retries < 0:
        raise ConfigurationError("max retries cannot be negative")
    if config.retry_delay <= 0:
        raise ConfigurationError("retry delay must be positive")
    if config.backoff_multiplier <= 1.0:
        raise ConfigurationError("backoff multiplier must be greater than 1.0")
    if not config.required_tables:
        raise ConfigurationError("at least one required table must be specified")
    if not config.lock_file_path:
        raise ConfigurationError("lock file path is required")
    if not config.status_file_path:
        raise ConfigurationError("status file path is required")
    for expression in (config.schedule, config.monitoring_schedule):
        if not croniter.is_valid(expression):
            raise ConfigurationError(
                f"invalid schedule '{expression}'", details={"schedule": expression}
            )
    if config.force_recreate and config.skip_validation:
        raise ConfigurationError("force_recreate and skip_validation cannot both be true")
