"""
Configuration for the provisioning worker.

- Settings: pydantic-settings model (TABLEKEEPER_* environment variables, .env)
- WorkerConfig: validated per-process worker configuration
"""

from tablekeeper.config.settings import Settings, get_settings
from tablekeeper.config.worker import (
    WorkerConfig,
    build_worker_config,
    generate_owner_id,
    schedule_for_environment,
    validate_worker_config,
)

__all__ = [
    "Settings",
    "get_settings",
    "WorkerConfig",
    "build_worker_config",
    "generate_owner_id",
    "schedule_for_environment",
    "validate_worker_config",
]
