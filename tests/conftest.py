"""Root test configuration."""

import logging

import pytest
import structlog

from tablekeeper.config.settings import Settings
from tablekeeper.config.worker import WorkerConfig, build_worker_config
from tablekeeper.store.memory import InMemoryTableStore
from tablekeeper.worker.provisioner import ProvisionerTimings

FAST_TIMINGS = ProvisionerTimings(
    attempts=3,
    retry_delay=0.0,
    active_poll_interval=0.01,
    active_timeout=0.5,
    heal_active_timeout=0.5,
    heal_poll_interval=0.01,
    delete_poll_interval=0.01,
    delete_timeout=0.5,
)


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Two-table testing environment with files under tmp_path."""
    return Settings(
        _env_file=None,
        environment="testing",
        table_prefix="test",
        required_tables=["users", "role"],
        table_store_backend="memory",
        lock_file_path=str(tmp_path / "infra.lock"),
        status_file_path=str(tmp_path / "status.json"),
        retry_delay_seconds=0.01,
        lock_retry_interval_seconds=0.01,
    )


@pytest.fixture
def worker_config(settings) -> WorkerConfig:
    return build_worker_config(settings)


@pytest.fixture
def store() -> InMemoryTableStore:
    return InMemoryTableStore()


@pytest.fixture
def fast_timings() -> ProvisionerTimings:
    return FAST_TIMINGS
