import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, fmt: str = "json") -> None:
    """Configure the structlog/standard logging bridge.

    ``fmt`` selects the final renderer: ``json`` for machine-readable worker
    logs, ``console`` for humans running the CLI locally.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    renderer: Any
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_worker_context(owner_id: str, environment: str) -> None:
    """Attach worker identity to every log line emitted from this context."""

    structlog.contextvars.bind_contextvars(owner_id=owner_id, environment=environment)
