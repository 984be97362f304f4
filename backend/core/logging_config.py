"""Structured logging configuration using structlog.

Every entry carries the service name and environment, plus whatever
workflow context is bound for the current task: the engine binds
``instance_id`` (and ``organization_id`` when known) while it advances
an instance, so handler, service and route logs emitted underneath are
attributed to that instance without passing it around.

JSON logs by default; colored console output in development or with
``LOG_FORMAT=text``.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from app.config import get_settings


def add_service_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Processor: tag entries with the service name and environment."""
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


@contextmanager
def workflow_log_context(instance_id: str, organization_id: Optional[str] = None) -> Iterator[None]:
    """Bind workflow identifiers to every log entry emitted inside the block."""
    values = {"instance_id": instance_id}
    if organization_id:
        values["organization_id"] = organization_id
    with structlog.contextvars.bound_contextvars(**values):
        yield


def setup_logging() -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    settings = get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    # HTTP email transport client
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
