"""
Structured logging setup

Every event carries the service and environment it came from. Request
handlers bind `request_id`, `method` and `path` and the ledger binds
`conversation_id` through structlog's contextvars, so events raised deep
in an append or a verification can be traced back to their request.
"""
import logging
import sys
import uuid
from typing import Optional

import structlog

from bloodchain.config import Settings

SERVICE_NAME = "bloodchain-api"
REQUEST_ID_HEADER = "X-Request-ID"


def add_service_context(settings: Settings):
    """Processor stamping `service` and `environment` onto every event"""
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", settings.environment)
        return event_dict
    return processor


def bind_request_context(method: str, path: str, request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request; returns its request id"""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=method, path=path)
    return request_id


def setup_logging(settings: Settings):
    """
    Configure structlog for the application.

    JSON lines in production, console rendering everywhere else. Events
    below `settings.log_level` are dropped before any processor runs.
    """
    level = logging.getLevelName(settings.log_level.upper())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        add_service_context(settings),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if settings.environment == "production":
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=settings.environment == "production",
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
