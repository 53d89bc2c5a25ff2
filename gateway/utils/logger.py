"""Gateway log pipeline.

Every module logs through ``get_logger(__name__)`` and emits one event per
line on stdout: JSON in deployments, coloured key=value pairs when
JSON_LOGS=false. Entries written while a request is in flight are stamped with
its ULID, which RequestContextMiddleware (gateway/utils/context.py) binds via
``set_request_id`` and releases via ``clear_request_id``.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp the in-flight request's ULID; entries outside a request stay bare."""
    current = request_id_var.get()
    if current:
        event_dict["request_id"] = current
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = time.time()
    return event_dict


def _enrichers() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(json_output: bool) -> Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """(Re)build the structlog pipeline.

    ``log_level`` is a stdlib level name; events below it are dropped before
    any processor runs. Called once at import with defaults and again by
    gateway/main.py with LOG_LEVEL / JSON_LOGS.
    """
    threshold = getattr(logging, log_level.upper())
    structlog.configure(
        processors=[*_enrichers(), _renderer(json_output)],
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "gateway") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def clear_request_id() -> None:
    request_id_var.set(None)


configure_logging()
