"""Structured logging configuration for Toolgate services.

- structlog with JSON (production) or console (development) rendering
- Context propagation via contextvars: service and version globally, caller
  and catalog per request through ``request_context``
- Credential-looking fields are masked before any renderer sees them
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import Processor

REDACTED = "***"

# Event keys whose values must never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {"secret", "secrets", "secret_value", "env", "environment", "token", "authorization", "password"}
)

# Library loggers kept at WARNING regardless of the service level.
QUIET_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore", "asyncio")


def _redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask values of keys that may carry credentials.

    Mappings keep their keys so the log still shows *which* variables were
    set. Bearer credentials are masked under any key.
    """
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = {k: REDACTED for k in value} if isinstance(value, dict) else REDACTED
        elif isinstance(value, str) and value.startswith("Bearer "):
            event_dict[key] = f"Bearer {REDACTED}"
    return event_dict


def _filter_health_checks(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Drop DEBUG noise from the health endpoint."""
    if method_name == "debug" and "/health" in event_dict.get("path", ""):
        raise structlog.DropEvent
    return event_dict


def _render_processors(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(
    service_name: str,
    service_version: str = "0.1.0",
    log_level: str = "INFO",
    log_format: str = "console",
) -> None:
    """Configure structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "gateway-service")
        service_version: Service version (e.g., "0.1.0")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        log_format: "json" for production, "console" for development
    """
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        _filter_health_checks,
        _redact_sensitive_fields,
        *_render_processors(log_format),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, version=service_version)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, optionally bound to a module name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


@contextmanager
def request_context(**kwargs: Any) -> Iterator[None]:
    """Bind context variables for the duration of one request.

    Example:
        with request_context(caller="planner", catalog="infra"):
            ...
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
