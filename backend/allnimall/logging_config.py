"""structlog configuration module."""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from allnimall.constants import SERVICE_NAME

# Chatty at INFO on every Supabase and Midtrans round trip
NOISY_LOGGERS = ("httpx", "httpcore", "hpack")


def add_service_fields(service: str, environment: str):
    """Build a processor stamping every event with the deployment identity.

    The request middleware clears context vars per request, so these live in
    the processor chain instead.
    """

    def processor(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]):
        event_dict.setdefault("service", service)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def setup_logging(
    debug: bool = False,
    *,
    service: str = SERVICE_NAME,
    environment: str = "development",
) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation, with library HTTP
    chatter raised to WARNING.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        service: Value of the ``service`` field on every event.
        environment: Value of the ``environment`` field on every event.
    """

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, method, path (from middleware)
        add_service_fields(service, environment),
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if debug else logging.INFO,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO if debug else logging.WARNING)
