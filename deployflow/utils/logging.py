"""Structured logging configuration using structlog.

Deployment runs bind ``project_id`` and ``deployment_id`` for their whole
duration, so every service log line a run produces can be traced back to it.
"""
import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping

import structlog
from structlog.types import Processor

from deployflow.config import settings

# Client libraries that log every HTTP round trip at DEBUG/INFO
NOISY_LOGGERS = ("docker", "urllib3", "botocore", "boto3", "s3transfer", "git.cmd")

URL_CREDENTIALS = re.compile(r"(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*://)[^/@\s]+@")


def redact_url(text: str) -> str:
    """Mask credentials embedded in any URL inside ``text``."""
    return URL_CREDENTIALS.sub(r"\g<scheme>***@", text)


def redact_credentials(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Processor masking URL credentials in every string field of an event."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "@" in value:
            event_dict[key] = redact_url(value)
    return event_dict


def setup_logging() -> None:
    """Configure structured logging for the application."""
    if settings.log_level:
        log_level = logging.getLevelName(settings.log_level.upper())
    else:
        log_level = logging.DEBUG if settings.debug else logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_credentials,
    ]

    if settings.is_production:
        shared_processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


@contextmanager
def deployment_context(project_id: int, deployment_id: str) -> Iterator[None]:
    """Bind a deployment run's ids to every log line emitted inside the block.

    Values bound by an enclosing block are restored on exit.
    """
    with structlog.contextvars.bound_contextvars(project_id=project_id, deployment_id=deployment_id):
        yield
