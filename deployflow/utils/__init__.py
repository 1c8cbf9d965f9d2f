"""Utilities package."""
from deployflow.utils.logging import deployment_context, get_logger, redact_url, setup_logging
from deployflow.utils.polling import poll_until
from deployflow.utils.security import create_access_token, decode_access_token

__all__ = [
    "deployment_context",
    "get_logger",
    "redact_url",
    "setup_logging",
    "poll_until",
    "create_access_token",
    "decode_access_token",
]
