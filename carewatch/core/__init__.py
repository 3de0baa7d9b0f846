"""Core infrastructure: configuration, logging, errors, metrics and Redis access."""

from .config import Settings, get_settings
from .logging import get_logger, sanitize_error, setup_logging

__all__ = [
    "Settings",
    "get_logger",
    "get_settings",
    "sanitize_error",
    "setup_logging",
]
