"""Logging entry points for the engagement service."""

from __future__ import annotations

from typing import TYPE_CHECKING

from service_commons.logging import get_named_logger
from service_commons.logging import setup_logging as _setup_logging

if TYPE_CHECKING:
    import logging

SERVICE_LOGGER_NAME = "engagement_service"


def setup_logging(level: str, log_directory: str | None) -> None:
    """Configure JSON logging under the service namespace."""
    _setup_logging(level, SERVICE_LOGGER_NAME, log_directory)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger nested under the service namespace."""
    return get_named_logger(SERVICE_LOGGER_NAME, name)
