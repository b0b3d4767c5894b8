"""
Logging setup for applications embedding livegraph.

Library modules only create loggers with logging.getLogger(__name__) and
attach structured context with extra={...}; handlers are installed here.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import StoreSettings


def setup_logging(settings: StoreSettings) -> None:
    """Configure root logging based on settings.

    Args:
        settings: Store settings (log_level, log_format)
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
