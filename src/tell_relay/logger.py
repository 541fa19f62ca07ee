# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the tell relay.

Handlers, level and format are configured once by the entry point
(:mod:`tell_relay.cli`) through :func:`configure_logging`; modules only ask
for a named logger.

Example:
    Typical usage in a module::

        from tell_relay.logger import get_logger

        logger = get_logger(__name__)
        logger.info("Stream connected")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "TellRelay") -> logging.Logger:
    """Retrieve a logger instance.

    This function does not configure handlers or formatters; that
    responsibility lies with the application entry point.

    Args:
        name: The logger name. Defaults to "TellRelay".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for the process.

    Args:
        level: Level name (DEBUG, INFO, ...). Falls back to the
            ``TELL_RELAY_LOG_LEVEL`` environment variable, then INFO.
    """
    level_name = (level or os.getenv("TELL_RELAY_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
