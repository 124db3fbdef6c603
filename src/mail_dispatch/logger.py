"""Logging utilities for the mail dispatcher.

Handlers, level and format are configured once with ``logging.basicConfig()``
by the entry points (``main.py``, ``mail_dispatch.server``, the CLI). Modules
only ask for a named logger.

Example:
    Typical usage in a module::

        from mail_dispatch.logger import get_logger

        logger = get_logger("Worker")
        logger.info("Job processed")
"""

import logging
import os

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str = "MailDispatch") -> logging.Logger:
    """Retrieve a logger instance by name.

    Args:
        name: The logger name. Defaults to "MailDispatch".

    Returns:
        A ``logging.Logger`` bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for an entry point.

    Args:
        level: Level name; falls back to ``MDS_LOG_LEVEL`` and then ``INFO``.
    """
    level_name = (level or os.getenv("MDS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=DEFAULT_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
