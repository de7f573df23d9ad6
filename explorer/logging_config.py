"""Logging setup shared by every explorer module."""

import logging
import sys

ROOT_LOGGER = "opening_explorer"

_LOGGING_CONFIGURED = False


def setup_logging(name: str | None = None, level: int = logging.INFO) -> logging.Logger:
    """
    Return a logger under the ``opening_explorer`` hierarchy.

    The stderr handler is attached once, on first call. Module loggers are
    children of the package root so that ``set_level`` affects all of them.
    """
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger(ROOT_LOGGER)
    if not _LOGGING_CONFIGURED:
        root_logger.setLevel(level)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root_logger.addHandler(handler)
        root_logger.propagate = False
        _LOGGING_CONFIGURED = True

    if not name or name == ROOT_LOGGER:
        return root_logger
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def set_level(level: int) -> None:
    logging.getLogger(ROOT_LOGGER).setLevel(level)
