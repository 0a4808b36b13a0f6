"""Logging for rtc-nego and the WebRTC stack underneath it.

Package loggers ("rtcnego.*") log at the configured level. The aiortc and
aioice loggers share the same handlers but stay at WARNING unless verbose
mode is on, since their ICE checks and DTLS traces flood a normal call log.
"""

import logging
from pathlib import Path

from rtcnego.config import Config

PACKAGE_LOGGER = "rtcnego"
STACK_LOGGERS = ("aiortc", "aioice")

# 2025-01-27 10:30:45 [INFO] rtcnego.coordinator: message
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handlers: list[logging.Handler] = []


def _managed_loggers() -> list[logging.Logger]:
    return [logging.getLogger(name) for name in (PACKAGE_LOGGER, *STACK_LOGGERS)]


def setup_logging(config: Config, verbose: bool = False) -> logging.Logger:
    """Attach handlers to the package and stack loggers. Idempotent.

    Args:
        config: Supplies log_level and the optional log_file.
        verbose: Log everything at DEBUG, stack loggers included.

    Returns:
        The package logger.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if _handlers:
        return package_logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _handlers.append(logging.FileHandler(log_path))
    _handlers.append(logging.StreamHandler())
    for handler in _handlers:
        handler.setFormatter(formatter)

    if verbose:
        package_level = stack_level = logging.DEBUG
    else:
        package_level = getattr(logging, config.log_level.upper(), logging.INFO)
        stack_level = logging.WARNING

    for logger in _managed_loggers():
        logger.setLevel(package_level if logger is package_logger else stack_level)
        logger.handlers.clear()
        for handler in _handlers:
            logger.addHandler(handler)
        logger.propagate = False

    return package_logger


def reset_logging() -> None:
    """Detach and close handlers, restoring propagation. Used by tests."""
    for logger in _managed_loggers():
        for handler in _handlers:
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
    for handler in _handlers:
        handler.close()
    _handlers.clear()
