"""Logging for the controller process.

Handlers are attached to the ``clusterops`` package logger only, so a host
application embedding the reconciler keeps its own root configuration.
Calling ``setup_logging`` again replaces the handlers it installed earlier.
"""

import logging
import sys
from pathlib import Path

from clusterops.exceptions import ConfigurationError

PACKAGE_LOGGER = "clusterops"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Loggers that report every store mutation and queue hand-off
CHATTY_LOGGERS = ("clusterops.store", "clusterops.controller")

_HANDLER_MARK = "_clusterops_handler"


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ConfigurationError(
            f"Unknown log level: {level}", "Use DEBUG, INFO, WARNING, ERROR or CRITICAL"
        )
    return value


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARK, True)
    return handler


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Configure the package logger.

    The console only shows warnings unless ``verbose`` is set; the optional
    log file receives every record the package logger lets through.

    Args:
        level: Level of the package logger
        log_file: Optional path to a log file, parent directories are created
        verbose: Log DEBUG to the console, including store and queue chatter

    Raises:
        ConfigurationError: If ``level`` is not a logging level name
    """
    package_level = logging.DEBUG if verbose else _parse_level(level)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(package_level)
    for handler in list(package_logger.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            package_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = _mark(logging.StreamHandler(sys.stderr))
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = _mark(logging.FileHandler(log_file))
        except OSError as e:
            package_logger.warning(f"Failed to open log file {log_file}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)

    chatty_level = logging.DEBUG if verbose else max(package_level, logging.INFO)
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
