"""
Logging configuration for BrowserPilot.
Provides structured logging with proper formatting.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Log directory
LOG_DIR = Path(os.getenv("LOG_DIR", "./logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Library modules log under their package names (logging.getLogger(__name__))
PACKAGE_LOGGERS = ("core", "automations", "api")


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(name: str = "browserpilot") -> logging.Logger:
    """
    Setup and return a configured logger.

    The same handlers are attached to the package loggers so records from
    core/ and automations/ land in the same console and files.

    Args:
        name: Logger name (default: browserpilot)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(level)

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_format = ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    # File handler with rotation
    file_handler = RotatingFileHandler(
        LOG_DIR / f"{name}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    # Error file handler (errors and above)
    error_handler = RotatingFileHandler(
        LOG_DIR / f"{name}_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)
    logger.addHandler(error_handler)

    for package in PACKAGE_LOGGERS:
        package_logger = logging.getLogger(package)
        if package_logger.handlers:
            continue
        package_logger.setLevel(level)
        package_logger.propagate = False
        for handler in logger.handlers:
            package_logger.addHandler(handler)

    return logger


# Create default logger
logger = setup_logging()


def log_request(method: str, path: str, status_code: Optional[int] = None, duration_ms: Optional[float] = None):
    """Log an HTTP request."""
    logger.info(f"HTTP {method} {path} -> {status_code} ({duration_ms:.2f}ms)" if duration_ms else f"HTTP {method} {path}")


def log_task_event(task_id: str, event: str, details: Optional[str] = None):
    """Log a task lifecycle event."""
    logger.debug(f"Task [{task_id}] {event}: {details}" if details else f"Task [{task_id}] {event}")
