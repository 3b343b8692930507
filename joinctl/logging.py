"""Logging configuration for the joinctl package."""
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config

# K3S secure tokens look like K10<ca-hash>::server:<password>
TOKEN_PATTERN = re.compile(r"K[0-9a-f]{2}[0-9a-zA-Z]{8,}(?:::[\w:]+)?")


def mask_token(token: Optional[str], keep: int = 10) -> str:
    """Return a printable prefix of a token, never the whole credential."""
    if not token:
        return "<none>"
    return f"{token[:keep]}..."


class TokenRedactingFilter(logging.Filter):
    """Mask anything that looks like a join token in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if TOKEN_PATTERN.search(message):
            record.msg = TOKEN_PATTERN.sub(lambda m: mask_token(m.group(0)), message)
            record.args = ()
        return True


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Set up a logger with the specified name and log level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handler.addFilter(TokenRedactingFilter())
        logger.addHandler(handler)

    return logger


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
) -> None:
    """Configure the root and ``k3s`` loggers.

    Args:
        level: Log level name
        log_file: Optional path of a rotating log file
        max_size_mb: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format=Config.LOG_FORMAT)

    redactor = TokenRedactingFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, TokenRedactingFilter) for f in handler.filters):
            handler.addFilter(redactor)

    k3s_logger = logging.getLogger("k3s")
    k3s_logger.setLevel(log_level)

    if log_file:
        path = Path(log_file).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count
        )
        file_handler.setFormatter(logging.Formatter(Config.LOG_FORMAT))
        file_handler.addFilter(redactor)
        k3s_logger.addHandler(file_handler)

    # Disable debug logging for noisy libraries
    if log_level > logging.DEBUG:
        logging.getLogger('paramiko').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)
