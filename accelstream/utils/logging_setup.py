"""Logging setup for AccelStream with file and console output"""

import logging
import logging.handlers
import platform
import re
import sys
from pathlib import Path

import psutil

from accelstream.config import LoggingConfig

# user:password@ in proxy and source URLs
_CREDENTIALS_RE = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s:]+:[^/@\s]*@", re.IGNORECASE)


class CredentialRedactingFilter(logging.Filter):
    """Masks URL credentials that slip into log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _CREDENTIALS_RE.sub(r"\g<scheme>***:***@", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def parse_size(value: str, default: int = 10 * 1024 * 1024) -> int:
    """Parse a size string such as "10MB" into bytes."""
    size = value.strip().upper()
    for suffix, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if size.endswith(suffix) and size[: -len(suffix)].strip().isdigit():
            return int(size[: -len(suffix)]) * factor
    if size.isdigit():
        return int(size)
    return default


def setup_logging(
    settings: LoggingConfig | None = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    log_level: str | None = None,
) -> logging.Logger:
    """
    Set up logging for the AccelStream service.

    This configures logging to write to:
    - Console (stdout)
    - File with rotation

    Args:
        settings: Logging section of the configuration
        log_to_console: Whether to log to console
        log_to_file: Whether to log to file
        log_level: Overrides settings.level

    Returns:
        Configured root logger
    """
    settings = settings or LoggingConfig()
    level_name = (log_level or settings.level).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear any existing handlers to avoid duplicates
    root_logger.handlers.clear()

    redactor = CredentialRedactingFilter()

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
        )
        console_handler.addFilter(redactor)
        root_logger.addHandler(console_handler)

    log_file_path = Path(settings.file)
    if log_to_file:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=parse_size(settings.max_size),
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(settings.format, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(redactor)
        root_logger.addHandler(file_handler)

    root_logger.info(f"AccelStream logging initialized - Level: {level_name}")
    if log_to_file:
        root_logger.info(
            f"Log file: {log_file_path} (max {settings.max_size}, {settings.backup_count} backups)"
        )

    return root_logger


def log_system_info() -> None:
    """Log host information relevant to transcoding at startup"""
    logger = logging.getLogger(__name__)
    memory = psutil.virtual_memory()
    logger.info(f"Python {platform.python_version()} on {platform.platform()}")
    logger.info(
        f"CPU: {psutil.cpu_count(logical=True)} logical cores, "
        f"memory: {memory.total // (1024 * 1024)} MB total, {memory.available // (1024 * 1024)} MB available"
    )
