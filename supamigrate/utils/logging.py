"""
Logging setup for Supamigrate.

This module provides console logging through rich, optional rotating log
files, structured JSON output, and a filter that keeps every registered
credential out of all log sinks.
"""

import json
import logging
import logging.handlers
import sys
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "supamigrate"
REDACTED = "***"


class LogCategory(str, Enum):
    """Categories for structured logging."""
    SYSTEM = "system"
    MIGRATION = "migration"
    DATABASE = "database"
    TRANSFER = "transfer"
    FUNCTIONS = "functions"
    BACKUP = "backup"
    CLI = "cli"


@dataclass
class LogEntry:
    """Structured log entry with metadata."""
    timestamp: datetime = field(default_factory=datetime.now)
    level: str = "INFO"
    category: LogCategory = LogCategory.SYSTEM
    logger: str = ROOT_LOGGER_NAME
    message: str = ""
    phase: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['category'] = self.category.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'taskName', 'message', 'asctime',
])


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        category = getattr(record, 'category', LogCategory.SYSTEM)
        if not isinstance(category, LogCategory):
            try:
                category = LogCategory(category)
            except ValueError:
                category = LogCategory.SYSTEM

        entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created),
            level=record.levelname,
            category=category,
            logger=record.name,
            message=record.getMessage(),
            phase=getattr(record, 'phase', None),
            metadata={
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            }
        )

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS and key not in ('category', 'phase'):
                entry.metadata[key] = value

        if record.exc_info:
            entry.metadata['exception'] = self.formatException(record.exc_info)

        return entry.to_json()


class SecretRedactingFilter(logging.Filter):
    """
    Replace registered secret values in log records.

    The filter renders the message once, redacts it, and stores the result
    back on the record so every downstream formatter sees the redacted text.
    """

    def __init__(self):
        super().__init__()
        self._secrets: set = set()
        self._lock = threading.Lock()

    def add_secrets(self, values: Iterable[Optional[str]]) -> None:
        with self._lock:
            for value in values:
                # very short values would redact ordinary words
                if value and len(value) >= 4:
                    self._secrets.add(value)

    def clear(self) -> None:
        with self._lock:
            self._secrets.clear()

    def redact(self, text: str) -> str:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.redact(message)
        record.args = None
        if record.exc_info:
            record.exc_text = self.redact(logging.Formatter().formatException(record.exc_info))
            record.exc_info = None
        return True


_redacting_filter = SecretRedactingFilter()


def register_secrets(values: Iterable[Optional[str]]) -> None:
    """Register credential values that must never appear in any log output."""
    _redacting_filter.add_secrets(values)


def redact(text: str) -> str:
    """Redact registered secrets from arbitrary text, e.g. subprocess stderr."""
    return _redacting_filter.redact(text)


def get_redacting_filter() -> SecretRedactingFilter:
    return _redacting_filter


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    log_rotation: bool = True,
    max_log_size: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5,
    console: Optional[Console] = None
) -> logging.Logger:
    """
    Set up logging configuration for Supamigrate.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        rich_console: Whether to use the rich console handler
        structured_logging: Whether to use structured JSON logging
        log_rotation: Whether to enable log rotation
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep
        console: Console to attach the rich handler to (stderr by default)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if rich_console and not structured_logging:
        console_handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        if structured_logging:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))

    console_handler.addFilter(_redacting_filter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if log_rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_log_size,
                backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(log_file)

        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
        file_handler.addFilter(_redacting_filter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
