"""
Logging Configuration Module

Provides structured logging with JSON formatting for production and
human-readable formatting for development. Failure logs carry chat and
operation identifiers through the record's ``extra`` fields.
"""

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from context_memory.config import settings

CONTEXT_FIELDS = ("chat_id", "operation", "context_id", "duration_ms")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for development environment."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        color = self.COLORS.get(record.levelname, self.RESET)
        levelname = f"{color}{record.levelname}{self.RESET}"

        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        base_msg = f"{timestamp} | {levelname:18} | {record.name} | {record.getMessage()}"

        extras = []
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            if field == "duration_ms":
                extras.append(f"duration={value}ms")
            else:
                extras.append(f"{field}={value}")

        if extras:
            base_msg += f" [{', '.join(extras)}]"

        if record.exc_info:
            base_msg += f"\n{self.formatException(record.exc_info)}"

        return base_msg


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for the process."""
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.is_production:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ColoredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)
    logging.getLogger("transformers").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name, typically __name__ from the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class OperationLogger:
    """Context manager for operation-scoped logging with timing."""

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        chat_id: str | None = None,
        level: int = logging.DEBUG,
        **extra: Any,
    ) -> None:
        self.logger = logger
        self.operation = operation
        self.chat_id = chat_id
        self.level = level
        self.extra = extra
        self.start_time: float | None = None
        self.duration_ms: float = 0.0

    def _context(self, **kwargs: Any) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "chat_id": self.chat_id,
            **self.extra,
            **kwargs,
        }

    def __enter__(self) -> "OperationLogger":
        self.start_time = time.perf_counter()
        self.logger.log(
            self.level,
            f"Starting {self.operation}",
            extra=self._context(),
        )
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.duration_ms = (time.perf_counter() - (self.start_time or 0)) * 1000

        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed: {exc_val}",
                extra=self._context(duration_ms=round(self.duration_ms, 2)),
                exc_info=True,
            )
        else:
            self.logger.log(
                self.level,
                f"Completed {self.operation}",
                extra=self._context(duration_ms=round(self.duration_ms, 2)),
            )

    def log(self, level: int, message: str, **kwargs: Any) -> None:
        """Log a message with operation context."""
        self.logger.log(level, message, extra=self._context(**kwargs))
