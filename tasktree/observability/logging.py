"""
Structured Logging

JSON-structured logging with run/job context propagation.

Design decisions:
- Structured JSON output
- Log level filtering
- Context enrichment (run_id, session_key, job_id) via contextvars
- Shared handlers so configure_logging() affects every module logger
- Logging failures never affect the main flow
"""

import contextvars
import json
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, TextIO

from tasktree.core.types import utc_now


class LogLevel(IntEnum):
    """Log levels matching Python's logging module."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: "str | int | LogLevel") -> "LogLevel":
        if isinstance(value, str):
            return cls[value.upper()]
        return cls(value)


_CONTEXT_FIELDS = ("run_id", "root_run_id", "session_key", "job_id", "worker")


@dataclass
class LogRecord:
    """A structured log record."""

    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    logger_name: str = "tasktree"

    data: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)

    error: str | None = None
    error_type: str | None = None
    stack_trace: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": LogLevel(self.level).name,
            "logger": self.logger_name,
            "message": self.message,
        }

        for key in _CONTEXT_FIELDS:
            if self.context.get(key):
                result[key] = self.context[key]

        if self.data:
            result["data"] = self.data

        if self.error:
            result["error"] = {
                "message": self.error,
                "type": self.error_type,
                "stack_trace": self.stack_trace,
            }

        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class LogHandler:
    """Base class for log handlers."""

    def __init__(self, level: LogLevel = LogLevel.DEBUG):
        self.level = level

    def should_handle(self, level: LogLevel) -> bool:
        return level >= self.level

    def handle(self, record: LogRecord) -> None:
        pass


class ConsoleHandler(LogHandler):
    """Outputs logs to console."""

    def __init__(
        self,
        level: LogLevel = LogLevel.DEBUG,
        stream: TextIO | None = None,
        json_output: bool = True,
    ):
        super().__init__(level)
        self.stream = stream or sys.stderr
        self.json_output = json_output

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        if self.json_output:
            output = record.to_json()
        else:
            output = (
                f"[{record.timestamp.strftime('%Y-%m-%d %H:%M:%S')}] "
                f"{LogLevel(record.level).name:8s} {record.logger_name}: {record.message}"
            )
            ctx = {k: v for k, v in record.context.items() if k in _CONTEXT_FIELDS and v}
            if ctx:
                output += f" | {ctx}"
            if record.data:
                output += f" | {record.data}"
            if record.error:
                output += f" | ERROR: {record.error}"

        print(output, file=self.stream)


class FileHandler(LogHandler):
    """Appends JSON lines to a file."""

    def __init__(self, filename: str, level: LogLevel = LogLevel.DEBUG):
        super().__init__(level)
        self.filename = filename
        self._file: TextIO | None = None

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        if self._file is None:
            self._file = open(self.filename, "a", encoding="utf-8")

        self._file.write(record.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None


class BufferHandler(LogHandler):
    """Buffers logs in memory for testing."""

    def __init__(self, level: LogLevel = LogLevel.DEBUG, max_records: int = 1000):
        super().__init__(level)
        self.records: list[LogRecord] = []
        self._max_records = max_records

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        self.records.append(record)

        if len(self.records) > self._max_records:
            self.records = self.records[-self._max_records :]

    def messages(self, level: LogLevel | None = None) -> list[str]:
        return [r.message for r in self.records if level is None or r.level == level]

    def clear(self) -> None:
        self.records.clear()


_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "tasktree_log_context", default={}
)


class _LoggingDefaults:
    """Process-wide level and handlers shared by loggers created via get_logger()."""

    def __init__(self) -> None:
        self.level = LogLevel.INFO
        self.handlers: list[LogHandler] = [ConsoleHandler()]


_defaults = _LoggingDefaults()


class StructuredLogger:
    """
    Main structured logging interface.

    Loggers without explicit handlers follow the process defaults,
    so configure_logging() reaches loggers created at import time.
    """

    def __init__(
        self,
        name: str = "tasktree",
        level: LogLevel | None = None,
        handlers: list[LogHandler] | None = None,
    ):
        self.name = name
        self._level = level
        self._handlers = handlers

    @property
    def level(self) -> LogLevel:
        return self._level if self._level is not None else _defaults.level

    @property
    def handlers(self) -> list[LogHandler]:
        return self._handlers if self._handlers is not None else _defaults.handlers

    def _log(
        self,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
        error: BaseException | None = None,
        **extra: Any,
    ) -> None:
        if level < self.level:
            return

        record = LogRecord(
            level=level,
            message=message,
            logger_name=self.name,
            data={**(data or {}), **extra},
            context=dict(_log_context.get()),
        )

        if error is not None:
            record.error = str(error)
            record.error_type = type(error).__name__
            record.stack_trace = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        for handler in self.handlers:
            try:
                handler.handle(record)
            except Exception:
                pass

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: BaseException | None = None, **kwargs: Any) -> None:
        self._log(LogLevel.ERROR, message, error=error, **kwargs)

    def critical(self, message: str, error: BaseException | None = None, **kwargs: Any) -> None:
        self._log(LogLevel.CRITICAL, message, error=error, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log the exception currently being handled at ERROR level."""
        self.error(message, error=sys.exc_info()[1], **kwargs)

    @staticmethod
    @contextmanager
    def context(**kwargs: Any):
        """
        Context manager for adding context to logs.

        Usage:
            with logger.context(run_id=run.run_id, session_key=key):
                logger.info("Turn submitted")
        """
        current = _log_context.get()
        token = _log_context.set({**current, **kwargs})
        try:
            yield
        finally:
            _log_context.reset(token)

    @staticmethod
    def current_context() -> dict[str, Any]:
        return dict(_log_context.get())

    @staticmethod
    def clear_context() -> None:
        _log_context.set({})


def get_logger(name: str = "tasktree") -> StructuredLogger:
    """Get a logger that follows the process-wide configuration."""
    return StructuredLogger(name=name)


def configure_logging(
    level: "LogLevel | str" = LogLevel.INFO,
    json_output: bool = True,
    log_file: str | None = None,
    extra_handlers: list[LogHandler] | None = None,
) -> StructuredLogger:
    """Configure the process-wide defaults and return the root logger."""
    resolved = LogLevel.parse(level)
    handlers: list[LogHandler] = [ConsoleHandler(level=resolved, json_output=json_output)]

    if log_file:
        handlers.append(FileHandler(log_file, level=resolved))
    if extra_handlers:
        handlers.extend(extra_handlers)

    _defaults.level = resolved
    _defaults.handlers = handlers
    return get_logger()
