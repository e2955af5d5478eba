"""
Structured logging system without print statements.
Provides consistent, timestamped, level-based logging safe for worker threads.
"""
import sys
import threading
from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, name: Optional[str], default: "LogLevel" = None) -> "LogLevel":
        """Resolve a level from its (case-insensitive) name."""
        if not name:
            return default or cls.INFO
        try:
            return cls[name.strip().upper()]
        except KeyError:
            return default or cls.INFO


_LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.SUCCESS: 1,
    LogLevel.WARNING: 2,
    LogLevel.ERROR: 3,
}

# One lock for every logger instance: they all share stdout/stderr
_WRITE_LOCK = threading.Lock()


class StructuredLogger:
    """
    Professional logging system with structured output.

    Each line carries the emitting thread name so that the output of
    concurrent import tasks can be told apart. Child loggers created with
    bind() add their context to every message.
    """

    def __init__(
        self,
        min_level: LogLevel = LogLevel.INFO,
        show_timestamp: bool = True,
        show_thread: bool = True,
        context: Optional[Dict[str, object]] = None,
        stdout=None,
        stderr=None,
    ):
        self.min_level = min_level
        self.show_timestamp = show_timestamp
        self.show_thread = show_thread
        self.context = dict(context or {})
        self._stdout = stdout
        self._stderr = stderr

    def bind(self, **context) -> "StructuredLogger":
        """Return a child logger that always reports the given context."""
        merged = dict(self.context)
        merged.update(context)
        return StructuredLogger(
            min_level=self.min_level,
            show_timestamp=self.show_timestamp,
            show_thread=self.show_thread,
            context=merged,
            stdout=self._stdout,
            stderr=self._stderr,
        )

    def is_enabled_for(self, level: LogLevel) -> bool:
        return _LEVEL_ORDER[level] >= _LEVEL_ORDER[self.min_level]

    def _format_message(self, level: LogLevel, message: str, details: Optional[dict] = None) -> str:
        """Format log message with consistent structure."""
        parts = []

        if self.show_timestamp:
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            parts.append(f"[{timestamp}]")

        parts.append(f"[{level.value}]")

        if self.show_thread:
            parts.append(f"[{threading.current_thread().name}]")

        parts.append(message)

        merged = dict(self.context)
        if details:
            merged.update(details)
        if merged:
            detail_strs = [f"{k}={v}" for k, v in merged.items()]
            parts.append(f"({', '.join(detail_strs)})")

        return " ".join(parts)

    def _write(self, level: LogLevel, message: str, details: Optional[dict] = None):
        """Write log message to appropriate stream."""
        if not self.is_enabled_for(level):
            return

        formatted = self._format_message(level, message, details)

        # Errors and warnings go to stderr, everything else to stdout
        if level in (LogLevel.ERROR, LogLevel.WARNING):
            stream = self._stderr or sys.stderr
        else:
            stream = self._stdout or sys.stdout

        with _WRITE_LOCK:
            stream.write(formatted + "\n")
            stream.flush()

    def debug(self, message: str, **details):
        self._write(LogLevel.DEBUG, message, details or None)

    def info(self, message: str, **details):
        self._write(LogLevel.INFO, message, details or None)

    def success(self, message: str, **details):
        self._write(LogLevel.SUCCESS, message, details or None)

    def warning(self, message: str, **details):
        self._write(LogLevel.WARNING, message, details or None)

    def error(self, message: str, **details):
        self._write(LogLevel.ERROR, message, details or None)

    def section(self, title: str):
        """Log section header."""
        separator = "=" * 60
        self._write(LogLevel.INFO, separator)
        self._write(LogLevel.INFO, title)
        self._write(LogLevel.INFO, separator)


# Global logger instance
_default_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create default logger instance."""
    global _default_logger
    if _default_logger is None:
        _default_logger = StructuredLogger()
    return _default_logger


def set_logger(logger: StructuredLogger):
    """Set custom logger instance."""
    global _default_logger
    _default_logger = logger
