#!/usr/bin/env python3
"""
Lamdera WebSocket Logging Configuration

Centralized logging setup for consistent formatting across the project.
Supports both development (colored console) and production (plain console) modes,
with an optional file handler enabled through LAMDERA_LOG_FILE.

Usage:
    from lamdera_wire.log import get_logger

    logger = get_logger(__name__)
    logger.info("Connecting...")
    logger.warning("Leader elected", extra={"connection_id": "conn-1"})
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import os


# ========================================
#           LOGGING FORMATTERS
# ========================================

class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        # Wire context passed through `extra`
        wire_context = []

        if getattr(record, 'session_id', None):
            wire_context.append(f"sid={record.session_id[:8]}...")
        if getattr(record, 'connection_id', None):
            wire_context.append(f"conn={record.connection_id}")
        if getattr(record, 'msg_type', None):
            wire_context.append(f"msg={record.msg_type}")

        message = super().format(record)
        if wire_context:
            return f"[{' '.join(wire_context)}] {message}"
        return message


class ColoredFormatter(GenericFormatter):
    """Colored formatter for console output, with the same wire context prefix"""

    # ANSI Color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()

def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    logger.setLevel(_get_log_level(level))

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    _add_console_handler(logger, colored=_is_development())
    if os.getenv('LAMDERA_LOG_FILE'):
        _add_file_handler(logger, Path(os.environ['LAMDERA_LOG_FILE']))

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    if level:
        return getattr(logging, level.upper(), logging.INFO)

    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stdout)

    if colored and _supports_color():
        formatter = ColoredFormatter(fmt=fmt, datefmt='%H:%M:%S')
    else:
        formatter = GenericFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S')

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger, log_file: Path) -> None:
    """Add file handler for persistent logging"""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)

    formatter = GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stdout must be a terminal
    if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    if sys.platform == "win32":
        return (
            os.getenv("ANSICON") is not None
            or os.getenv("WT_SESSION") is not None
            or os.getenv("TERM_PROGRAM") == "vscode"
        )

    return True


# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def set_level(level: str) -> None:
    """Apply a level to every logger handed out by get_logger."""
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(_get_log_level(level))


def truncate(value: Any, max_chars: int = 0) -> Any:
    """Shorten strings longer than max_chars; 0 disables truncation."""
    if max_chars <= 0 or not isinstance(value, str):
        return value
    if len(value) > max_chars:
        return value[:max_chars] + '...'
    return value


def log_wire_message(logger: logging.Logger, level: str, message: str,
                     envelope: Optional[Dict[str, Any]] = None,
                     max_chars: int = 0,
                     **context: Any) -> None:
    """
    Log a transport envelope with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        envelope: raw envelope dict for automatic context extraction
        max_chars: truncate the rendered envelope to this many characters
        **context: Additional context fields

    Example:
        log_wire_message(logger, "debug", "Sending", envelope=raw, connection_id="c1")
    """
    log_func = getattr(logger, level.lower())
    if not logger.isEnabledFor(getattr(logging, level.upper())):
        return

    extra_context: Dict[str, Any] = {}

    if envelope:
        extra_context.update({
            'msg_type': envelope.get('t'),
            'session_id': envelope.get('s'),
            'connection_id': envelope.get('c'),
        })
        message = f"{message} {truncate(str(envelope), max_chars)}"

    extra_context.update(context)

    log_func(message, extra=extra_context)
