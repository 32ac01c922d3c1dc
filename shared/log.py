#!/usr/bin/env python3
"""
obs-websocket client logging configuration

Centralized logging setup for consistent formatting across the project.
Supports both development (console) and production (file) modes.

Usage:
    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.info("Connecting...")
    logger.warning("Ignoring Hello", extra={"state": "READY", "op": 0})
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

class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output"""

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
        # Other handlers share this record; colour a copy
        record = logging.makeLogRecord(record.__dict__)
        if record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.COLORS['RESET']}"

        return super().format(record)


class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        # Protocol context, if the caller passed any
        context = []

        if hasattr(record, 'state'):
            context.append(f"state={record.state}")
        if hasattr(record, 'op'):
            context.append(f"op={record.op}")
        if hasattr(record, 'request_type'):
            context.append(f"req={record.request_type}")
        if hasattr(record, 'request_id'):
            context.append(f"id={str(record.request_id)[:8]}...")

        if context:
            # Prefix a copy so the next handler sees the original message
            message = record.getMessage()
            record = logging.makeLogRecord(record.__dict__)
            record.msg = f"[{' '.join(context)}] {message}"
            record.args = None

        return super().format(record)


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

    Examples:
        logger = get_logger(__name__)
        logger.info("Connection ready")

        # With context
        logger.error("Request failed", extra={
            "request_type": "StartRecord",
            "request_id": "0f1c...",
        })
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    log_level = _get_log_level(level)
    logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if _is_development():
        _add_file_handler(logger)
        _add_console_handler(logger, colored=True)
    else:
        # Production: Clean console + file logging
        _add_console_handler(logger, colored=False)
        _add_file_handler(logger)

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    if level:
        return getattr(logging, level.upper(), logging.INFO)

    env_level = os.getenv('OBSWS_LOG_LEVEL')
    if env_level:
        return getattr(logging, env_level.upper(), logging.INFO)

    # Default based on environment
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('PYTHON_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt='[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stderr)

    if colored and _supports_color():
        formatter = ColoredFormatter(
            fmt=fmt,
            datefmt='%H:%M:%S'
        )
    else:
        formatter = GenericFormatter(
            fmt=fmt,
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger) -> None:
    """Add file handler for production logging"""

    log_dir = Path(os.getenv('OBSWS_LOG_DIR', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "obsws.log"
    handler = logging.FileHandler(log_file, encoding="utf-8")

    formatter = GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stderr must be a terminal
    if not (hasattr(sys.stderr, "isatty") and sys.stderr.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    if sys.platform == "win32":
        # On modern Windows terminals, ANSI colors are supported
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode" or "WindowsTerminal" in os.getenv("TERM", "")

    return True

# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def log_envelope(logger: logging.Logger, level: str, message: str,
                 envelope: Optional[Dict[str, Any]] = None,
                 **context: Any) -> None:
    """
    Log a protocol message with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        envelope: envelope dict ({"op": ..., "d": {...}}) for automatic context extraction
        **context: Additional context fields

    Example:
        log_envelope(logger, "debug", "Sending", envelope=env.to_dict())
    """

    extra_context: Dict[str, Any] = {}

    if envelope:
        extra_context['op'] = envelope.get('op')
        data = envelope.get('d')
        if isinstance(data, dict):
            if 'requestType' in data:
                extra_context['request_type'] = data['requestType']
            if 'requestId' in data:
                extra_context['request_id'] = data['requestId']

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
