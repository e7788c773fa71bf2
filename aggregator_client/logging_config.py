"""
Structured Logging Configuration

Provides:
- Step/signature context for correlating log lines with scenario steps
- JSON formatting for machine parsing (file output)
- Human-readable console output
- Log rotation support
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union


step_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("step", default=None)
signature_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "signature", default=None
)


def short(value: Any, width: int = 16) -> str:
    """Truncate an address or signature for display."""
    text = str(value)
    if len(text) <= width:
        return text
    return f"{text[:width]}..."


@contextmanager
def step_context(step: str, signature: Optional[str] = None) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``step``."""
    tokens = [(step_var, step_var.set(step))]
    if signature:
        tokens.append((signature_var, signature_var.set(signature)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def bind_signature(signature: str) -> None:
    """Attach a signature to the current context once it is known."""
    signature_var.set(signature)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_traceback: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        step = step_var.get()
        signature = signature_var.get()
        if step:
            log_data["step"] = step
        if signature:
            log_data["signature"] = signature

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.colors = {
            "DEBUG": "\033[36m",
            "INFO": "\033[32m",
            "WARNING": "\033[33m",
            "ERROR": "\033[31m",
            "CRITICAL": "\033[35m",
            "RESET": "\033[0m",
        }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        level = record.levelname
        if self.use_color and sys.stdout.isatty():
            level = f"{self.colors.get(level, '')}{level}{self.colors['RESET']}"

        parts = [f"[{timestamp}]", f"[{level}]", f"[{record.name}]", record.getMessage()]

        context_parts = []
        step = step_var.get()
        signature = signature_var.get()
        if step:
            context_parts.append(f"step={step}")
        if signature:
            context_parts.append(f"sig={short(signature, 12)}")
        if context_parts:
            parts.append(f"[{', '.join(context_parts)}]")

        if record.exc_info:
            parts.append("\n" + "".join(traceback.format_exception(*record.exc_info)))

        return " ".join(parts)


def setup_logging(
    level: Union[str, int] = logging.INFO,
    json_format: bool = False,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure logging for the CLI.

    Args:
        level: Logging level name or number
        json_format: Emit JSON on the console instead of the structured text format
        log_file: Optional path of a rotating JSON log file
        max_bytes: Max size of the log file before rotation
        backup_count: Number of rotated files to keep
        extra_fields: Additional fields included in every JSON record

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if json_format:
        console_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
    else:
        console_handler.setFormatter(StructuredFormatter(use_color=True))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter(extra_fields=extra_fields))
        root_logger.addHandler(file_handler)

    # httpx logs every RPC call at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root_logger
