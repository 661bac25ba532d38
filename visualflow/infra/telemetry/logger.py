"""
Structured Logger
=================

Structured logging for the orchestration engine with automatic injection of
the execution currently being processed.

Design:
  - JSON-structured output for machine parsing
  - Human-readable fallback for development
  - Automatic context injection (execution_id, pipeline_id, stage_id)
  - Event-style calls: ``logger.info("stage_completed", stage_id=..., duration_ms=...)``

Context variables are task-local, so concurrent executions sharing one event
loop never see each other's ids.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_execution_id: ContextVar[str | None] = ContextVar("execution_id", default=None)
_pipeline_id: ContextVar[str | None] = ContextVar("pipeline_id", default=None)
_stage_id: ContextVar[str | None] = ContextVar("stage_id", default=None)


def bind_execution_context(
    *,
    execution_id: str | None = None,
    pipeline_id: str | None = None,
    stage_id: str | None = None,
) -> None:
    """Set execution-scoped context for log enrichment."""
    if execution_id is not None:
        _execution_id.set(execution_id)
    if pipeline_id is not None:
        _pipeline_id.set(pipeline_id)
    if stage_id is not None:
        _stage_id.set(stage_id)


def clear_execution_context() -> None:
    _execution_id.set(None)
    _pipeline_id.set(None)
    _stage_id.set(None)


def current_execution_context() -> dict[str, str]:
    ctx_fields = {
        "execution_id": _execution_id.get(None),
        "pipeline_id": _pipeline_id.get(None),
        "stage_id": _stage_id.get(None),
    }
    return {k: v for k, v in ctx_fields.items() if v is not None}


# ── Structured Formatter ──────────────────────────────────────────

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})
_JSON_SAFE = (str, int, float, bool, type(None))


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter with automatic context injection."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "pid": self._pid,
        }

        context = current_execution_context()
        if context:
            entry["context"] = context

        extras: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED_ATTRS:
                continue
            extras[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        if extras:
            entry["data"] = extras

        if record.exc_info and self._include_tb:
            entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
                if record.exc_info[2]
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        # Human-readable fallback
        exec_id = context.get("execution_id", "-")[:8]
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | "
            f"{exec_id:8s} | {entry['logger']}:{entry['line']} | "
            f"{entry['message']}"
        )
        return f"{line} {fields}" if fields else line


# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Wrapper around stdlib logger providing structured logging helpers.

    Usage:
        log = StructuredLogger("visualflow.orchestration.executor")
        log.info("stage_completed", stage_id="initial-analysis", duration_ms=42.3)
        log.warning("service_attempt_failed", attempt=1, max_attempts=3)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if exc:
            self._logger.error(event, extra=kwargs, exc_info=exc, stacklevel=2)
        else:
            self._log(logging.ERROR, event, **kwargs)

    def exception(self, event: str, **kwargs: Any) -> None:
        self._logger.exception(event, extra=kwargs, stacklevel=2)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound context fields."""
        return BoundLogger(self, context)


class BoundLogger:
    """Logger with pre-bound context fields."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def _merged(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {**self._context, **kwargs}

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent.debug(event, **self._merged(kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent.info(event, **self._merged(kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent.warning(event, **self._merged(kwargs))

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent.error(event, exc=exc, **self._merged(kwargs))


# ── Setup ──────────────────────────────────────────────────────────

_initialized = False


def setup_logging(
    *,
    level: str = "INFO",
    json_output: bool | None = None,
    log_dir: str | None = None,
    environment: str = "development",
) -> None:
    """
    Initialize the logging system. Call once at application startup.

    Args:
        level: Root log level
        json_output: Force JSON output. Auto-detects if None (JSON outside development)
        log_dir: Directory for log files. None = stdout only.
        environment: Deployment environment used for auto-detection
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    if json_output is None:
        json_output = environment != "development"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    console.setLevel(logging.DEBUG)
    root.addHandler(console)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "visualflow.log",
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter(json_output=True))
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "errors.log",
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=3,
            encoding="utf-8",
        )
        error_handler.setFormatter(StructuredFormatter(json_output=True))
        error_handler.setLevel(logging.ERROR)
        root.addHandler(error_handler)

    # Reduce noise from third-party libraries
    for noisy in ("httpx", "httpcore", "asyncio", "aiosqlite", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
