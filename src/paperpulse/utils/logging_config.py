# src/paperpulse/utils/logging_config.py
"""
Centralized file logging for PaperPulse workers and admin routes.

Usage:
    from paperpulse.utils.logging_config import Logger, LogFiles

    Logger.info("Fetched 120 papers for cs.AI", file=LogFiles.INGEST)
    Logger.error("Batch 12 failed to start", file=LogFiles.ERROR)

    # Default file (logs/paperpulse.log)
    Logger.info("General message")

Configuration via environment variables:
    PAPERPULSE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
    PAPERPULSE_LOG_DIR: Base directory for log files (default: logs/)
    PAPERPULSE_LOG_MAX_BYTES: Max size per log file in bytes (default: 10MB)
    PAPERPULSE_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
"""

from __future__ import annotations

import inspect
import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional

import yaml

# Trace id of the job or request currently being handled (async-safe)
_trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_FILE = "paperpulse.log"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5
DEFAULT_FORMAT = "{timestamp} [{level}] [{trace_id}] {filename}:{lineno} - {message}"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_CONFIG_FILE = Path(__file__).parent / "log_config.yaml"

_DEFAULT_FILES: Dict[str, str] = {
    "ingest": "ingest/ingest.log",
    "backfill": "ingest/backfill.log",
    "analysis": "analysis/analysis.log",
    "batch": "analysis/batch.log",
    "queue": "queue/queue.log",
    "config": "config/runtime.log",
    "api": "api/api.log",
    "error": "errors/error.log",
}

_std_logger = logging.getLogger(__name__)


class _LogFilesMeta(type):
    """Allows attribute access like LogFiles.INGEST."""

    def __getattr__(cls, name: str) -> str:
        files = cls._files_map()
        key = name.lower()
        if key in files:
            return files[key]
        raise AttributeError(f"Log file '{name}' not found in config")


class LogFiles(metaclass=_LogFilesMeta):
    """
    Log file paths declared in src/paperpulse/utils/log_config.yaml.

    New files are added under the 'files' section and read back as
    LogFiles.<NAME> (case-insensitive).
    """

    _files: Optional[Dict[str, str]] = None

    @classmethod
    def _files_map(cls) -> Dict[str, str]:
        if cls._files is None:
            files = dict(_DEFAULT_FILES)
            if LOG_CONFIG_FILE.exists():
                try:
                    with open(LOG_CONFIG_FILE, "r", encoding="utf-8") as f:
                        config = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as exc:
                    _std_logger.warning("Could not read %s: %s", LOG_CONFIG_FILE, exc)
                    config = {}
                files.update({str(k).lower(): str(v) for k, v in (config.get("files") or {}).items()})
            cls._files = files
        return cls._files

    @classmethod
    def get(cls, name: str) -> str:
        """Get log file path by name, falling back to <name>/<name>.log."""
        return cls._files_map().get(name.lower(), f"{name}/{name}.log")


LOG_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}

_config: Dict[str, object] = {}
_handlers: Dict[str, RotatingFileHandler] = {}


def _env_config() -> Dict[str, object]:
    return {
        "level": os.environ.get("PAPERPULSE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        "base_dir": os.environ.get("PAPERPULSE_LOG_DIR", DEFAULT_LOG_DIR),
        "max_bytes": int(os.environ.get("PAPERPULSE_LOG_MAX_BYTES", DEFAULT_MAX_BYTES)),
        "backup_count": int(os.environ.get("PAPERPULSE_LOG_BACKUP_COUNT", DEFAULT_BACKUP_COUNT)),
    }


def _handler_for(file: Optional[str]) -> RotatingFileHandler:
    base_dir = Path(str(_config.get("base_dir", DEFAULT_LOG_DIR)))
    path = base_dir / (file or DEFAULT_LOG_FILE)
    key = str(path)
    handler = _handlers.get(key)
    if handler is None:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=key,
            maxBytes=int(_config.get("max_bytes", DEFAULT_MAX_BYTES)),
            backupCount=int(_config.get("backup_count", DEFAULT_BACKUP_COUNT)),
            encoding="utf-8",
        )
        _handlers[key] = handler
    return handler


def _write(level: str, message: str, file: Optional[str]) -> None:
    if not _config:
        Logger.init()
    threshold = LOG_LEVELS.get(str(_config.get("level", DEFAULT_LOG_LEVEL)), 20)
    if LOG_LEVELS.get(level, 0) < threshold:
        return

    # Two frames up: the public Logger method, then its caller
    frame = inspect.currentframe()
    caller = frame.f_back.f_back if frame and frame.f_back else None
    filename = os.path.basename(caller.f_code.co_filename) if caller else "unknown"
    lineno = caller.f_lineno if caller else 0

    line = DEFAULT_FORMAT.format(
        timestamp=datetime.now().strftime(DEFAULT_DATE_FORMAT),
        level=level,
        trace_id=_trace_id_var.get() or "-",
        filename=filename,
        lineno=lineno,
        message=message,
    )
    record = logging.LogRecord(
        name="paperpulse.files",
        level=LOG_LEVELS[level],
        pathname=filename,
        lineno=lineno,
        msg=line,
        args=None,
        exc_info=None,
    )
    _handler_for(file).emit(record)


class Logger:
    """
    Static logger writing to per-concern rotating files.

    Auto-initializes from the environment on first use; call Logger.init()
    explicitly to override settings (tests point base_dir at tmp_path).
    """

    @staticmethod
    def init(
        level: Optional[str] = None,
        base_dir: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        _config.clear()
        _config.update(_env_config())
        if level:
            _config["level"] = level.upper()
        if base_dir:
            _config["base_dir"] = base_dir
        if max_bytes:
            _config["max_bytes"] = max_bytes
        if backup_count:
            _config["backup_count"] = backup_count
        Logger.close()

    @staticmethod
    def debug(message: str, file: Optional[str] = None) -> None:
        _write("DEBUG", message, file)

    @staticmethod
    def info(message: str, file: Optional[str] = None) -> None:
        _write("INFO", message, file)

    @staticmethod
    def warning(message: str, file: Optional[str] = None) -> None:
        _write("WARNING", message, file)

    @staticmethod
    def error(message: str, file: Optional[str] = None) -> None:
        _write("ERROR", message, file)

    @staticmethod
    def critical(message: str, file: Optional[str] = None) -> None:
        _write("CRITICAL", message, file)

    @staticmethod
    def close() -> None:
        """Close all file handlers."""
        for handler in _handlers.values():
            handler.close()
        _handlers.clear()


# ============================================================================
# Trace ID Management
# ============================================================================


def generate_trace_id(prefix: str = "req") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set the trace id for the current context, generating one if needed."""
    tid = trace_id or generate_trace_id()
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> Optional[str]:
    return _trace_id_var.get()


def clear_trace_id() -> None:
    _trace_id_var.set(None)


@contextmanager
def job_trace(job_id: Optional[str]) -> Iterator[str]:
    """Bind a job id as trace id for the duration of a queue job."""
    token = _trace_id_var.set(job_id or generate_trace_id("job"))
    try:
        yield _trace_id_var.get() or ""
    finally:
        _trace_id_var.reset(token)
