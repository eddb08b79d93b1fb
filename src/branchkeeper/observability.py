from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .config_schema import LoggingConfig


LOGGER_NAME = "branchkeeper"

# Environment variables for configuration
ENV_LOG_DIR = "BRANCHKEEPER_LOG_DIR"
ENV_LOG_LEVEL = "BRANCHKEEPER_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "BRANCHKEEPER_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "BRANCHKEEPER_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "BRANCHKEEPER_LOG_DISABLE_FILE"

# Defaults
DEFAULT_LOG_DIR = Path.home() / ".branchkeeper" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

_logger_initialized = False
_session_start: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get_log_level() -> int:
    """Get log level from environment, defaulting to INFO."""
    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def _get_log_file_path() -> Optional[Path]:
    """Get the log file path, creating directories if needed.

    Returns None if file logging is disabled via BRANCHKEEPER_LOG_DISABLE_FILE=1.
    """
    global _session_start
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"):
        return None

    log_dir = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)

    if _session_start is None:
        _session_start = _utcnow().strftime("%Y-%m-%d_%H%M%S")
    # One file per run: branchkeeper_2024-01-15_143022.log
    return log_dir / f"branchkeeper_{_session_start}.log"


def _install_handlers(
    logger: logging.Logger,
    log_level: int,
    log_file: Optional[Path],
    max_bytes: int,
    backup_count: int,
) -> None:
    logger.handlers.clear()
    logger.setLevel(log_level)

    formatter = logging.Formatter(
        "[%(levelname)s %(asctime)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    if log_file:
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)

    # Warnings and above are mirrored to stderr
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(max(log_level, logging.WARNING))
    logger.addHandler(stream_handler)


def _get_logger() -> logging.Logger:
    """Get or initialize the branchkeeper logger.

    By default, logs to ~/.branchkeeper/logs/branchkeeper_<session>.log

    Configuration via environment variables:
    - BRANCHKEEPER_LOG_DIR: Directory for log files (default: ~/.branchkeeper/logs/)
    - BRANCHKEEPER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    - BRANCHKEEPER_LOG_MAX_BYTES: Max log file size before rotation (default: 10MB)
    - BRANCHKEEPER_LOG_BACKUP_COUNT: Number of backup files to keep (default: 5)
    - BRANCHKEEPER_LOG_DISABLE_FILE: Set to 1 to disable file logging (stderr only)
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    if not _logger_initialized:
        _logger_initialized = True
        _install_handlers(
            logger,
            _get_log_level(),
            _get_log_file_path(),
            int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES)),
            int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT)),
        )

    return logger


def configure_logging(settings: "LoggingConfig") -> logging.Logger:
    """Re-initialize the logger from a loaded config's ``logging`` section.

    ``load_config`` has already folded the BRANCHKEEPER_LOG_* variables into
    ``settings``, so the environment is not consulted again here.
    """
    global _logger_initialized, _session_start
    logger = logging.getLogger(LOGGER_NAME)

    log_file: Optional[Path] = None
    if not settings.disable_file:
        log_dir = Path(settings.dir) if settings.dir else DEFAULT_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        if _session_start is None:
            _session_start = _utcnow().strftime("%Y-%m-%d_%H%M%S")
        log_file = log_dir / f"branchkeeper_{_session_start}.log"

    _install_handlers(
        logger,
        getattr(logging, settings.level, logging.INFO),
        log_file,
        settings.max_bytes,
        settings.backup_count,
    )
    _logger_initialized = True
    return logger


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    field_str = json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)
    return f"{message} {field_str}"


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Emit a structured log line for an action.

    Fields are serialized to JSON; values that are not JSON native are
    rendered with ``str``.

    Args:
        action: Name of the action being logged (``git.sync``, ``branch.processed``)
        outcome: Result status ("ok", "error", or a branch result value)
        duration_ms: How long the action took in milliseconds
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": _utcnow().isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_info(message: str, **fields: Any) -> None:
    """Log an info message with optional structured fields."""
    _get_logger().info(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" and re-raises.

    Yields:
        A dict that the block may update with extra fields to log
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="ok", duration_ms=duration_ms, **{**fields, **result_info})
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="error", duration_ms=duration_ms, **{**fields, **result_info})
        raise
