import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import AppError
from .utils.paths import get_logs_dir


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logs."""

    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg)


# Module-level state for lazy initialization
_failure_logger: Optional[logging.Logger] = None
_configured_logs_dir: Optional[Path] = None


def configure_failure_logger(logs_dir: Optional[Union[Path, str]] = None) -> None:
    """
    Configure the failure logger to use a specific logs directory.

    Call this before first use if you want to override the default location.
    If not called, the logger will use get_logs_dir() on first use.

    Args:
        logs_dir: Path to the logs directory. If None, uses get_logs_dir().
    """
    global _configured_logs_dir, _failure_logger
    _configured_logs_dir = Path(logs_dir) if logs_dir else None
    # Reset logger so it gets reconfigured on next use
    _failure_logger = None


def _setup_failure_logger(logs_dir: Path) -> logging.Logger:
    """
    Sets up a dedicated JSON logger for writing detailed failure logs to a file.
    """
    logger = logging.getLogger("token_relay.failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Clear existing handlers to prevent duplicates on re-setup
    logger.handlers.clear()

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            logs_dir / "failures.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    except (OSError, PermissionError, IOError) as e:
        logging.warning(f"Cannot create failure log file handler: {e}")
        logger.addHandler(logging.NullHandler())

    return logger


def get_failure_logger() -> logging.Logger:
    """Get the failure logger, initializing it lazily if needed."""
    global _failure_logger

    if _failure_logger is None:
        logs_dir = _configured_logs_dir if _configured_logs_dir else get_logs_dir()
        _failure_logger = _setup_failure_logger(logs_dir)

    return _failure_logger


# Main library logger for concise, propagated messages
main_lib_logger = logging.getLogger("token_relay")


def _error_chain(error: BaseException) -> list:
    chain = []
    visited = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in visited and len(chain) < 6:
        visited.add(id(current))
        chain.append({"type": type(current).__name__, "message": str(current)[:2000]})
        current = current.__cause__ or current.__context__
    return chain


def log_failure(
    event: str,
    error: BaseException,
    method: Optional[str] = None,
    path: Optional[str] = None,
    attempt: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Logs a detailed failure record to failures.log and a concise summary to
    the main library logger.

    Args:
        event: What failed ("renewal", "retry_exhausted", ...)
        error: The error that ended the operation
        method: HTTP method of the affected request, if any
        path: Request path of the affected request, if any
        attempt: Attempt number (1-based), if relevant
        extra: Additional JSON-serializable context
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "method": method,
        "path": path,
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": str(error)[:5000],
    }
    if isinstance(error, AppError):
        record["error"] = error.to_dict()
    chain = _error_chain(error)
    if len(chain) > 1:
        record["error_chain"] = chain
    if extra:
        record.update(extra)

    target = f" for {method} {path}" if method and path else ""
    summary_message = (
        f"{event} failed{target}. Error: {type(error).__name__}. "
        f"See failures.log for details."
    )

    # Log to failure logger with resilience - if it fails, just continue
    try:
        get_failure_logger().error(record)
    except (OSError, IOError) as e:
        logging.warning(f"Failed to write to failures.log: {e}")

    main_lib_logger.error(summary_message)
