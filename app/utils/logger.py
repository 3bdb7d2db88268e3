"""
Centralized logging configuration.
Structured logging for cache activity, upstream throttling and request timing.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

class JSONFormatter(logging.Formatter):
    """
    JSON formatter for the file handler.
    Keyword fields passed to StructuredLogger land at the top level of the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            log_entry.update(extra_data)

        return json.dumps(log_entry, ensure_ascii=False, default=str)

class StructuredFormatter(logging.Formatter):
    """Console formatter that appends keyword fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            fields = " ".join(f"{k}={v}" for k, v in extra_data.items())
            line = f"{line} | {fields}"
        return line

class StructuredLogger:
    """
    Wrapper around a standard logger taking structured keyword fields.

    ``exc_info`` is forwarded to the underlying logger instead of being
    serialized as a field.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, exc_info: bool = False, **kwargs):
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)

# Loggers that get the application handlers; values are their fixed levels,
# None meaning "follow LOG_LEVEL".
_ROUTED_LOGGERS: Dict[str, Optional[str]] = {
    "app": None,
    "uvicorn": "INFO",
    "apscheduler": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "aiohttp.client": "WARNING",
}

def _build_config(log_level: str, log_file: Optional[str], enable_console: bool) -> Dict[str, Any]:
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
            "level": log_level,
        }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }

    names = list(handlers)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {
                "()": StructuredFormatter,
                "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            logger_name: {"level": level or log_level, "handlers": names, "propagate": False}
            for logger_name, level in _ROUTED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": names},
    }

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Apply the dashboard logging setup.

    Console output is plain text with keyword fields appended; ``log_file``
    adds a rotating JSON log (10MB x 5) for ingestion.
    """
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(_build_config(log_level.upper(), log_file, enable_console))

def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance namespaced under ``app``.

    Args:
        name: Logger name (typically __name__)
    """
    if name == "app" or name.startswith("app."):
        return StructuredLogger(name)
    return StructuredLogger(f"app.{name}")

def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    user_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Log a domain event (cache write, quarantine, worker run) on the audit logger.

    Args:
        event_type: e.g. 'reports_cached', 'items_rate_limited', 'refill_completed'
        details: Event-specific details
        user_id: Principal uid if applicable
        request_id: Request ID for tracing
    """
    audit_logger = get_logger("audit")
    audit_logger.info(
        f"Business event: {event_type}",
        event_type=event_type,
        user_id=user_id,
        request_id=request_id,
        **details
    )

def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log the duration of an operation on the performance logger.
    """
    perf_logger = get_logger("performance")
    data = {"duration_ms": round(duration_ms, 2)}
    if additional_data:
        data.update(additional_data)

    perf_logger.info(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
