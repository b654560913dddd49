"""
Structured Logging Infrastructure

JSON-formatted logging with correlation IDs, so one order's transition,
settlement and ledger writes can be followed across request and worker logs.
"""
import logging
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any
from contextvars import ContextVar
from functools import wraps

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, app_name: str = "cydex-core") -> None:
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "app": self.app_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_entry["extra"] = record.extra_data

        # Decimal, UUID ו-datetime מומרים למחרוזת
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger accepting an ``extra_data`` dict on every level method"""

    def _log_with_extra(
        self,
        level: int,
        msg: str,
        args: tuple,
        extra_data: dict[str, Any] | None = None,
        **kwargs
    ) -> None:
        if extra_data:
            extra = kwargs.get("extra", {})
            extra["extra_data"] = extra_data
            kwargs["extra"] = extra
        super()._log(level, msg, args, **kwargs)

    def debug(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.DEBUG):
            self._log_with_extra(logging.DEBUG, msg, args, extra_data, **kwargs)

    def info(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.INFO):
            self._log_with_extra(logging.INFO, msg, args, extra_data, **kwargs)

    def warning(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.WARNING):
            self._log_with_extra(logging.WARNING, msg, args, extra_data, **kwargs)

    def error(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.ERROR):
            self._log_with_extra(logging.ERROR, msg, args, extra_data, **kwargs)

    def critical(self, msg: str, *args, extra_data: dict[str, Any] | None = None, **kwargs) -> None:
        if self.isEnabledFor(logging.CRITICAL):
            self._log_with_extra(logging.CRITICAL, msg, args, extra_data, **kwargs)


logging.setLoggerClass(StructuredLogger)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "cydex-core"
) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for production
        app_name: Application name stamped on every JSON record
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter(app_name=app_name))
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        handler.addFilter(CorrelationIdFilter())

    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


class CorrelationIdFilter(logging.Filter):
    """Filter that adds correlation_id to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


def generate_correlation_id() -> str:
    return str(uuid.uuid4())[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set correlation ID for current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Get current correlation ID, generating and persisting one if not set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """Decorator for logging async service operations with timing.

    Expected business outcomes raised as ``AppException`` are logged at
    warning level; anything else is an error with traceback.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            from app.core.exceptions import AppException

            logger = get_logger(func.__module__)
            start_time = datetime.now(timezone.utc)

            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"}
            )

            try:
                result = await func(*args, **kwargs)
            except AppException as e:
                duration = (datetime.now(timezone.utc) - start_time).total_seconds()
                logger.warning(
                    f"Rejected {operation_name}: {e.message}",
                    extra_data={
                        "operation": operation_name,
                        "status": "rejected",
                        "error_code": e.error_code.value,
                        "duration_seconds": duration,
                    },
                )
                raise
            except Exception as e:
                duration = (datetime.now(timezone.utc) - start_time).total_seconds()
                logger.error(
                    f"Failed {operation_name}: {str(e)}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": duration,
                        "error": str(e)
                    },
                    exc_info=True
                )
                raise

            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": duration
                }
            )
            return result

        return wrapper
    return decorator
