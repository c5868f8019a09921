import json
import logging
import os
import hashlib
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, Any, Optional

import structlog

from .config import settings

# Attributes every LogRecord carries; anything else arrived through `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}
_STRUCTURED_FIELDS = {"component", "operation", "params_hash", "status", "duration_ms", "error"}


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter with required fields for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        # Extract custom fields from record if they exist
        component = getattr(record, 'component', record.name)
        operation = getattr(record, 'operation', record.funcName or 'unknown')
        params_hash = getattr(record, 'params_hash', '')
        status = getattr(record, 'status', 'info')
        duration_ms = getattr(record, 'duration_ms', 0)
        error = getattr(record, 'error', '')

        data = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "component": component,
            "operation": operation,
            "params_hash": params_hash,
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        # Key/value context bound on structlog loggers
        context = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and key not in _STRUCTURED_FIELDS
        }
        if context:
            data["context"] = context

        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
            data["status"] = "error"

        # Remove empty fields for cleaner logs
        data = {k: v for k, v in data.items() if v != '' and v is not None}

        return json.dumps(data, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with structured logging support"""
    logger = logging.getLogger(name)
    return StructuredLogger(logger)


class StructuredLogger:
    """Wrapper around logger that adds structured logging methods"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log_operation(self,
                      operation: str,
                      params: Optional[Dict[str, Any]] = None,
                      status: str = "started",
                      duration_ms: int = 0,
                      error: str = "",
                      message: str = "") -> None:
        """Log an operation with structured fields"""
        params_hash = ""
        if params:
            # Hash params so addresses and DSNs never reach the log files
            params_str = json.dumps(params, sort_keys=True, default=str)
            params_hash = hashlib.md5(params_str.encode()).hexdigest()[:8]

        extra = {
            'component': self._logger.name,
            'operation': operation,
            'params_hash': params_hash,
            'status': status,
            'duration_ms': duration_ms,
            'error': error
        }

        if error:
            self._logger.error(message or f"Operation {operation} failed", extra=extra)
        elif status == "completed":
            self._logger.info(message or f"Operation {operation} completed", extra=extra)
        else:
            self._logger.info(message or f"Operation {operation} {status}", extra=extra)

    def __getattr__(self, name):
        """Delegate all other methods to the underlying logger"""
        return getattr(self._logger, name)


def _event_as_operation(logger, method_name, event_dict):
    """Use the structlog event name as the operation field."""
    event_dict.setdefault("operation", event_dict.get("event"))
    return event_dict


def configure_structlog() -> None:
    """Route structlog events through the stdlib handlers configured below"""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            _event_as_operation,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging() -> None:
    """Configure logging with JSON format and daily rotation"""
    os.makedirs(settings.log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    # Remove any existing handlers
    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root.level)
    console_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(console_handler)

    log_filename = os.path.join(
        settings.log_dir,
        f"tracker_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler = TimedRotatingFileHandler(
        filename=log_filename,
        when='midnight',
        interval=1,
        backupCount=30,  # Keep 30 days of logs
        encoding='utf-8'
    )
    file_handler.suffix = "%Y%m%d.log"
    file_handler.setLevel(root.level)
    file_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(file_handler)

    configure_structlog()


def log_cycle_summary(component: str, summary: Dict[str, Any], duration_seconds: float) -> None:
    """Log the outcome of one reconciliation pass"""
    logger = get_logger(component)
    logger.log_operation(
        operation="cycle_summary",
        params=summary,
        status="completed" if not summary.get("groups_failed") else "partial",
        duration_ms=int(duration_seconds * 1000),
        message=(
            f"Cycle finished: {summary.get('balances_saved', 0)} balances saved, "
            f"{summary.get('groups_failed', 0)} groups failed"
        )
    )
