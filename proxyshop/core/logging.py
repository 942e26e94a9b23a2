"""
JSON logs for the API process and the Celery workers.
Messages are event names (`purchase_settled`, `deposit_credited`, ...); context goes in `extra`.
"""
import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from celery import current_task

from proxyshop.core.config import settings


SERVICE_NAME = "proxyshop"

# chatty per-request loggers of the HTTP clients
QUIET_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted `extra` keys are emitted."""

    EXTRA_FIELDS = (
        # purchase / claims
        "user_id", "order_id", "proxy_id", "public_id", "owner_id",
        "quantity", "claimed", "strategy", "reason", "amount", "new_balance",
        # deposits
        "invoice_id", "status", "attempt", "max_attempts",
        # provider calls and resilience
        "operation", "failure_type", "delay_seconds", "error",
        "breaker_name", "old_state", "new_state",
        "count",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "event": record.getMessage(),
        }

        task = current_task
        if task and task.request.id:
            payload["task_id"] = task.request.id
            payload["task_name"] = task.name

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    formatter = JsonFormatter()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [handler]
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(settings.log_level)
    root.handlers = handlers
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
