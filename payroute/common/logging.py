"""JSON logs carrying the payment correlation fields of the current task.

Each field is a ContextVar, so concurrent requests and compensation tasks keep
their own values; asyncio copies the context into tasks at creation.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from payroute.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
idempotency_key_ctx: ContextVar[str] = ContextVar("idempotency_key", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "payment_id": payment_id_ctx,
    "idempotency_key": idempotency_key_ctx,
    "provider": provider_ctx,
}


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in CONTEXT_FIELDS.items():
            setattr(record, field, var.get())
        return True


def configure_logging() -> None:
    """Route the root logger to stdout as JSON. Safe to call repeatedly."""

    fields = " ".join(f"%({name})s" for name in ("asctime", "levelname", "service_name", *CONTEXT_FIELDS, "message"))
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter(fields, rename_fields={"asctime": "ts", "levelname": "level"}))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("payroute")
