"""Structured JSON logging with webhook/order context fields.

Every record carries the provider, webhook delivery id, correlation id and
order id of the request being handled, so one delivery can be followed from
signature check to ledger commit with a single filter.
"""

import logging
import sys
from contextvars import ContextVar
from uuid import uuid4

from pythonjsonlogger.json import JsonFormatter

from ledgerlink.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
webhook_id_ctx: ContextVar[str] = ContextVar("webhook_id", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

_CONTEXT = {
    "trace_id": trace_id_ctx,
    "webhook_id": webhook_id_ctx,
    "provider": provider_ctx,
    "order_id": order_id_ctx,
}

# Per-request chatter from client libraries; warnings still come through.
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def bind_webhook_context(provider: str, webhook_id: str | None = None, trace_id: str | None = None) -> str:
    """Start the log context for one webhook delivery; returns the webhook id used."""

    webhook_id = webhook_id or str(uuid4())
    provider_ctx.set(provider)
    webhook_id_ctx.set(webhook_id)
    trace_id_ctx.set(trace_id or webhook_id)
    order_id_ctx.set("")
    return webhook_id


class ContextFilter(logging.Filter):
    """Inject the service name and the current delivery's context into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(service_name)s %(provider)s %(trace_id)s "
            "%(webhook_id)s %(order_id)s %(message)s"
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("ledgerlink")
