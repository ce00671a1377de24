"""Log context tests."""

import contextvars
import logging

from ledgerlink.common.config import settings
from ledgerlink.common.logging import ContextFilter, bind_webhook_context, order_id_ctx


def _record() -> logging.LogRecord:
    return logging.LogRecord("ledgerlink", logging.INFO, __file__, 1, "payment reconciled", None, None)


def test_webhook_context_is_injected_into_records():
    def handle_delivery():
        bind_webhook_context("razorpay", "evt_1", "corr-9")
        order_id_ctx.set("ORD123")
        record = _record()
        ContextFilter().filter(record)
        return record

    record = contextvars.copy_context().run(handle_delivery)

    assert record.provider == "razorpay"
    assert record.webhook_id == "evt_1"
    assert record.trace_id == "corr-9"
    assert record.order_id == "ORD123"
    assert record.service_name == settings.service_name


def test_new_delivery_gets_fresh_ids_and_clears_order():
    def handle_delivery():
        order_id_ctx.set("ORD_PREVIOUS")
        webhook_id = bind_webhook_context("whatsapp")
        record = _record()
        ContextFilter().filter(record)
        return webhook_id, record

    webhook_id, record = contextvars.copy_context().run(handle_delivery)

    assert webhook_id
    assert record.webhook_id == webhook_id
    assert record.trace_id == webhook_id
    assert record.order_id == ""
