"""Payment provider envelope parsing tests."""

import pytest

from ledgerlink.common.errors import PayloadValidationError
from ledgerlink.services.payments.schemas import parse_payment_webhook


def _payment(**fields):
    return {"entity": {"id": "pay_1", "order_id": "ORD123", "amount": 49900, "currency": "INR", **fields}}


@pytest.mark.parametrize(
    "event, status",
    [
        ("payment.authorized", "authorized"),
        ("payment.captured", "captured"),
        ("payment.failed", "failed"),
    ],
)
def test_payment_events_map_to_status(event, status):
    parsed = parse_payment_webhook({"event": event, "payload": {"payment": _payment()}})

    assert parsed.status == status
    assert parsed.order_id == "ORD123"
    assert parsed.payment.amount == 49900


def test_order_paid_uses_order_entity_id():
    body = {
        "event": "order.paid",
        "payload": {"payment": _payment(order_id=None), "order": {"entity": {"id": "ORD123", "status": "paid"}}},
    }

    parsed = parse_payment_webhook(body)

    assert parsed.status == "captured"
    assert parsed.order_id == "ORD123"


def test_order_paid_without_payment_is_skipped():
    assert parse_payment_webhook({"event": "order.paid", "payload": {"order": {"entity": {"id": "ORD123"}}}}) is None


def test_unknown_event_is_skipped():
    assert parse_payment_webhook({"event": "refund.processed", "payload": {}}) is None


def test_failed_payment_carries_error_details():
    body = {
        "event": "payment.failed",
        "payload": {"payment": _payment(error_code="BAD_REQUEST_ERROR", error_reason="payment_cancelled", notes=[])},
    }

    parsed = parse_payment_webhook(body)

    assert parsed.payment.error_code == "BAD_REQUEST_ERROR"
    assert parsed.payment.error_reason == "payment_cancelled"


@pytest.mark.parametrize(
    "body",
    [
        {"payload": {}},
        {"event": "payment.captured"},
        {"event": "payment.captured", "payload": {}},
        {"event": "payment.captured", "payload": {"payment": _payment(order_id=None)}},
        {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": "ORD123"}}}},
    ],
)
def test_malformed_envelopes_are_rejected(body):
    with pytest.raises(PayloadValidationError):
        parse_payment_webhook(body)
