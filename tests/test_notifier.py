"""Outbox dispatcher and WhatsApp client tests."""

import asyncio
import json

import httpx
import pytest
from sqlalchemy import select

from conftest import FakeWhatsAppClient
from ledgerlink.common.config import settings
from ledgerlink.services.broadcaster.service import EventBroadcaster
from ledgerlink.services.messaging.service import MessagingReconciler
from ledgerlink.services.notifier.client import WhatsAppClient, format_phone_number
from ledgerlink.services.notifier.models import NotificationOutbox
from ledgerlink.services.notifier.service import NotificationDispatcher
from ledgerlink.services.payments.service import PaymentReconciler


@pytest.fixture
def messaging(session_factory):
    return MessagingReconciler(session_factory, EventBroadcaster())


@pytest.fixture
def captured_order(session_factory, registration):
    payments = PaymentReconciler(session_factory)
    payments.create_order(registration.id, "ORD123", 49900, "INR")
    asyncio.run(payments.reconcile("pay_1", "captured", "ORD123"))


def _outbox_row(session_factory) -> NotificationOutbox:
    with session_factory() as db:
        return db.execute(select(NotificationOutbox)).scalar_one()


def test_dispatch_sends_and_records_message(session_factory, captured_order, messaging, fake_whatsapp):
    dispatcher = NotificationDispatcher(session_factory, fake_whatsapp, messaging=messaging)

    assert asyncio.run(dispatcher.dispatch_once()) == 1

    [sent] = fake_whatsapp.sent
    assert sent["phone"] == "9876543210"
    assert sent["display_name"] == "Asha Rao"
    row = _outbox_row(session_factory)
    assert row.status == "SENT"
    assert row.attempts == 1
    assert row.provider_message_id == "wamid.OUT1"
    recorded = messaging.get_message("wamid.OUT1")
    assert recorded.direction == "outbound"
    assert recorded.to_number == "919876543210"
    assert recorded.status == "sent"
    assert recorded.provider_metadata["outbox_id"] == row.id
    assert recorded.message_type == "template"
    assert recorded.content == "[Template] registration_welcome"
    assert recorded.provider_metadata["template_parameters"] == ["Asha Rao"]


def test_text_notification_records_sent_body(session_factory, registration, messaging, fake_whatsapp, monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_welcome_template", "")
    payments = PaymentReconciler(session_factory)
    payments.create_order(registration.id, "ORD123", 49900, "INR")
    asyncio.run(payments.reconcile("pay_1", "captured", "ORD123"))
    dispatcher = NotificationDispatcher(session_factory, fake_whatsapp, messaging=messaging)

    asyncio.run(dispatcher.dispatch_once())

    recorded = messaging.get_message("wamid.OUT1")
    assert recorded.message_type == "text"
    assert recorded.content == fake_whatsapp.sent[0]["body"]
    assert recorded.content.startswith("Hi Asha Rao")


def test_sent_row_is_not_claimed_again(session_factory, captured_order, fake_whatsapp):
    dispatcher = NotificationDispatcher(session_factory, fake_whatsapp)

    asyncio.run(dispatcher.dispatch_once())
    assert asyncio.run(dispatcher.dispatch_once()) == 0
    assert len(fake_whatsapp.sent) == 1


def test_failed_send_is_requeued_with_backoff(session_factory, captured_order):
    dispatcher = NotificationDispatcher(session_factory, FakeWhatsAppClient(fail=True), max_attempts=3)

    assert asyncio.run(dispatcher.dispatch_once()) == 0

    row = _outbox_row(session_factory)
    assert row.status == "PENDING"
    assert row.attempts == 1
    assert row.last_error == "provider unavailable"
    # Backoff keeps it out of the next batch.
    assert asyncio.run(dispatcher.dispatch_once()) == 0


def test_send_parks_as_failed_after_max_attempts(session_factory, captured_order):
    dispatcher = NotificationDispatcher(session_factory, FakeWhatsAppClient(fail=True), max_attempts=1)

    asyncio.run(dispatcher.dispatch_once())

    assert _outbox_row(session_factory).status == "FAILED"


def test_send_failure_leaves_payment_captured(session_factory, captured_order):
    dispatcher = NotificationDispatcher(session_factory, FakeWhatsAppClient(fail=True), max_attempts=1)
    asyncio.run(dispatcher.dispatch_once())

    [payment] = PaymentReconciler(session_factory).payments_for_order("ORD123")
    assert payment.status == "captured"


def test_client_exception_is_contained(session_factory, captured_order):
    class ExplodingClient(FakeWhatsAppClient):
        async def send_template(self, phone, display_name, body, template=None):
            raise RuntimeError("socket closed")

    dispatcher = NotificationDispatcher(session_factory, ExplodingClient(), max_attempts=5)

    assert asyncio.run(dispatcher.dispatch_once()) == 0
    assert _outbox_row(session_factory).last_error == "socket closed"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("9876543210", "919876543210"),
        ("+91 98765-43210", "919876543210"),
        ("919876543210", "919876543210"),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def _client(handler) -> WhatsAppClient:
    return WhatsAppClient(
        access_token="token",
        phone_number_id="106540352242922",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_client_sends_template():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["authorization"]
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

    result = asyncio.run(_client(handler).send_template("9876543210", "Asha", "Welcome", "registration_welcome"))

    assert result.success is True
    assert result.message_id == "wamid.ABC"
    assert captured["url"] == "https://graph.facebook.com/v21.0/106540352242922/messages"
    assert captured["auth"] == "Bearer token"
    assert captured["payload"]["to"] == "919876543210"
    assert captured["payload"]["template"]["name"] == "registration_welcome"
    assert captured["payload"]["template"]["components"][0]["parameters"][0]["text"] == "Asha"


def test_client_reports_api_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})

    result = asyncio.run(_client(handler).send_template("9876543210", "Asha", "Welcome"))

    assert result.success is False
    assert result.error == "Invalid parameter"


def test_client_without_credentials_does_not_call_api():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = WhatsAppClient(
        access_token="",
        phone_number_id="",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    result = asyncio.run(client.send_template("9876543210", "Asha", "Welcome"))

    assert result.success is False
