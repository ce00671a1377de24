"""Message ledger reconciliation and live event tests."""

import asyncio

import pytest
from sqlalchemy import func, select

from conftest import decode_frames
from ledgerlink.services.messaging.models import MATERIALIZED, PLACEHOLDER_CONTENT, STATUS_ONLY, WhatsAppMessage
from ledgerlink.services.messaging.service import MessagingReconciler, extract_content
from ledgerlink.services.messaging.snapshots import as_utc


BUSINESS_NUMBER_ID = "106540352242922"
CUSTOMER = "919876543210"


@pytest.fixture
def messaging(session_factory, broadcaster):
    return MessagingReconciler(session_factory, broadcaster)


@pytest.fixture
def viewer(broadcaster):
    subscription = broadcaster.subscribe()
    subscription.pending()  # drop the greeting
    return subscription


def _count(session_factory):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(WhatsAppMessage)).scalar_one()


def _incoming(messaging, message_id="wamid.IN1", ts=1700000100, text="Hello, is the course still open?"):
    return asyncio.run(
        messaging.process_incoming_message(
            message_id,
            CUSTOMER,
            BUSINESS_NUMBER_ID,
            "WABA1",
            "text",
            {"type": "text", "text": {"body": text}},
            ts,
        )
    )


def _status(messaging, message_id, status, ts, recipient=CUSTOMER):
    return asyncio.run(
        messaging.process_status_update(
            message_id, status, recipient, ts, phone_number_id=BUSINESS_NUMBER_ID, business_account_id="WABA1"
        )
    )


@pytest.mark.parametrize(
    "message_type, raw, expected",
    [
        ("text", {"text": {"body": "hi"}}, "hi"),
        ("image", {"image": {"caption": "receipt"}}, "[Image] receipt"),
        ("image", {"image": {}}, "[Image]"),
        ("video", {"video": {"caption": "demo"}}, "[Video] demo"),
        ("document", {"document": {"filename": "invoice.pdf"}}, "[Document] invoice.pdf"),
        ("document", {"document": {}}, "[Document] Unknown file"),
        ("audio", {"audio": {"id": "a1"}}, "[Audio message]"),
        ("voice", {"voice": {"id": "v1"}}, "[Voice message]"),
        ("sticker", {"sticker": {"id": "s1"}}, "[sticker] Unsupported message type"),
    ],
)
def test_extract_content(message_type, raw, expected):
    assert extract_content(message_type, raw) == expected


def test_incoming_message_creates_row_and_announces_it(messaging, viewer, session_factory):
    row = _incoming(messaging)

    assert row.direction == "inbound"
    assert row.status == "received"
    assert row.record_kind == MATERIALIZED
    assert row.content == "Hello, is the course still open?"
    events = decode_frames(viewer.pending())
    assert [e["type"] for e in events] == ["new-message", "new-conversation"]
    assert events[0]["data"]["conversation"]["phone_number"] == CUSTOMER
    assert events[0]["data"]["message"]["message_id"] == "wamid.IN1"


def test_follow_up_message_updates_conversation(messaging, viewer):
    _incoming(messaging)
    viewer.pending()
    _incoming(messaging, message_id="wamid.IN2", ts=1700000200, text="Thanks!")

    events = decode_frames(viewer.pending())
    assert [e["type"] for e in events] == ["new-message", "conversation-update"]
    assert events[1]["data"]["phoneNumber"] == CUSTOMER
    assert events[1]["data"]["update"]["last_message_content"] == "Thanks!"


def test_redelivered_message_is_idempotent(messaging, viewer, session_factory):
    _incoming(messaging)
    viewer.pending()
    _incoming(messaging)

    assert _count(session_factory) == 1
    assert viewer.pending() == []


def test_status_before_message_promotes_placeholder(messaging, session_factory):
    """Status first, inbound message later: one inbound row with the message's own status."""

    placeholder = _status(messaging, "wamid.X", "sent", 1700000200)
    assert placeholder.record_kind == STATUS_ONLY
    assert placeholder.content == PLACEHOLDER_CONTENT

    _incoming(messaging, message_id="wamid.X", ts=1700000100, text="Where do I pay?")

    assert _count(session_factory) == 1
    row = messaging.get_message("wamid.X")
    assert row.record_kind == MATERIALIZED
    assert row.content == "Where do I pay?"
    assert row.direction == "inbound"
    assert row.from_number == CUSTOMER
    assert row.status == "received"
    assert as_utc(row.timestamp).timestamp() == 1700000100
    assert "status_update_only" not in row.provider_metadata


def test_placeholder_is_hidden_from_conversations(messaging):
    _status(messaging, "wamid.X", "sent", 1700000200)

    assert messaging.list_conversations() == []
    assert messaging.list_messages(CUSTOMER) == []


def test_status_progression_is_broadcast(messaging, viewer):
    asyncio.run(
        messaging.record_outbound_message(
            "wamid.OUT1", BUSINESS_NUMBER_ID, CUSTOMER, "WABA1", "text", "Welcome!", 1700000100
        )
    )
    viewer.pending()

    row = _status(messaging, "wamid.OUT1", "delivered", 1700000150)

    assert row.status == "delivered"
    [event] = decode_frames(viewer.pending())
    assert event["type"] == "message-status-update"
    assert event["data"]["messageId"] == "wamid.OUT1"
    assert event["data"]["status"] == "delivered"
    assert event["data"]["phoneNumber"] == CUSTOMER
    assert event["data"]["direction"] == "outbound"
    assert event["data"]["content"] == "Welcome!"


def test_stale_status_does_not_downgrade(messaging, viewer):
    asyncio.run(
        messaging.record_outbound_message(
            "wamid.OUT1", BUSINESS_NUMBER_ID, CUSTOMER, "WABA1", "text", "Welcome!", 1700000100
        )
    )
    _status(messaging, "wamid.OUT1", "read", 1700000300)
    viewer.pending()

    row = _status(messaging, "wamid.OUT1", "delivered", 1700000200)

    assert row.status == "read"
    assert as_utc(row.timestamp).timestamp() == 1700000300
    assert viewer.pending() == []


def test_same_timestamp_prefers_later_status(messaging):
    asyncio.run(
        messaging.record_outbound_message(
            "wamid.OUT1", BUSINESS_NUMBER_ID, CUSTOMER, "WABA1", "text", "Welcome!", 1700000100
        )
    )
    _status(messaging, "wamid.OUT1", "read", 1700000200)
    row = _status(messaging, "wamid.OUT1", "delivered", 1700000200)

    assert row.status == "read"


def test_outbound_record_promotes_status_placeholder(messaging, session_factory):
    _status(messaging, "wamid.OUT1", "delivered", 1700000300)

    row = asyncio.run(
        messaging.record_outbound_message(
            "wamid.OUT1", BUSINESS_NUMBER_ID, CUSTOMER, "WABA1", "template", "Welcome!", 1700000100
        )
    )

    assert _count(session_factory) == 1
    assert row.record_kind == MATERIALIZED
    assert row.content == "Welcome!"
    assert row.direction == "outbound"
    assert row.status == "delivered"


def test_process_webhook_walks_entries(messaging, session_factory):
    body = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "15550001111", "phone_number_id": BUSINESS_NUMBER_ID},
                            "messages": [
                                {
                                    "from": CUSTOMER,
                                    "id": "wamid.IN1",
                                    "timestamp": "1700000100",
                                    "type": "text",
                                    "text": {"body": "Hi"},
                                },
                                {"from": CUSTOMER, "type": "text"},
                            ],
                            "statuses": [
                                {
                                    "id": "wamid.OUT9",
                                    "status": "failed",
                                    "timestamp": "1700000150",
                                    "recipient_id": CUSTOMER,
                                    "errors": [{"code": 131047, "title": "Re-engagement message"}],
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }

    counts = asyncio.run(messaging.process_webhook(body))

    assert counts == {"messages": 1, "statuses": 1, "skipped": 1}
    inbound = messaging.get_message("wamid.IN1")
    assert inbound.to_number == BUSINESS_NUMBER_ID
    assert inbound.business_account_id == "WABA1"
    placeholder = messaging.get_message("wamid.OUT9")
    assert placeholder.status == "failed"
    assert placeholder.provider_metadata["status_errors"][0]["code"] == 131047


def test_process_webhook_ignores_other_objects(messaging, session_factory):
    counts = asyncio.run(messaging.process_webhook({"object": "page", "entry": []}))

    assert counts == {"messages": 0, "statuses": 0, "skipped": 0}
    assert _count(session_factory) == 0


def test_conversation_listing(messaging):
    _incoming(messaging)
    asyncio.run(
        messaging.record_outbound_message(
            "wamid.OUT1", BUSINESS_NUMBER_ID, CUSTOMER, "WABA1", "text", "Yes, it is.", 1700000200
        )
    )

    [conversation] = messaging.list_conversations()
    assert conversation["phone_number"] == CUSTOMER
    assert conversation["message_count"] == 2
    assert conversation["inbound_count"] == 1
    assert conversation["outbound_count"] == 1
    assert conversation["last_message_content"] == "Yes, it is."
    assert [m["message_id"] for m in messaging.list_messages(CUSTOMER)] == ["wamid.OUT1", "wamid.IN1"]
