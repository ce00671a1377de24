"""Shared fixtures: in-memory SQLite ledger, broadcaster and signed payloads."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_test_secret")
os.environ.setdefault("WHATSAPP_WEBHOOK_SECRET", "wa_test_secret")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "verify-me")

import json

import pytest

from ledgerlink.common.db import Base, SessionLocal, engine
from ledgerlink.services.broadcaster.service import EventBroadcaster
from ledgerlink.services.messaging.models import WhatsAppMessage  # noqa: F401
from ledgerlink.services.notifier.client import SendResult
from ledgerlink.services.notifier.models import NotificationOutbox  # noqa: F401
from ledgerlink.services.payments.models import Payment, Registration  # noqa: F401


@pytest.fixture
def session_factory():
    """Fresh schema per test."""

    Base.metadata.create_all(engine)
    yield SessionLocal
    Base.metadata.drop_all(engine)


@pytest.fixture
def registration(session_factory) -> Registration:
    with session_factory() as db:
        reg = Registration(name="Asha Rao", phone="9876543210", course_title="Python Basics", status="pending")
        db.add(reg)
        db.commit()
        return reg


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster(queue_size=16)


def decode_frames(frames: list[str]) -> list[dict]:
    """Parse SSE `data:` frames back into event dicts."""

    events = []
    for frame in frames:
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        events.append(json.loads(frame[len("data: "):].strip()))
    return events


class FakeWhatsAppClient:
    """Records sends; fails while `fail` is set."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []
        self.closed = False

    async def send_template(self, phone, display_name, body, template=None):
        if self.fail:
            return SendResult(success=False, error="provider unavailable")
        self.sent.append({"phone": phone, "display_name": display_name, "body": body, "template": template})
        return SendResult(success=True, message_id=f"wamid.OUT{len(self.sent)}", to=f"91{phone}")

    async def send_text(self, phone, body):
        return await self.send_template(phone, None, body)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_whatsapp() -> FakeWhatsAppClient:
    return FakeWhatsAppClient()
