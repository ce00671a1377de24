"""Messaging webhook reconciliation.

Incoming messages and delivery-status events arrive in any order and possibly
more than once. Each one becomes a snapshot merged into the single row for its
provider message id; applied changes are fanned out to live viewers.
"""

from typing import Any

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from ledgerlink.common.errors import LedgerUnavailableError
from ledgerlink.common.locks import KeyedLock
from ledgerlink.common.logging import logger
from ledgerlink.common.metrics import message_reconciliations_total, stale_status_updates_total
from ledgerlink.common.upsert import insert_if_absent
from ledgerlink.services.broadcaster.service import EventBroadcaster
from ledgerlink.services.messaging.models import MATERIALIZED, STATUS_ONLY, WhatsAppMessage
from ledgerlink.services.messaging.snapshots import (
    Materialized,
    MergeResult,
    Snapshot,
    StatusOnly,
    conversation_partner,
    from_epoch_seconds,
    merge_snapshot,
    row_values,
)


def extract_content(message_type: str, raw_content: dict[str, Any]) -> str:
    """Human-readable text for one provider message of any type."""

    body = raw_content.get(message_type) or {}
    if message_type == "text":
        return body.get("body") or ""
    if message_type == "image":
        return f"[Image] {body.get('caption') or ''}".rstrip()
    if message_type == "video":
        return f"[Video] {body.get('caption') or ''}".rstrip()
    if message_type == "document":
        return f"[Document] {body.get('filename') or 'Unknown file'}"
    if message_type == "audio":
        return "[Audio message]"
    if message_type == "voice":
        return "[Voice message]"
    return f"[{message_type}] Unsupported message type"


def message_to_dict(row: WhatsAppMessage) -> dict[str, Any]:
    return {
        "id": row.id,
        "message_id": row.message_id,
        "direction": row.direction,
        "from_number": row.from_number,
        "to_number": row.to_number,
        "business_account_id": row.business_account_id,
        "message_type": row.message_type,
        "content": row.content,
        "status": row.status,
        "timestamp": row.timestamp.isoformat() if row.timestamp else None,
        "is_placeholder": row.record_kind == STATUS_ONLY,
    }


class MessagingReconciler:
    """Owns the message ledger and the live events derived from it."""

    def __init__(self, session_factory, broadcaster: EventBroadcaster, locks: KeyedLock | None = None) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.locks = locks or KeyedLock()

    async def process_webhook(self, body: dict[str, Any]) -> dict[str, int]:
        """Walk `entry[].changes[].value` and reconcile every message and status in it."""

        counts = {"messages": 0, "statuses": 0, "skipped": 0}
        if body.get("object") != "whatsapp_business_account":
            logger.info("messaging webhook ignored object=%s", body.get("object"))
            return counts

        for entry in body.get("entry") or []:
            business_account_id = entry.get("id")
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                if value.get("messaging_product") != "whatsapp":
                    logger.info("ignoring non-whatsapp change product=%s", value.get("messaging_product"))
                    continue
                metadata = value.get("metadata") or {}
                phone_number_id = metadata.get("phone_number_id")

                for message in value.get("messages") or []:
                    try:
                        message_id = message["id"]
                        timestamp_seconds = int(message["timestamp"])
                    except (KeyError, TypeError, ValueError):
                        logger.warning("malformed message skipped entry_id=%s", business_account_id)
                        counts["skipped"] += 1
                        continue
                    await self.process_incoming_message(
                        message_id,
                        message.get("from"),
                        phone_number_id,
                        business_account_id,
                        message.get("type") or "unknown",
                        message,
                        timestamp_seconds,
                    )
                    counts["messages"] += 1

                for status in value.get("statuses") or []:
                    try:
                        message_id = status["id"]
                        new_status = status["status"]
                        timestamp_seconds = int(status["timestamp"])
                    except (KeyError, TypeError, ValueError):
                        logger.warning("malformed status skipped entry_id=%s", business_account_id)
                        counts["skipped"] += 1
                        continue
                    await self.process_status_update(
                        message_id,
                        new_status,
                        status.get("recipient_id"),
                        timestamp_seconds,
                        phone_number_id=phone_number_id,
                        business_account_id=business_account_id,
                        errors=status.get("errors"),
                    )
                    counts["statuses"] += 1
        return counts

    async def process_incoming_message(
        self,
        message_id: str,
        from_number: str | None,
        to_number: str | None,
        business_account_id: str | None,
        message_type: str,
        raw_content: dict[str, Any],
        timestamp_seconds: int,
    ) -> WhatsAppMessage:
        """Upsert one inbound message and announce it to live viewers."""

        content = extract_content(message_type, raw_content)
        snapshot = Materialized(
            message_id=message_id,
            direction="inbound",
            from_number=from_number,
            to_number=to_number,
            business_account_id=business_account_id,
            message_type=message_type,
            content=content,
            status="received",
            timestamp=from_epoch_seconds(timestamp_seconds),
            metadata={"phone_number_id": to_number},
        )
        row, merge, first_in_conversation = await self._apply(snapshot, "message")
        if merge.changed:
            self._announce_message(row, first_in_conversation)
        return row

    async def process_status_update(
        self,
        message_id: str,
        new_status: str,
        recipient_id: str | None,
        timestamp_seconds: int,
        phone_number_id: str | None = None,
        business_account_id: str | None = None,
        errors: list | None = None,
    ) -> WhatsAppMessage:
        """Apply a delivery status, creating a placeholder if the message is unknown yet."""

        metadata = {"status_errors": errors} if errors else {}
        snapshot = StatusOnly(
            message_id=message_id,
            status=new_status,
            timestamp=from_epoch_seconds(timestamp_seconds),
            from_number=phone_number_id,
            to_number=recipient_id,
            business_account_id=business_account_id,
            metadata=metadata,
        )
        row, merge, _ = await self._apply(snapshot, "status")
        if merge.status_applied and not merge.created:
            partner = conversation_partner(row)
            self._safe_broadcast(
                "message-status-update",
                {
                    "messageId": row.message_id,
                    "status": row.status,
                    "phoneNumber": partner,
                    "timestamp": row.timestamp.isoformat(),
                    "direction": row.direction,
                    "content": row.content,
                    "messageType": row.message_type,
                },
            )
        return row

    async def record_outbound_message(
        self,
        message_id: str,
        from_number: str | None,
        to_number: str,
        business_account_id: str | None,
        message_type: str,
        content: str,
        timestamp_seconds: int,
        status: str = "sent",
        metadata: dict | None = None,
    ) -> WhatsAppMessage:
        """Record a message we sent, merging into a status placeholder if one exists."""

        snapshot = Materialized(
            message_id=message_id,
            direction="outbound",
            from_number=from_number,
            to_number=to_number,
            business_account_id=business_account_id,
            message_type=message_type,
            content=content,
            status=status,
            timestamp=from_epoch_seconds(timestamp_seconds),
            metadata=metadata or {},
        )
        row, merge, first_in_conversation = await self._apply(snapshot, "outbound")
        if merge.changed:
            self._announce_message(row, first_in_conversation)
        return row

    async def _apply(self, snapshot: Snapshot, kind: str) -> tuple[WhatsAppMessage, MergeResult, bool]:
        async with self.locks.hold(snapshot.message_id):
            try:
                with self.session_factory() as db:
                    first_in_conversation = False
                    if isinstance(snapshot, Materialized):
                        partner = snapshot.to_number if snapshot.direction == "outbound" else snapshot.from_number
                        first_in_conversation = not self._has_conversation(db, partner, snapshot.message_id)

                    created = insert_if_absent(db, WhatsAppMessage, row_values(snapshot), ["message_id"])
                    row = db.execute(
                        select(WhatsAppMessage).where(WhatsAppMessage.message_id == snapshot.message_id).with_for_update()
                    ).scalar_one()
                    if created:
                        merge = MergeResult(status_applied=True, created=True)
                    else:
                        merge = merge_snapshot(row, snapshot)
                    db.commit()
            except SQLAlchemyError as exc:
                logger.error("message ledger failure message_id=%s kind=%s error=%s", snapshot.message_id, kind, exc)
                raise LedgerUnavailableError(str(exc), operation=f"message_{kind}") from exc

        if merge.created:
            outcome = "placeholder_created" if row.record_kind == STATUS_ONLY else "created"
        elif merge.promoted:
            outcome = "placeholder_promoted"
        elif merge.status_applied:
            outcome = "updated"
        else:
            outcome = "stale"
            stale_status_updates_total.inc()
        message_reconciliations_total.labels(kind=kind, outcome=outcome).inc()
        logger.info(
            "message reconciled message_id=%s kind=%s outcome=%s status=%s",
            row.message_id,
            kind,
            outcome,
            row.status,
        )
        return row, merge, first_in_conversation

    def _has_conversation(self, db, partner: str | None, exclude_message_id: str) -> bool:
        if not partner:
            return True
        existing = db.execute(
            select(WhatsAppMessage.id)
            .where(
                WhatsAppMessage.message_id != exclude_message_id,
                WhatsAppMessage.record_kind == MATERIALIZED,
                or_(
                    and_(WhatsAppMessage.direction == "inbound", WhatsAppMessage.from_number == partner),
                    and_(WhatsAppMessage.direction == "outbound", WhatsAppMessage.to_number == partner),
                ),
            )
            .limit(1)
        ).first()
        return existing is not None

    def _announce_message(self, row: WhatsAppMessage, first_in_conversation: bool) -> None:
        conversation = {
            "phone_number": conversation_partner(row),
            "last_message_time": row.timestamp.isoformat(),
            "last_message_content": row.content,
            "last_message_direction": row.direction,
        }
        self._safe_broadcast("new-message", {"message": message_to_dict(row), "conversation": conversation})
        if first_in_conversation:
            self._safe_broadcast("new-conversation", conversation)
        else:
            self._safe_broadcast(
                "conversation-update",
                {"phoneNumber": conversation["phone_number"], "update": conversation},
            )

    def _safe_broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        # Live fan-out must never fail a reconciliation that is already committed.
        try:
            self.broadcaster.broadcast(event_type, data)
        except Exception as exc:
            logger.error("live broadcast failed event_type=%s error=%s", event_type, exc)

    def list_conversations(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        """Conversations keyed by customer number, most recently active first."""

        partner = case(
            (WhatsAppMessage.direction == "inbound", WhatsAppMessage.from_number),
            else_=WhatsAppMessage.to_number,
        ).label("phone_number")
        with self.session_factory() as db:
            stats = db.execute(
                select(
                    partner,
                    func.count(WhatsAppMessage.id).label("message_count"),
                    func.max(WhatsAppMessage.timestamp).label("last_message_time"),
                    func.sum(case((WhatsAppMessage.direction == "inbound", 1), else_=0)).label("inbound_count"),
                    func.sum(case((WhatsAppMessage.direction == "outbound", 1), else_=0)).label("outbound_count"),
                )
                .where(WhatsAppMessage.record_kind == MATERIALIZED)
                .group_by(partner)
                .order_by(func.max(WhatsAppMessage.timestamp).desc())
                .limit(limit)
                .offset(offset)
            ).all()

            conversations = []
            for row in stats:
                if row.phone_number is None:
                    continue
                latest = self._messages_query(db, row.phone_number, limit=1, offset=0)
                last = latest[0] if latest else None
                conversations.append(
                    {
                        "phone_number": row.phone_number,
                        "message_count": int(row.message_count or 0),
                        "inbound_count": int(row.inbound_count or 0),
                        "outbound_count": int(row.outbound_count or 0),
                        "last_message_time": last.timestamp.isoformat() if last else None,
                        "last_message_content": last.content if last else None,
                        "last_message_direction": last.direction if last else None,
                    }
                )
            return conversations

    def list_messages(self, phone_number: str, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            return [message_to_dict(row) for row in self._messages_query(db, phone_number, limit, offset)]

    def get_message(self, message_id: str) -> WhatsAppMessage | None:
        with self.session_factory() as db:
            return db.execute(
                select(WhatsAppMessage).where(WhatsAppMessage.message_id == message_id)
            ).scalar_one_or_none()

    def _messages_query(self, db, phone_number: str, limit: int, offset: int) -> list[WhatsAppMessage]:
        return list(
            db.execute(
                select(WhatsAppMessage)
                .where(
                    WhatsAppMessage.record_kind == MATERIALIZED,
                    or_(
                        and_(WhatsAppMessage.direction == "inbound", WhatsAppMessage.from_number == phone_number),
                        and_(WhatsAppMessage.direction == "outbound", WhatsAppMessage.to_number == phone_number),
                    ),
                )
                .order_by(WhatsAppMessage.timestamp.desc())
                .limit(limit)
                .offset(offset)
            )
            .scalars()
            .all()
        )
