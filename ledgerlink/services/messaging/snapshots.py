"""Message snapshots and the single rule for merging them into a ledger row.

Every delivery is turned into a snapshot: `Materialized` when it carries the
message itself, `StatusOnly` when it only reports a delivery status. Rows are
written from snapshots as a whole, so a stale delivery can never leave a row
with a newer timestamp next to an older status.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from ledgerlink.services.messaging.models import (
    MATERIALIZED,
    PLACEHOLDER_CONTENT,
    STATUS_ONLY,
    WhatsAppMessage,
)


# Tie-break for snapshots carrying the same timestamp.
STATUS_RANK = {
    "received": 0,
    "sent": 1,
    "failed": 1,
    "delivered": 2,
    "read": 3,
}


@dataclass(frozen=True)
class Materialized:
    message_id: str
    direction: str
    from_number: str | None
    to_number: str | None
    business_account_id: str | None
    message_type: str
    content: str
    status: str
    timestamp: datetime
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StatusOnly:
    message_id: str
    status: str
    timestamp: datetime
    from_number: str | None = None
    to_number: str | None = None
    business_account_id: str | None = None
    metadata: dict = field(default_factory=dict)


Snapshot = Materialized | StatusOnly


@dataclass
class MergeResult:
    status_applied: bool
    promoted: bool = False
    created: bool = False

    @property
    def changed(self) -> bool:
        return self.status_applied or self.promoted or self.created


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch_seconds(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def row_values(snapshot: Snapshot) -> dict:
    """Column values for inserting a snapshot as a brand new row."""

    if isinstance(snapshot, Materialized):
        return {
            "message_id": snapshot.message_id,
            "direction": snapshot.direction,
            "from_number": snapshot.from_number,
            "to_number": snapshot.to_number,
            "business_account_id": snapshot.business_account_id,
            "message_type": snapshot.message_type,
            "content": snapshot.content,
            "status": snapshot.status,
            "timestamp": snapshot.timestamp,
            "record_kind": MATERIALIZED,
            "provider_metadata": dict(snapshot.metadata),
        }
    # Status events are only emitted for messages we sent.
    return {
        "message_id": snapshot.message_id,
        "direction": "outbound",
        "from_number": snapshot.from_number,
        "to_number": snapshot.to_number,
        "business_account_id": snapshot.business_account_id,
        "message_type": "text",
        "content": PLACEHOLDER_CONTENT,
        "status": snapshot.status,
        "timestamp": snapshot.timestamp,
        "record_kind": STATUS_ONLY,
        "provider_metadata": {**snapshot.metadata, "status_update_only": True},
    }


def is_newer(snapshot: Snapshot, row: WhatsAppMessage) -> bool:
    """Whether the snapshot's status/timestamp pair supersedes the row's."""

    incoming = as_utc(snapshot.timestamp)
    stored = as_utc(row.timestamp)
    if incoming != stored:
        return incoming > stored
    if snapshot.status == row.status:
        return False
    return STATUS_RANK.get(snapshot.status, 0) >= STATUS_RANK.get(row.status, 0)


def merge_snapshot(row: WhatsAppMessage, snapshot: Snapshot) -> MergeResult:
    """Merge one snapshot into an existing row in place.

    * The status/timestamp pair moves only forward in time, with one exception
      below.
    * A `Materialized` snapshot promotes a `StatusOnly` placeholder: message
      fields (including direction) come from the message, the row keeps its
      identity.
    * If that promotion flips the direction, the placeholder's status described
      an outbound delivery that never existed, so the message's own
      status/timestamp pair replaces it even when older.
    * A `StatusOnly` snapshot never touches message content.
    """

    result = MergeResult(status_applied=is_newer(snapshot, row))

    if isinstance(snapshot, Materialized):
        if row.record_kind == STATUS_ONLY or result.status_applied:
            result.promoted = row.record_kind == STATUS_ONLY
            if result.promoted and row.direction != snapshot.direction:
                result.status_applied = True
            row.direction = snapshot.direction
            row.from_number = snapshot.from_number
            row.to_number = snapshot.to_number
            row.business_account_id = snapshot.business_account_id or row.business_account_id
            row.message_type = snapshot.message_type
            row.content = snapshot.content
            row.record_kind = MATERIALIZED
            metadata = {k: v for k, v in (row.provider_metadata or {}).items() if k != "status_update_only"}
            metadata.update(snapshot.metadata)
            row.provider_metadata = metadata
    elif result.status_applied and snapshot.metadata:
        row.provider_metadata = {**(row.provider_metadata or {}), **snapshot.metadata}

    if result.status_applied:
        row.status = snapshot.status
        row.timestamp = snapshot.timestamp
    return result


def conversation_partner(row: WhatsAppMessage) -> str | None:
    """Customer number that keys the conversation a message belongs to."""

    return row.to_number if row.direction == "outbound" else row.from_number
