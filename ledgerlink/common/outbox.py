"""Reusable helpers for the transactional notification outbox.

Reconciliation writes outbox rows in the same transaction as the ledger change;
the dispatcher claims, sends and acknowledges them later with these helpers.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from ledgerlink.common.metrics import notification_outbox_pending


def claim_outbox_batch(db, outbox_model, limit: int = 20, processing_timeout_seconds: int = 60) -> list[dict]:
    """Atomically claim a batch of due pending/stale rows for sending."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                (table.c.status == "PENDING") & (table.c.available_at <= now),
                (table.c.status == "PROCESSING") & (table.c.claimed_at.is_not(None)) & (table.c.claimed_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", claimed_at=now, attempts=table.c.attempts + 1)
        .returning(
            table.c.id,
            table.c.payment_id,
            table.c.phone,
            table.c.display_name,
            table.c.body,
            table.c.template,
            table.c.attempts,
        )
    ).all()
    return [dict(row._mapping) for row in rows]


def mark_outbox_sent(db, outbox_model, row_id: str, provider_message_id: str | None) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == row_id, table.c.status == "PROCESSING")
        .values(
            status="SENT",
            sent_at=datetime.now(timezone.utc),
            provider_message_id=provider_message_id,
            last_error=None,
        )
    )


def requeue_outbox_event(db, outbox_model, row_id: str, attempts: int, max_attempts: int, error: str) -> str:
    """Return a claimed row to `PENDING` with backoff, or park it as `FAILED`.

    Returns the status the row was moved to.
    """

    table = outbox_model.__table__
    if attempts >= max_attempts:
        status = "FAILED"
        available_at = datetime.now(timezone.utc)
    else:
        status = "PENDING"
        # Exponential backoff: 2s, 4s, 8s, ...
        available_at = datetime.now(timezone.utc) + timedelta(seconds=2**attempts)
    db.execute(
        update(table)
        .where(table.c.id == row_id, table.c.status == "PROCESSING")
        .values(status=status, claimed_at=None, available_at=available_at, last_error=error[:500])
    )
    return status


def update_outbox_backlog_metrics(db, outbox_model) -> None:
    """Update the gauge for rows still waiting to be sent."""

    table = outbox_model.__table__
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(("PENDING", "PROCESSING")))
    ).scalar_one()
    notification_outbox_pending.set(float(pending_count))
