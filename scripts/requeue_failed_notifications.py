"""Move FAILED notification outbox rows back to PENDING.

Run after fixing provider credentials; the dispatcher picks them up on its next
poll. Reads POSTGRES_DSN from the environment like the gateway does.
"""

import argparse
from datetime import datetime, timezone

from sqlalchemy import select, update

from ledgerlink.common.db import SessionLocal
from ledgerlink.services.notifier.models import NotificationOutbox


def main() -> None:
    """CLI entrypoint for requeueing parked notifications."""

    parser = argparse.ArgumentParser(description="Requeue FAILED notification outbox rows.")
    parser.add_argument("--payment-id", default=None, help="Only requeue the row for this payment")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    with SessionLocal() as db:
        condition = NotificationOutbox.status == "FAILED"
        if args.payment_id:
            condition = condition & (NotificationOutbox.payment_id == args.payment_id)
        rows = db.execute(select(NotificationOutbox.id, NotificationOutbox.last_error).where(condition)).all()
        for row in rows:
            print(f"outbox_id={row.id} last_error={row.last_error}")
        if args.dry_run:
            print(f"Dry run only; {len(rows)} rows would be requeued.")
            return
        db.execute(
            update(NotificationOutbox)
            .where(condition)
            .values(status="PENDING", attempts=0, available_at=datetime.now(timezone.utc), claimed_at=None)
        )
        db.commit()
        print(f"Requeued {len(rows)} rows.")


if __name__ == "__main__":
    main()
