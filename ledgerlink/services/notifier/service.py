"""Notification dispatcher: drains the outbox written by payment reconciliation.

Sending happens after, and independently of, the webhook that enqueued the
message. Send failures are retried with backoff and never reach the ledger.
"""

import asyncio
import time

from ledgerlink.common.config import settings
from ledgerlink.common.logging import logger
from ledgerlink.common.metrics import notifications_total
from ledgerlink.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from ledgerlink.services.messaging.service import MessagingReconciler
from ledgerlink.services.notifier.client import SendResult, WhatsAppClient
from ledgerlink.services.notifier.models import NotificationOutbox


class NotificationDispatcher:
    """Claims pending outbox rows and sends them through the WhatsApp client."""

    def __init__(
        self,
        session_factory,
        client: WhatsAppClient,
        messaging: MessagingReconciler | None = None,
        max_attempts: int = 5,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.messaging = messaging
        self.max_attempts = max_attempts

    async def dispatch_once(self, limit: int = 20) -> int:
        """Send one batch; returns how many rows were delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, NotificationOutbox, limit=limit)
            update_outbox_backlog_metrics(db, NotificationOutbox)
            db.commit()

        sent = 0
        for row in rows:
            # Taken before the call so later provider status events always supersede it.
            attempted_at = int(time.time())
            try:
                result = await self.client.send_template(
                    row["phone"], row["display_name"], row["body"], row["template"]
                )
            except Exception as exc:
                logger.exception("notification send raised outbox_id=%s", row["id"])
                result = SendResult(success=False, error=str(exc))

            with self.session_factory() as db:
                if result.success:
                    mark_outbox_sent(db, NotificationOutbox, row["id"], result.message_id)
                else:
                    status = requeue_outbox_event(
                        db,
                        NotificationOutbox,
                        row["id"],
                        attempts=row["attempts"],
                        max_attempts=self.max_attempts,
                        error=result.error or "unknown error",
                    )
                    logger.warning(
                        "notification not sent outbox_id=%s payment_id=%s attempts=%s next_status=%s error=%s",
                        row["id"],
                        row["payment_id"],
                        row["attempts"],
                        status,
                        result.error,
                    )
                update_outbox_backlog_metrics(db, NotificationOutbox)
                db.commit()

            if not result.success:
                notifications_total.labels(result="failed").inc()
                continue
            sent += 1
            notifications_total.labels(result="sent").inc()
            logger.info("notification sent outbox_id=%s provider_message_id=%s", row["id"], result.message_id)
            await self._record_sent(row, result, attempted_at)
        return sent

    async def _record_sent(self, row: dict, result: SendResult, attempted_at: int) -> None:
        if self.messaging is None or not result.message_id:
            return
        metadata = {"sent_via": "notification_outbox", "outbox_id": row["id"]}
        if row["template"]:
            # The provider renders the template; the ledger keeps what was requested.
            content = f"[Template] {row['template']}"
            metadata.update(template=row["template"], template_parameters=[row["display_name"]])
        else:
            content = row["body"]
        try:
            await self.messaging.record_outbound_message(
                message_id=result.message_id,
                from_number=settings.whatsapp_phone_number_id or None,
                to_number=result.to or row["phone"],
                business_account_id=settings.whatsapp_business_account_id or None,
                message_type="template" if row["template"] else "text",
                content=content,
                timestamp_seconds=attempted_at,
                metadata=metadata,
            )
        except Exception as exc:
            # Already delivered; its status webhooks still create a placeholder row.
            logger.error("failed to record sent message message_id=%s error=%s", result.message_id, exc)

    async def run_forever(self, poll_interval_seconds: float = 1.0) -> None:
        """Continuously drain the outbox."""

        while True:
            try:
                await self.dispatch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("notification dispatcher loop error: %s", exc)
            await asyncio.sleep(poll_interval_seconds)
