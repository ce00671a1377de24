"""Payment webhook reconciliation.

Matches provider payment events against the local payment ledger, absorbing
redelivery, multiple attempts per order and out-of-order status changes.
Captured payments complete their registration and enqueue a welcome message in
the same transaction; the message itself is sent later by the notifier.
"""

from dataclasses import dataclass

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ledgerlink.common.config import settings
from ledgerlink.common.errors import LedgerUnavailableError
from ledgerlink.common.locks import KeyedLock
from ledgerlink.common.logging import logger
from ledgerlink.common.metrics import payment_reconciliations_total
from ledgerlink.common.state_machine import validate_transition
from ledgerlink.common.upsert import insert_if_absent
from ledgerlink.services.notifier.models import NotificationOutbox
from ledgerlink.services.payments.models import Payment, Registration
from ledgerlink.services.payments.schemas import PaymentEntity


@dataclass(frozen=True)
class NoRecord:
    """No attempt matches; `sibling` is any other attempt for the same order."""

    sibling: Payment | None


@dataclass(frozen=True)
class PendingMatch:
    """Attempt created at checkout that has not been assigned a payment id yet."""

    payment: Payment


@dataclass(frozen=True)
class ResolvedMatch:
    """Attempt already carrying the incoming payment id (redelivery or progress)."""

    payment: Payment


LedgerMatch = NoRecord | PendingMatch | ResolvedMatch


@dataclass
class ReconcileResult:
    """What one payment webhook did to the ledger."""

    outcome: str
    payment_id: str | None = None
    status: str | None = None
    registration_completed: bool = False
    notification_enqueued: bool = False


_METADATA_FIELDS = (
    "method",
    "fee",
    "tax",
    "captured",
    "error_code",
    "error_description",
    "error_source",
    "error_step",
    "error_reason",
)


class PaymentReconciler:
    """Owns the payment ledger side of payment-provider webhooks."""

    def __init__(self, session_factory, locks: KeyedLock | None = None) -> None:
        self.session_factory = session_factory
        self.locks = locks or KeyedLock()

    def create_order(self, registration_id: int, order_id: str, amount: int, currency: str) -> Payment:
        """Create the pending attempt checkout records for a new order, once per order id."""

        with self.session_factory() as db:
            existing = self._pending_or_first(db, order_id)
            if existing:
                return existing
            payment = Payment(
                registration_id=registration_id,
                order_id=order_id,
                provider_payment_id=None,
                status="created",
                amount=amount,
                currency=currency.upper(),
            )
            db.add(payment)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._pending_or_first(db, order_id)
            logger.info("payment order created order_id=%s registration_id=%s", order_id, registration_id)
            return payment

    def payments_for_order(self, order_id: str) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at))
                .scalars()
                .all()
            )

    def _pending_or_first(self, db, order_id: str) -> Payment | None:
        return (
            db.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.provider_payment_id.is_not(None), Payment.created_at)
                .limit(1)
            )
            .scalars()
            .first()
        )

    def lookup(self, db, order_id: str, provider_payment_id: str) -> LedgerMatch:
        """Classify the ledger state for one incoming (order id, payment id) pair.

        An attempt with the exact payment id wins over the pending attempt.
        """

        candidate = (
            db.execute(
                select(Payment)
                .where(
                    Payment.order_id == order_id,
                    or_(
                        Payment.provider_payment_id == provider_payment_id,
                        Payment.provider_payment_id.is_(None),
                    ),
                )
                .order_by(Payment.provider_payment_id.is_(None))
                .limit(1)
                .with_for_update()
            )
            .scalars()
            .first()
        )
        if candidate is None:
            sibling = (
                db.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at).limit(1))
                .scalars()
                .first()
            )
            return NoRecord(sibling=sibling)
        if candidate.provider_payment_id is None:
            return PendingMatch(payment=candidate)
        return ResolvedMatch(payment=candidate)

    async def reconcile(
        self,
        provider_payment_id: str,
        new_status: str,
        order_id: str,
        signature_context: str | None = None,
        provider_entity: PaymentEntity | None = None,
    ) -> ReconcileResult:
        """Apply one payment event; safe to call any number of times per delivery.

        Raises LedgerUnavailableError on persistence failures so the caller can
        answer 5xx and let the provider redeliver.
        """

        async with self.locks.hold(order_id):
            try:
                try:
                    result = self._reconcile_locked(
                        provider_payment_id, new_status, order_id, signature_context, provider_entity
                    )
                except IntegrityError:
                    # Another process inserted the same attempt first; its row is visible now.
                    logger.warning(
                        "concurrent payment write order_id=%s payment_id=%s, retrying",
                        order_id,
                        provider_payment_id,
                    )
                    result = self._reconcile_locked(
                        provider_payment_id, new_status, order_id, signature_context, provider_entity
                    )
            except SQLAlchemyError as exc:
                logger.error("payment ledger failure order_id=%s error=%s", order_id, exc)
                raise LedgerUnavailableError(str(exc), operation="payment_reconcile") from exc
        payment_reconciliations_total.labels(outcome=result.outcome, status=new_status).inc()
        return result

    def _reconcile_locked(
        self,
        provider_payment_id: str,
        new_status: str,
        order_id: str,
        signature_context: str | None,
        provider_entity: PaymentEntity | None,
    ) -> ReconcileResult:
        with self.session_factory() as db:
            match = self.lookup(db, order_id, provider_payment_id)

            if isinstance(match, NoRecord):
                if match.sibling is None:
                    logger.info(
                        "payment webhook ignored, unknown order order_id=%s payment_id=%s status=%s",
                        order_id,
                        provider_payment_id,
                        new_status,
                    )
                    return ReconcileResult(outcome="ignored", status=new_status)
                payment = self._insert_attempt(db, match.sibling, provider_payment_id, new_status, provider_entity)
                payment.provider_signature = signature_context
                outcome = "retry_attempt"
                logger.info(
                    "new payment attempt recorded order_id=%s payment_id=%s status=%s",
                    order_id,
                    provider_payment_id,
                    new_status,
                )
            elif isinstance(match, PendingMatch):
                payment = match.payment
                payment.provider_payment_id = provider_payment_id
                outcome = self._apply(payment, new_status, signature_context, provider_entity)
            else:
                payment = match.payment
                outcome = self._apply(payment, new_status, signature_context, provider_entity)

            result = ReconcileResult(outcome=outcome, payment_id=payment.id, status=payment.status)
            if payment.status == "captured":
                result.registration_completed = self._complete_registration(db, payment)
                result.notification_enqueued = self._enqueue_welcome(db, payment)
            db.commit()

        logger.info(
            "payment reconciled order_id=%s payment_id=%s outcome=%s status=%s",
            order_id,
            provider_payment_id,
            result.outcome,
            result.status,
        )
        return result

    def _insert_attempt(
        self,
        db,
        sibling: Payment,
        provider_payment_id: str,
        new_status: str,
        provider_entity: PaymentEntity | None,
    ) -> Payment:
        payment = Payment(
            registration_id=sibling.registration_id,
            order_id=sibling.order_id,
            provider_payment_id=provider_payment_id,
            status=new_status,
            amount=sibling.amount,
            currency=sibling.currency,
            is_retry_attempt=True,
        )
        self._merge_metadata(payment, provider_entity)
        db.add(payment)
        db.flush()
        return payment

    def _apply(
        self,
        payment: Payment,
        new_status: str,
        signature_context: str | None,
        provider_entity: PaymentEntity | None,
    ) -> str:
        """Merge provider data and move the status; returns the outcome tag."""

        if payment.status == new_status:
            self._merge_metadata(payment, provider_entity)
            return "duplicate"
        try:
            validate_transition(payment.status, new_status)
        except ValueError:
            logger.warning(
                "payment transition ignored payment_id=%s current=%s incoming=%s",
                payment.provider_payment_id,
                payment.status,
                new_status,
            )
            return "stale"
        self._merge_metadata(payment, provider_entity)
        payment.status = new_status
        if signature_context:
            payment.provider_signature = signature_context
        return "updated"

    def _merge_metadata(self, payment: Payment, provider_entity: PaymentEntity | None) -> None:
        if provider_entity is None:
            return
        for field in _METADATA_FIELDS:
            value = getattr(provider_entity, field)
            if value is not None:
                setattr(payment, field, value)

    def _complete_registration(self, db, payment: Payment) -> bool:
        """Flip the registration to completed; returns True only on the first flip."""

        result = db.execute(
            update(Registration)
            .where(Registration.id == payment.registration_id, Registration.status != "completed")
            .values(status="completed")
        )
        if result.rowcount:
            logger.info("registration completed registration_id=%s", payment.registration_id)
        return bool(result.rowcount)

    def _enqueue_welcome(self, db, payment: Payment) -> bool:
        registration = db.get(Registration, payment.registration_id)
        if registration is None:
            logger.warning(
                "welcome message skipped, registration missing registration_id=%s",
                payment.registration_id,
            )
            return False
        return insert_if_absent(
            db,
            NotificationOutbox,
            {
                "payment_id": payment.id,
                "registration_id": registration.id,
                "phone": registration.phone,
                "display_name": registration.name,
                "body": welcome_message(registration.name, registration.course_title),
                "template": settings.whatsapp_welcome_template,
            },
            index_elements=["payment_id"],
        )


def welcome_message(name: str, course_title: str) -> str:
    message = (
        f"Hi {name}, your registration for {course_title} is confirmed. "
        "Reply to this message if you have any questions."
    )
    if settings.whatsapp_group_invite_url:
        message += f"\nJoin the course group: {settings.whatsapp_group_invite_url}"
    return message
