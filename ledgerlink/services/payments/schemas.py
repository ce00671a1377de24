"""Payment webhook envelope and API schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ledgerlink.common.errors import PayloadValidationError


EVENT_STATUS = {
    "payment.authorized": "authorized",
    "payment.captured": "captured",
    "payment.failed": "failed",
    "order.paid": "captured",
}


class PaymentEntity(BaseModel):
    """Payment entity nested in a provider event (amounts in minor units)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    method: str | None = None
    captured: bool | None = None
    fee: int | None = None
    tax: int | None = None
    signature: str | None = None
    error_code: str | None = None
    error_description: str | None = None
    error_source: str | None = None
    error_step: str | None = None
    error_reason: str | None = None


class PaymentWebhookEvent(BaseModel):
    """A reconcilable payment event extracted from one webhook delivery."""

    event: str
    status: str
    order_id: str
    payment: PaymentEntity


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any] | None:
    container = payload.get(name)
    if not isinstance(container, dict):
        return None
    entity = container.get("entity")
    return entity if isinstance(entity, dict) else None


def parse_payment_webhook(body: dict[str, Any]) -> PaymentWebhookEvent | None:
    """Map a provider envelope to a reconcilable event.

    Returns None for event types this service does not reconcile and for
    `order.paid` deliveries that carry no payment entity.
    """

    event_name = body.get("event")
    if not isinstance(event_name, str):
        raise PayloadValidationError("missing event name")
    status = EVENT_STATUS.get(event_name)
    if status is None:
        return None

    payload = body.get("payload")
    if not isinstance(payload, dict):
        raise PayloadValidationError("missing payload")
    payment_raw = _entity(payload, "payment")
    if payment_raw is None:
        if event_name == "order.paid":
            return None
        raise PayloadValidationError("missing payment entity")
    try:
        payment = PaymentEntity(**payment_raw)
    except ValidationError as exc:
        raise PayloadValidationError(f"invalid payment entity: {exc.error_count()} errors") from exc

    order_id = payment.order_id
    if event_name == "order.paid":
        order_raw = _entity(payload, "order") or {}
        order_id = order_raw.get("id") or order_id
    if not order_id:
        raise PayloadValidationError("missing order id")
    return PaymentWebhookEvent(event=event_name, status=status, order_id=order_id, payment=payment)


class OrderCreateRequest(BaseModel):
    """Pending payment created by checkout before the provider confirms it."""

    registration_id: int
    order_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)


class PaymentResponse(BaseModel):
    """Payment attempt as returned to internal callers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    registration_id: int
    order_id: str
    provider_payment_id: str | None
    status: str
    amount: int
    currency: str
    method: str | None = None
    is_retry_attempt: bool = False
