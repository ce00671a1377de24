"""Webhook, live stream and read endpoints.

Reconcilers and the broadcaster live on `app.state`; see `main.create_app`.
"""

import json
from time import perf_counter, time

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from ledgerlink.common.config import settings
from ledgerlink.common.errors import (
    LedgerUnavailableError,
    PayloadValidationError,
    SignatureVerificationError,
    WebhookConfigurationError,
)
from ledgerlink.common.logging import bind_webhook_context, logger, order_id_ctx
from ledgerlink.common.metrics import (
    webhook_processing_seconds,
    webhook_signature_failures_total,
    webhooks_received_total,
)
from ledgerlink.common.signatures import require_valid_signature
from ledgerlink.common.tracing import tracer
from ledgerlink.services.messaging.schemas import OutboundMessageRequest
from ledgerlink.services.messaging.service import message_to_dict
from ledgerlink.services.payments.schemas import OrderCreateRequest, PaymentResponse, parse_payment_webhook

router = APIRouter()


def _parse_json(raw_body: bytes) -> dict:
    try:
        body = json.loads(raw_body)
    except ValueError as exc:
        raise PayloadValidationError("body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise PayloadValidationError("body must be a JSON object")
    return body


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
):
    """Reconcile one payment-provider event.

    200 for processed and ignored events, 400 for signature or payload
    problems, 500 when the ledger is unavailable so the provider retries.
    """

    raw_body = await request.body()
    bind_webhook_context("razorpay", x_razorpay_event_id, request.headers.get("x-correlation-id"))

    try:
        require_valid_signature(
            raw_body,
            x_razorpay_signature,
            settings.razorpay_webhook_secret,
            provider="razorpay",
            allow_unsigned=settings.allow_unsigned_webhooks,
        )
    except WebhookConfigurationError as exc:
        logger.error("payment webhook rejected: %s", exc.message)
        webhooks_received_total.labels(provider="razorpay", outcome="misconfigured").inc()
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except SignatureVerificationError as exc:
        logger.warning("payment webhook signature rejected: %s", exc.message)
        webhook_signature_failures_total.labels(provider="razorpay", reason=exc.message).inc()
        webhooks_received_total.labels(provider="razorpay", outcome="rejected").inc()
        raise HTTPException(status_code=400, detail=exc.message) from exc

    try:
        event = parse_payment_webhook(_parse_json(raw_body))
    except PayloadValidationError as exc:
        logger.warning("payment webhook payload rejected: %s", exc.message)
        webhooks_received_total.labels(provider="razorpay", outcome="invalid").inc()
        raise HTTPException(status_code=400, detail=exc.message) from exc

    if event is None:
        logger.info("payment webhook event not handled")
        webhooks_received_total.labels(provider="razorpay", outcome="unhandled").inc()
        return {"success": True, "outcome": "unhandled"}

    order_id_ctx.set(event.order_id)
    start = perf_counter()
    try:
        with tracer.start_as_current_span("payment.reconcile") as span:
            span.set_attribute("payment.order_id", event.order_id)
            span.set_attribute("payment.event", event.event)
            result = await request.app.state.payments.reconcile(
                event.payment.id,
                event.status,
                event.order_id,
                signature_context=event.payment.signature,
                provider_entity=event.payment,
            )
            span.set_attribute("payment.outcome", result.outcome)
    except LedgerUnavailableError as exc:
        webhooks_received_total.labels(provider="razorpay", outcome="retry").inc()
        raise HTTPException(status_code=500, detail="Webhook processing failed") from exc
    finally:
        webhook_processing_seconds.labels(provider="razorpay").observe(max(0.0, perf_counter() - start))

    webhooks_received_total.labels(provider="razorpay", outcome=result.outcome).inc()
    return {"success": True, "outcome": result.outcome, "status": result.status}


@router.get("/webhooks/payments")
def payment_webhook_status():
    """Reachability check some providers call when the webhook is registered."""

    return {"message": "Payment webhook endpoint is active"}


@router.get("/webhooks/whatsapp")
def whatsapp_verify(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the verify token matches."""

    expected = settings.whatsapp_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        logger.info("whatsapp webhook verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("whatsapp webhook verification failed mode=%s", hub_mode)
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request, x_hub_signature_256: str | None = Header(default=None)):
    """Reconcile every message and status event in one delivery."""

    raw_body = await request.body()
    bind_webhook_context("whatsapp", trace_id=request.headers.get("x-correlation-id"))

    if settings.whatsapp_verify_signatures:
        try:
            require_valid_signature(
                raw_body,
                x_hub_signature_256,
                settings.whatsapp_webhook_secret,
                provider="whatsapp",
                allow_unsigned=settings.allow_unsigned_webhooks,
            )
        except WebhookConfigurationError as exc:
            logger.error("whatsapp webhook rejected: %s", exc.message)
            webhooks_received_total.labels(provider="whatsapp", outcome="misconfigured").inc()
            return PlainTextResponse("Internal Server Error", status_code=500)
        except SignatureVerificationError as exc:
            logger.warning("whatsapp webhook signature rejected: %s", exc.message)
            webhook_signature_failures_total.labels(provider="whatsapp", reason=exc.message).inc()
            webhooks_received_total.labels(provider="whatsapp", outcome="rejected").inc()
            return PlainTextResponse("Unauthorized", status_code=401)
    else:
        logger.info("whatsapp webhook signature verification disabled")

    try:
        body = _parse_json(raw_body)
    except PayloadValidationError as exc:
        logger.warning("whatsapp webhook payload rejected: %s", exc.message)
        webhooks_received_total.labels(provider="whatsapp", outcome="invalid").inc()
        return PlainTextResponse("Bad Request", status_code=400)

    start = perf_counter()
    try:
        with tracer.start_as_current_span("whatsapp.process_webhook"):
            counts = await request.app.state.messaging.process_webhook(body)
    except LedgerUnavailableError:
        webhooks_received_total.labels(provider="whatsapp", outcome="retry").inc()
        return PlainTextResponse("Internal Server Error", status_code=500)
    finally:
        webhook_processing_seconds.labels(provider="whatsapp").observe(max(0.0, perf_counter() - start))

    logger.info(
        "whatsapp webhook processed messages=%s statuses=%s skipped=%s",
        counts["messages"],
        counts["statuses"],
        counts["skipped"],
    )
    webhooks_received_total.labels(provider="whatsapp", outcome="processed").inc()
    return PlainTextResponse("OK")


@router.get("/events/stream")
async def event_stream(request: Request):
    """Server-Sent Events stream of live ledger changes."""

    broadcaster = request.app.state.broadcaster
    subscription = broadcaster.subscribe()

    async def frames():
        try:
            async for frame in subscription.frames():
                yield frame
        finally:
            # Runs when the client disconnects and the response task is cancelled.
            broadcaster.unsubscribe(subscription)

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/internal/payments/orders", response_model=PaymentResponse)
def create_order(req: OrderCreateRequest, request: Request):
    """Record the pending attempt for an order checkout just created."""

    payment = request.app.state.payments.create_order(req.registration_id, req.order_id, req.amount, req.currency)
    return PaymentResponse.model_validate(payment)


@router.get("/payments/{order_id}", response_model=list[PaymentResponse])
def get_order_payments(order_id: str, request: Request):
    """All payment attempts recorded for one order."""

    payments = request.app.state.payments.payments_for_order(order_id)
    if not payments:
        raise HTTPException(status_code=404, detail="order not found")
    return [PaymentResponse.model_validate(p) for p in payments]


@router.get("/whatsapp/conversations")
def list_conversations(request: Request, page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100)):
    conversations = request.app.state.messaging.list_conversations(limit=limit, offset=(page - 1) * limit)
    return {"conversations": conversations, "page": page, "limit": limit}


@router.get("/whatsapp/conversations/{phone_number}")
def list_conversation_messages(
    phone_number: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    messages = request.app.state.messaging.list_messages(phone_number, limit=limit, offset=(page - 1) * limit)
    return {"phone_number": phone_number, "messages": messages, "page": page, "limit": limit}


@router.get("/whatsapp/messages/{message_id}")
def get_message(message_id: str, request: Request):
    row = request.app.state.messaging.get_message(message_id)
    if row is None:
        raise HTTPException(status_code=404, detail="message not found")
    return message_to_dict(row)


@router.post("/whatsapp/messages")
async def send_message(req: OutboundMessageRequest, request: Request):
    """Send an operator text message, then record it in the message ledger.

    The ledger write merges into a status placeholder if a delivery status for
    the new message id was reconciled first.
    """

    if not req.to or not req.message:
        return JSONResponse({"success": False, "error": "Missing required fields: to, message"}, status_code=400)
    if req.type != "text":
        return JSONResponse({"success": False, "error": f"Unsupported message type: {req.type}"}, status_code=400)

    attempted_at = int(time())
    result = await request.app.state.whatsapp.send_text(req.to, req.message)
    if not result.success or not result.message_id:
        logger.warning("operator message not sent to=%s error=%s", req.to, result.error)
        return JSONResponse({"success": False, "error": result.error or "Failed to send message"}, status_code=500)

    recorded = True
    try:
        await request.app.state.messaging.record_outbound_message(
            message_id=result.message_id,
            from_number=settings.whatsapp_phone_number_id or None,
            to_number=result.to or req.to,
            business_account_id=settings.whatsapp_business_account_id or None,
            message_type="text",
            content=req.message,
            timestamp_seconds=attempted_at,
            metadata={"sent_via": "operator_api"},
        )
    except LedgerUnavailableError:
        # Sent already; answering 5xx would invite a duplicate send.
        recorded = False

    logger.info("operator message sent message_id=%s recorded=%s", result.message_id, recorded)
    return {
        "success": True,
        "message": "Message sent successfully",
        "data": {
            "messageId": result.message_id,
            "to": req.to,
            "message": req.message,
            "type": req.type,
            "recorded": recorded,
        },
    }
