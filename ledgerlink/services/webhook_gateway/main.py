"""Webhook gateway API + background worker lifecycle.

Receives payment and messaging webhooks, streams live ledger changes to
viewers, and drains the notification outbox in the background.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request

from ledgerlink.common.config import settings
from ledgerlink.common.db import SessionLocal
from ledgerlink.common.logging import configure_logging
from ledgerlink.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from ledgerlink.common.startup import log_startup_config
from ledgerlink.common.tracing import instrument_app, setup_tracing
from ledgerlink.services.broadcaster.service import EventBroadcaster
from ledgerlink.services.messaging.service import MessagingReconciler
from ledgerlink.services.notifier.client import WhatsAppClient
from ledgerlink.services.notifier.service import NotificationDispatcher
from ledgerlink.services.payments.service import PaymentReconciler
from ledgerlink.services.webhook_gateway.routes import router

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "log_level",
        "postgres_dsn",
        "razorpay_webhook_secret",
        "whatsapp_webhook_secret",
        "whatsapp_verify_signatures",
        "allow_unsigned_webhooks",
        "whatsapp_phone_number_id",
        "whatsapp_welcome_template",
        "heartbeat_interval_seconds",
        "notification_max_attempts",
        "tracing_enabled",
    ],
)


def create_app(
    session_factory=SessionLocal,
    whatsapp_client: WhatsAppClient | None = None,
    run_workers: bool = True,
) -> FastAPI:
    """Wire reconcilers, broadcaster and notifier into one FastAPI app."""

    broadcaster = EventBroadcaster(queue_size=settings.subscriber_queue_size)
    payments = PaymentReconciler(session_factory)
    messaging = MessagingReconciler(session_factory, broadcaster)
    client = whatsapp_client or WhatsAppClient.from_settings()
    dispatcher = NotificationDispatcher(
        session_factory,
        client,
        messaging=messaging,
        max_attempts=settings.notification_max_attempts,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run heartbeat + outbox dispatcher with app lifecycle."""

        tasks = []
        if run_workers:
            tasks.append(asyncio.create_task(broadcaster.run_heartbeats(settings.heartbeat_interval_seconds)))
            tasks.append(
                asyncio.create_task(dispatcher.run_forever(settings.notification_poll_interval_seconds))
            )
        yield
        for task in tasks:
            task.cancel()
        broadcaster.close_all()
        await client.aclose()

    app = FastAPI(title="LedgerLink Webhook Gateway", lifespan=lifespan)
    app.state.broadcaster = broadcaster
    app.state.payments = payments
    app.state.messaging = messaging
    app.state.dispatcher = dispatcher
    app.state.whatsapp = client
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    app.include_router(router)

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True, "live_connections": broadcaster.size}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()
