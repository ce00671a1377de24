"""Startup-time config report and webhook readiness warnings."""

from ledgerlink.common.config import CommonSettings
from ledgerlink.common.logging import logger


_REDACTED_MARKERS = ("secret", "token", "password", "dsn")


def _safe_value(name: str, value):
    if value is None or value == "":
        return "<unset>"
    if any(marker in name for marker in _REDACTED_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(config: CommonSettings, fields: list[str]) -> list[str]:
    """Log selected settings with secrets redacted; returns readiness warnings.

    A missing webhook secret is not fatal at boot: the matching endpoint
    answers 500 until it is configured.
    """

    report = {"service": config.service_name}
    for name in fields:
        report[name] = _safe_value(name, getattr(config, name, None))
    logger.info("startup_config=%s", report)

    warnings = []
    if not config.razorpay_webhook_secret:
        warnings.append("RAZORPAY_WEBHOOK_SECRET is not set; payment webhooks will be rejected")
    if config.whatsapp_verify_signatures and not config.whatsapp_webhook_secret:
        warnings.append("WHATSAPP_WEBHOOK_SECRET is not set; messaging webhooks will be rejected")
    if not config.whatsapp_verify_token:
        warnings.append("WHATSAPP_VERIFY_TOKEN is not set; subscription handshakes will fail")
    if config.allow_unsigned_webhooks:
        warnings.append("ALLOW_UNSIGNED_WEBHOOKS is enabled; requests without a signature are accepted")
    if not config.whatsapp_access_token or not config.whatsapp_phone_number_id:
        warnings.append("WhatsApp API credentials are not set; welcome messages will stay queued")
    for warning in warnings:
        logger.warning(warning)
    return warnings
