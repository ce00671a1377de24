"""Provider webhook signature verification using HMAC-SHA256."""

import hashlib
import hmac

from ledgerlink.common.errors import SignatureVerificationError, WebhookConfigurationError
from ledgerlink.common.logging import logger


def generate_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, as sent by both providers."""

    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """
    Verify a webhook body against its received signature.

    Args:
        payload: Raw request body bytes
        signature: Received signature header value; a `sha256=` prefix is accepted
        secret: Shared webhook secret

    Returns:
        True if the signature matches, False if it is missing or wrong

    Raises:
        WebhookConfigurationError: If no secret is configured
    """
    if not secret:
        raise WebhookConfigurationError()
    if not signature:
        return False

    received = signature.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]
    expected = generate_signature(payload, secret)
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(received.lower(), expected)


def require_valid_signature(
    payload: bytes,
    signature: str | None,
    secret: str | None,
    provider: str,
    allow_unsigned: bool = False,
) -> None:
    """Raise unless the body is signed correctly.

    A missing signature passes only when `allow_unsigned` is explicitly set,
    which is meant for test environments.
    """
    if not signature and allow_unsigned:
        if not secret:
            raise WebhookConfigurationError()
        logger.warning("unsigned webhook accepted provider=%s allow_unsigned_webhooks=true", provider)
        return
    if not signature:
        raise SignatureVerificationError("Missing signature")
    if not verify_signature(payload, signature, secret):
        raise SignatureVerificationError("Invalid signature")
