"""Custom exceptions for webhook reconciliation."""


class LedgerLinkError(Exception):
    """Base exception for reconciliation errors."""

    pass


class SignatureVerificationError(LedgerLinkError):
    """Raised when a webhook signature is missing or does not match."""

    def __init__(self, message: str = "Signature verification failed"):
        self.message = message
        super().__init__(self.message)


class WebhookConfigurationError(LedgerLinkError):
    """Raised when a webhook secret required for verification is not configured."""

    def __init__(self, message: str = "Webhook secret not configured"):
        self.message = message
        super().__init__(self.message)


class PayloadValidationError(LedgerLinkError):
    """Raised when a webhook body cannot be parsed into a known event."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class LedgerUnavailableError(LedgerLinkError):
    """Retryable persistence failure; surfaced as 5xx so the provider redelivers."""

    def __init__(self, message: str, operation: str | None = None):
        self.message = message
        self.operation = operation
        super().__init__(self.message)
