"""Central environment-driven settings for the webhook gateway.

The process loads this once at startup. Provider secrets and feature switches
are controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "webhook-gateway"
    log_level: str = "INFO"
    postgres_dsn: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    razorpay_webhook_secret: str | None = None
    whatsapp_webhook_secret: str | None = None
    whatsapp_verify_token: str | None = None
    whatsapp_verify_signatures: bool = True
    # Test-mode only: lets webhooks without a signature header through with a warning.
    allow_unsigned_webhooks: bool = False

    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_business_account_id: str = ""
    whatsapp_api_version: str = "v21.0"
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_welcome_template: str = "registration_welcome"
    whatsapp_group_invite_url: str = ""

    heartbeat_interval_seconds: float = 30.0
    subscriber_queue_size: int = 256
    notification_max_attempts: int = 5
    notification_poll_interval_seconds: float = 1.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
