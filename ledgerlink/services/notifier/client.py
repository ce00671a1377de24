"""WhatsApp Cloud API client used for best-effort outbound messages."""

import re
from dataclasses import dataclass

import httpx

from ledgerlink.common.config import settings
from ledgerlink.common.logging import logger


@dataclass
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    to: str | None = None


def format_phone_number(phone: str) -> str:
    """Digits only, with the Indian country code added to bare 10-digit numbers."""

    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        return f"91{cleaned}"
    return cleaned


class WhatsAppClient:
    """Sends template messages through the Graph API messages endpoint."""

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v21.0",
        base_url: str = "https://graph.facebook.com",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "WhatsAppClient":
        return cls(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            api_version=settings.whatsapp_api_version,
            base_url=settings.whatsapp_api_base_url,
        )

    async def send_template(self, phone: str, display_name: str, body: str, template: str | None = None) -> SendResult:
        """Send one message; failures come back as `success=False`, never as exceptions."""

        if not template:
            return await self.send_text(phone, body)
        to = format_phone_number(phone)
        return await self._post(
            to,
            {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "template",
                "template": {
                    "name": template,
                    "language": {"code": "en"},
                    "components": [
                        {"type": "body", "parameters": [{"type": "text", "text": display_name}]}
                    ],
                },
            },
        )

    async def send_text(self, phone: str, body: str) -> SendResult:
        to = format_phone_number(phone)
        return await self._post(to, {"messaging_product": "whatsapp", "to": to, "type": "text", "text": {"body": body}})

    async def _post(self, to: str, payload: dict) -> SendResult:
        if not self.access_token or not self.phone_number_id:
            logger.error("whatsapp credentials not configured")
            return SendResult(success=False, error="WhatsApp API credentials not configured")

        url = f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"
        try:
            resp = await self._client.post(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                json=payload,
            )
        except httpx.HTTPError as exc:
            logger.warning("whatsapp send failed to=%s error=%s", to, exc)
            return SendResult(success=False, error=str(exc), to=to)

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            error = (data.get("error") or {}).get("message") or f"HTTP {resp.status_code}"
            logger.warning("whatsapp api rejected message to=%s status=%s error=%s", to, resp.status_code, error)
            return SendResult(success=False, error=error, to=to)

        messages = data.get("messages") or [{}]
        return SendResult(success=True, message_id=messages[0].get("id"), to=to)

    async def aclose(self) -> None:
        await self._client.aclose()
