from typing import Optional

import httpx

from crm_inbox.config import settings
from crm_inbox.logging_config import get_logger
from crm_inbox.services.bridges.base import CompanionSessionBridge, OutboundMessage, SessionBridge, SessionCheck
from crm_inbox.services.result import Result

logger = get_logger("bridges.whatsapp")


class WhatsAppBusinessBridge(SessionBridge):
    """WhatsApp Cloud API (``mode=business_api``)."""

    channel = "whatsapp"

    def __init__(self, api_key: Optional[str], phone_number_id: Optional[str], base_url: Optional[str] = None):
        self.api_key = api_key
        self.phone_number_id = phone_number_id
        self.base_url = (base_url or settings.whatsapp_graph_url).rstrip("/")

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def check_session(self) -> SessionCheck:
        if not self.api_key or not self.phone_number_id:
            return SessionCheck(valid=False, reason="Missing WhatsApp Business API key", not_configured=True)
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.get(f"{self.base_url}/{self.phone_number_id}", headers=self._headers)
        except Exception as e:
            return SessionCheck(valid=False, reason=str(e))

        if response.status_code == 200:
            return SessionCheck(valid=True, profile=response.json())
        return SessionCheck(
            valid=False,
            reason=f"WhatsApp API error {response.status_code}",
            session_expired=response.status_code == 401,
        )

    async def send(self, message: OutboundMessage) -> Result[str]:
        if not self.api_key or not self.phone_number_id:
            return Result.failure("Missing WhatsApp Business API key", "not_configured")

        payload = {"messaging_product": "whatsapp", "to": message.target.lstrip("+")}
        if message.media_url and message.media_type in ("photo", "video", "document", "audio"):
            kind = "image" if message.media_type == "photo" else message.media_type
            payload["type"] = kind
            payload[kind] = {"link": message.media_url}
            if message.text and kind != "audio":
                payload[kind]["caption"] = message.text
        else:
            payload["type"] = "text"
            payload["text"] = {"body": message.text}

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.base_url}/{self.phone_number_id}/messages", headers=self._headers, json=payload
                )
            data = response.json()
        except Exception as e:
            logger.error(f"WhatsApp API error: {e}")
            return Result.failure(str(e), "send_failed")

        if response.status_code != 200:
            error = (data.get("error") or {}).get("message") or f"WhatsApp API error {response.status_code}"
            return Result.failure(error, "send_failed")
        messages = data.get("messages") or [{}]
        return Result.success(messages[0].get("id"))


class WhatsAppWebBridge(CompanionSessionBridge):
    """Linked-device WhatsApp session held by the companion bridge."""

    channel = "whatsapp_web"

    def __init__(self, auth_payload: Optional[dict], status: str, is_active: bool = True, bridge_url: Optional[str] = None):
        super().__init__(bridge_url or settings.whatsapp_bridge_url, auth_payload, status, is_active)
