from typing import Optional

import httpx

from crm_inbox.config import settings
from crm_inbox.logging_config import get_logger
from crm_inbox.services.bridges.base import CompanionSessionBridge, OutboundMessage, SessionBridge, SessionCheck
from crm_inbox.services.result import Result

logger = get_logger("bridges.max")

# MAX Bot API attachment kinds for our media taxonomy
_ATTACHMENT_TYPES = {"photo": "image", "video": "video", "document": "file", "audio": "audio", "voice": "audio"}


class MaxBotBridge(SessionBridge):
    """MAX Bot API. The token goes into the Authorization header as is."""

    channel = "max"

    def __init__(self, token: Optional[str], base_url: Optional[str] = None):
        self.token = token
        self.base_url = (base_url or settings.max_api_url).rstrip("/")

    async def check_session(self) -> SessionCheck:
        if not self.token:
            return SessionCheck(valid=False, reason="Missing Max API key", not_configured=True)
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.get(f"{self.base_url}/me", headers={"Authorization": self.token})
        except Exception as e:
            return SessionCheck(valid=False, reason=str(e))

        if response.status_code == 200:
            return SessionCheck(valid=True, profile=response.json())
        return SessionCheck(
            valid=False,
            reason=f"MAX API error {response.status_code}",
            session_expired=response.status_code == 401,
        )

    async def send(self, message: OutboundMessage) -> Result[str]:
        if not self.token:
            return Result.failure("Missing Max API key", "not_configured")

        body = {"text": message.text}
        if message.media_url:
            kind = _ATTACHMENT_TYPES.get(message.media_type or "", "file")
            body["attachments"] = [{"type": kind, "payload": {"url": message.media_url}}]

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    f"{self.base_url}/messages",
                    params={"chat_id": message.target},
                    headers={"Authorization": self.token, "Content-Type": "application/json"},
                    json=body,
                )
            data = response.json()
        except Exception as e:
            logger.error(f"MAX API error: {e}")
            return Result.failure(str(e), "send_failed")

        if response.status_code != 200:
            return Result.failure(data.get("message") or f"MAX API error {response.status_code}", "send_failed")
        mid = ((data.get("message") or {}).get("body") or {}).get("mid")
        return Result.success(mid)


class MaxWebBridge(CompanionSessionBridge):
    channel = "max_web"

    def __init__(self, auth_payload: Optional[dict], status: str, is_active: bool = True, bridge_url: Optional[str] = None):
        super().__init__(bridge_url or settings.max_web_bridge_url, auth_payload, status, is_active)
