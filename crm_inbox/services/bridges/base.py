from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from crm_inbox.logging_config import get_logger
from crm_inbox.services.result import Result

logger = get_logger("bridges")


@dataclass
class SessionCheck:
    valid: bool
    reason: Optional[str] = None
    not_configured: bool = False
    session_expired: bool = False
    profile: dict = field(default_factory=dict)


@dataclass
class OutboundMessage:
    target: str  # chat id, phone or username, depending on the channel
    text: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None  # photo, video, document, audio, voice


class SessionBridge(ABC):
    """Adapter over one messenger backend (bot API, user session, companion bridge)."""

    channel: str = ""

    @abstractmethod
    async def check_session(self) -> SessionCheck:
        """Check whether the stored credentials still work."""
        pass

    @abstractmethod
    async def send(self, message: OutboundMessage) -> Result[str]:
        """Deliver a message. On success the value is the provider message id."""
        pass


class CompanionSessionBridge(SessionBridge):
    """Web-session channels (WhatsApp Web, MAX Web) driven by a companion bridge service.

    The companion keeps the browser-like session alive; we hold only the
    auth payload it handed back when the agent scanned the QR code.
    """

    def __init__(self, bridge_url: str, auth_payload: Optional[dict], status: str, is_active: bool = True):
        self.bridge_url = bridge_url.rstrip("/")
        self.auth_payload = auth_payload
        self.status = status
        self.is_active = is_active

    @property
    def session_active(self) -> bool:
        return bool(self.is_active and self.status == "connected" and self.auth_payload)

    async def check_session(self) -> SessionCheck:
        if not self.auth_payload:
            return SessionCheck(valid=False, reason="No session", not_configured=True)
        # the stored status is only a hint; the companion decides
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    f"{self.bridge_url}/session/check",
                    json={"channel": self.channel, "auth_payload": self.auth_payload},
                )
            data = response.json()
        except Exception as e:
            logger.warning(f"Companion bridge unreachable: {e}", extra={"context": {"channel": self.channel}})
            return SessionCheck(valid=False, reason=str(e))

        if data.get("connected"):
            return SessionCheck(valid=True, profile=data.get("profile") or {})
        return SessionCheck(
            valid=False,
            reason=data.get("reason") or "Session rejected by bridge",
            session_expired=bool(data.get("expired")),
        )

    async def send(self, message: OutboundMessage) -> Result[str]:
        if not self.session_active:
            return Result.failure(f"{self.channel} session is not connected", "not_connected")
        payload = {
            "channel": self.channel,
            "auth_payload": self.auth_payload,
            "to": message.target,
            "text": message.text,
        }
        if message.media_url:
            payload["media_url"] = message.media_url
            payload["media_type"] = message.media_type
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(f"{self.bridge_url}/messages", json=payload)
            data = response.json()
        except Exception as e:
            logger.error(f"Companion bridge send failed: {e}", extra={"context": {"channel": self.channel}})
            return Result.failure(str(e), "bridge_unreachable")

        if response.status_code != 200 or not data.get("id"):
            return Result.failure(data.get("error") or f"Bridge error {response.status_code}", "send_failed")
        return Result.success(str(data["id"]))
