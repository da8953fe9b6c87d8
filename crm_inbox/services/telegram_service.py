from pathlib import Path
from typing import Optional

import httpx

from crm_inbox.logging_config import get_logger

logger = get_logger("telegram_service")


class TelegramService:
    """Thin client for the Telegram Bot API."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    MEDIA_METHODS = {
        "photo": "sendPhoto",
        "video": "sendVideo",
        "document": "sendDocument",
        "audio": "sendAudio",
        "voice": "sendVoice",
    }

    def __init__(self, bot_token: str, timeout: float = 30.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout = timeout

    def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                if files:
                    response = client.post(url, data=data or {}, files=files)
                else:
                    response = client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}", extra={"context": {"method": method}})
            return {"ok": False, "error": str(e)}

    def get_me(self) -> dict:
        """Identify the bot behind the token. Fails if the token was revoked."""
        return self._make_request("getMe")

    def send_message(self, chat_id: str, text: str) -> dict:
        """Send message to Telegram chat."""
        data = {"chat_id": chat_id, "text": text}
        return self._make_request("sendMessage", data)

    def send_media(self, chat_id: str, media_type: str, media: str, caption: Optional[str] = None) -> dict:
        """Send photo/video/document/audio/voice by URL or local path."""
        method = self.MEDIA_METHODS.get(media_type, "sendDocument")
        field = media_type if media_type in self.MEDIA_METHODS else "document"

        data = {"chat_id": chat_id}
        if caption:
            data["caption"] = caption

        if media.startswith("http://") or media.startswith("https://"):
            data[field] = media
            return self._make_request(method, data=data)

        path = Path(media)
        with path.open("rb") as handle:
            return self._make_request(method, data=data, files={field: handle})
