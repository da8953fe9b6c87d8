import asyncio
from typing import Callable, Optional

from telethon import TelegramClient
from telethon.sessions import StringSession

from crm_inbox.logging_config import get_logger
from crm_inbox.services.bridges.base import OutboundMessage, SessionBridge, SessionCheck
from crm_inbox.services.channel_config import TelegramConfig
from crm_inbox.services.result import Result
from crm_inbox.services.telegram_service import TelegramService

logger = get_logger("bridges.telegram")

# Telethon/MTProto errors meaning the stored session can never be used again
REVOKED_SESSION_MARKERS = (
    "AUTH_KEY_UNREGISTERED",
    "SESSION_EXPIRED",
    "SESSION_REVOKED",
    "USER_DEACTIVATED",
    "AUTH_KEY_DUPLICATED",
)


def is_revoked_session_error(error: Exception) -> bool:
    text = f"{type(error).__name__} {error}".upper()
    compact = text.replace("_", "")
    return any(marker in text or marker.replace("_", "") in compact for marker in REVOKED_SESSION_MARKERS)


def user_client(config: TelegramConfig) -> TelegramClient:
    return TelegramClient(StringSession(config.session_string), int(config.api_id), config.api_hash)


class TelegramBotBridge(SessionBridge):
    channel = "telegram"

    def __init__(self, config: TelegramConfig, service: Optional[TelegramService] = None):
        self.config = config
        self.service = service or (TelegramService(config.bot_token) if config.bot_token else None)

    async def check_session(self) -> SessionCheck:
        if self.service is None:
            return SessionCheck(valid=False, reason="Missing Telegram Token", not_configured=True)

        data = await asyncio.to_thread(self.service.get_me)
        if data.get("ok"):
            return SessionCheck(valid=True, profile=data.get("result") or {})
        reason = data.get("description") or data.get("error") or "getMe failed"
        # 401 from the Bot API means the token was revoked in BotFather
        return SessionCheck(valid=False, reason=reason, session_expired=data.get("error_code") == 401)

    async def send(self, message: OutboundMessage) -> Result[str]:
        if self.service is None:
            return Result.failure("Missing Telegram Token", "not_configured")

        if message.media_url:
            data = await asyncio.to_thread(
                self.service.send_media, message.target, message.media_type or "document", message.media_url, message.text or None
            )
        else:
            data = await asyncio.to_thread(self.service.send_message, message.target, message.text)

        if not data.get("ok"):
            return Result.failure(data.get("description") or data.get("error") or "Telegram send failed", "send_failed")
        return Result.success(str(data["result"]["message_id"]))


class TelegramUserBridge(SessionBridge):
    """Personal account connected over MTProto with a Telethon string session."""

    channel = "telegram"

    def __init__(self, config: TelegramConfig, client_factory: Optional[Callable[[], TelegramClient]] = None):
        self.config = config
        self._client_factory = client_factory or (lambda: user_client(config))

    async def check_session(self) -> SessionCheck:
        missing = self.config.missing_credentials()
        if missing:
            return SessionCheck(valid=False, reason=missing, not_configured=True)

        client = None
        try:
            # a corrupt session string fails right here
            client = self._client_factory()
            await client.connect()
            if not await client.is_user_authorized():
                return SessionCheck(valid=False, reason="Session is not authorized", session_expired=True)
            me = await client.get_me()
            if me is None:
                return SessionCheck(valid=False, reason="getMe returned empty result")
            profile = {"id": me.id, "username": getattr(me, "username", None), "phone": getattr(me, "phone", None)}
            return SessionCheck(valid=True, profile=profile)
        except Exception as e:
            expired = is_revoked_session_error(e)
            logger.warning(
                "Telegram session check failed",
                extra={"context": {"error": str(e), "session_expired": expired}},
            )
            return SessionCheck(valid=False, reason=str(e), session_expired=expired)
        finally:
            if client is not None:
                await client.disconnect()

    async def send(self, message: OutboundMessage) -> Result[str]:
        if not self.config.session_string:
            return Result.failure("Telegram session is not authorized", "not_configured")

        try:
            entity = int(message.target)
        except ValueError:
            entity = message.target

        client = None
        try:
            client = self._client_factory()
            await client.connect()
            if message.media_url:
                sent = await client.send_file(entity, file=message.media_url, caption=message.text or "")
            else:
                sent = await client.send_message(entity, message.text)
            return Result.success(str(sent.id))
        except Exception as e:
            code = "session_expired" if is_revoked_session_error(e) else "send_failed"
            logger.error(f"Telethon send error: {e}", extra={"context": {"target": message.target}})
            return Result.failure(str(e), code)
        finally:
            if client is not None:
                await client.disconnect()


def build_telegram_bridge(config: TelegramConfig) -> SessionBridge:
    if config.connection_type == "user_api":
        return TelegramUserBridge(config)
    return TelegramBotBridge(config)
