"""Per-channel credential configs, validated when they cross the store boundary.

Each channel stores a differently shaped JSON blob in ``channel_settings.config``.
The blob is parsed into one variant of a tagged union keyed by channel, so the
rest of the code never reads raw dict keys.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    WHATSAPP_WEB = "whatsapp_web"
    TELEGRAM = "telegram"
    MAX = "max"
    MAX_WEB = "max_web"
    SMS = "sms"


class ChannelStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    NOT_CONFIGURED = "not_configured"


class ChannelConfigError(ValueError):
    def __init__(self, channel: str, detail: str):
        self.channel = channel
        self.detail = detail
        super().__init__(f"Invalid config for channel {channel}: {detail}")


class _BaseConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    def missing_credentials(self) -> Optional[str]:
        """Return a human-readable reason if the channel cannot send, else None."""
        return None


class WhatsAppConfig(_BaseConfig):
    channel: Literal["whatsapp"] = "whatsapp"
    phone: Optional[str] = None
    mode: Literal["web", "business_api"] = "web"
    api_key: Optional[str] = None
    phone_number_id: Optional[str] = None

    def missing_credentials(self) -> Optional[str]:
        if self.mode == "business_api" and not self.api_key:
            return "Missing WhatsApp Business API key"
        return None


class WhatsAppWebConfig(_BaseConfig):
    channel: Literal["whatsapp_web"] = "whatsapp_web"
    session_token: Optional[str] = None
    auth_payload: Optional[dict] = None
    qr_value: Optional[str] = None
    profile_name: Optional[str] = None

    def missing_credentials(self) -> Optional[str]:
        if not self.auth_payload:
            return "WhatsApp Web session is not linked"
        return None


class TelegramConfig(_BaseConfig):
    channel: Literal["telegram"] = "telegram"
    connection_type: Literal["bot", "user_api"] = "bot"
    bot_token: Optional[str] = None
    api_id: Optional[str] = None
    api_hash: Optional[str] = None
    session_string: Optional[str] = None
    phone: Optional[str] = None

    def missing_credentials(self) -> Optional[str]:
        if self.connection_type == "user_api":
            if not (self.api_id and self.api_hash):
                return "Missing Telegram API credentials"
            if not self.session_string:
                return "Telegram session is not authorized"
            return None
        if not self.bot_token:
            return "Missing Telegram Token"
        return None


class MaxConfig(_BaseConfig):
    channel: Literal["max"] = "max"
    api_key: Optional[str] = None
    bot_token: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self.api_key or self.bot_token

    def missing_credentials(self) -> Optional[str]:
        if not self.token:
            return "Missing Max API key"
        return None


class MaxWebConfig(_BaseConfig):
    channel: Literal["max_web"] = "max_web"
    auth_payload: Optional[dict] = None
    profile_name: Optional[str] = None

    def missing_credentials(self) -> Optional[str]:
        if not self.auth_payload:
            return "MAX Web session is not linked"
        return None


class SmsConfig(_BaseConfig):
    channel: Literal["sms"] = "sms"
    sender: Optional[str] = None
    api_key: Optional[str] = None

    def missing_credentials(self) -> Optional[str]:
        if not self.api_key:
            return "Missing SMS API key"
        return None


ChannelConfig = Annotated[
    Union[WhatsAppConfig, WhatsAppWebConfig, TelegramConfig, MaxConfig, MaxWebConfig, SmsConfig],
    Field(discriminator="channel"),
]

_config_adapter = TypeAdapter(ChannelConfig)


def parse_channel_config(channel: str, raw: Optional[dict]) -> ChannelConfig:
    """Validate a raw config blob for ``channel``.

    Raises ChannelConfigError for unknown channels or malformed configs.
    """
    try:
        Channel(channel)
    except ValueError:
        raise ChannelConfigError(channel, "unknown channel")

    data = dict(raw or {})
    data["channel"] = channel
    try:
        return _config_adapter.validate_python(data)
    except ValidationError as e:
        raise ChannelConfigError(channel, str(e))


def dump_channel_config(config: ChannelConfig) -> dict:
    """Serialize for storage; the channel tag lives in its own column.

    Defaulted fields such as ``connection_type`` are written out explicitly.
    """
    return config.model_dump(exclude={"channel"}, exclude_none=True)
