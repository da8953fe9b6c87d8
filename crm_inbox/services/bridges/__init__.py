from crm_inbox.models import ChannelSetting
from crm_inbox.services.bridges.base import CompanionSessionBridge, OutboundMessage, SessionBridge, SessionCheck
from crm_inbox.services.bridges.max import MaxBotBridge, MaxWebBridge
from crm_inbox.services.bridges.telegram import TelegramBotBridge, TelegramUserBridge, build_telegram_bridge
from crm_inbox.services.bridges.whatsapp import WhatsAppBusinessBridge, WhatsAppWebBridge
from crm_inbox.services.channel_config import (
    MaxConfig,
    MaxWebConfig,
    TelegramConfig,
    WhatsAppConfig,
    WhatsAppWebConfig,
    parse_channel_config,
)


def build_bridge(setting: ChannelSetting) -> SessionBridge:
    """Pick the adapter for a stored channel setting.

    Raises ChannelConfigError for malformed configs and ValueError for
    channels without an outbound bridge (sms).
    """
    config = parse_channel_config(setting.channel, setting.config)

    if isinstance(config, TelegramConfig):
        return build_telegram_bridge(config)
    if isinstance(config, WhatsAppConfig):
        if config.mode == "business_api":
            return WhatsAppBusinessBridge(config.api_key, config.phone_number_id)
        # web mode piggybacks on the linked-device session kept by the companion bridge
        return WhatsAppWebBridge(config.model_extra.get("auth_payload"), setting.status, setting.is_active)
    if isinstance(config, WhatsAppWebConfig):
        return WhatsAppWebBridge(config.auth_payload, setting.status, setting.is_active)
    if isinstance(config, MaxConfig):
        return MaxBotBridge(config.token)
    if isinstance(config, MaxWebConfig):
        return MaxWebBridge(config.auth_payload, setting.status, setting.is_active)
    raise ValueError(f"No bridge for channel {setting.channel}")


__all__ = [
    "CompanionSessionBridge",
    "MaxBotBridge",
    "MaxWebBridge",
    "OutboundMessage",
    "SessionBridge",
    "SessionCheck",
    "TelegramBotBridge",
    "TelegramUserBridge",
    "WhatsAppBusinessBridge",
    "WhatsAppWebBridge",
    "build_bridge",
]
