from crm_inbox.models.agent_settings import AgentSettings
from crm_inbox.models.channel_setting import ChannelSetting
from crm_inbox.models.client import Client
from crm_inbox.models.message import Message
from crm_inbox.models.notification import NotificationLog, NotificationTemplate, NotificationTrigger
from crm_inbox.models.policy import Policy
from crm_inbox.models.sale import Sale

__all__ = [
    "AgentSettings",
    "ChannelSetting",
    "Client",
    "Message",
    "NotificationLog",
    "NotificationTemplate",
    "NotificationTrigger",
    "Policy",
    "Sale",
]
