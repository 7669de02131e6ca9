"""Channel adapters, selected by channel type through a lookup table."""

from core.enums import ChannelType
from core.notifications.channels.base import ChannelAdapter, MessageContent
from core.notifications.channels.email import EmailChannel
from core.notifications.channels.gateway import GatewayChannel, PushChannel, SmsChannel


def build_adapters() -> dict[ChannelType, ChannelAdapter]:
    """Adapters configured from environment variables."""
    return {
        ChannelType.email: EmailChannel.from_env(),
        ChannelType.sms: SmsChannel.from_env(),
        ChannelType.push: PushChannel.from_env(),
    }


__all__ = [
    "ChannelAdapter",
    "MessageContent",
    "EmailChannel",
    "GatewayChannel",
    "SmsChannel",
    "PushChannel",
    "build_adapters",
]
