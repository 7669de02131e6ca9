"""Channel adapter contract shared by every transport."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from core.enums import ChannelType


@dataclass
class MessageContent:
    """What a channel actually sends."""

    body: str
    title: str | None = None


class ChannelAdapter(ABC):
    """
    One implementation per channel type.

    send() returns a provider reference on success and raises
    TransientDeliveryError (retry) or PermanentDeliveryError (give up).
    """

    channel: ChannelType
    provider: str

    @abstractmethod
    async def send(
        self, user_id: str, content: MessageContent, address: str | None = None
    ) -> str | None:
        ...

    async def aclose(self) -> None:
        return None
