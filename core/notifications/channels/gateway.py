"""HTTP gateway channels (SMS and push) over httpx."""

import os

import httpx

from core.enums import ChannelType
from core.notifications.channels.base import ChannelAdapter, MessageContent
from core.notifications.errors import PermanentDeliveryError, TransientDeliveryError


class GatewayChannel(ChannelAdapter):
    """
    POSTs a JSON payload to a provider gateway.

    Timeouts, transport errors, 429 and 5xx are transient; other 4xx are permanent.
    The gateway's response "id" is used as the provider reference.
    """

    def __init__(
        self,
        url: str | None,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=10.0)

    def build_payload(self, user_id: str, content: MessageContent, address: str | None) -> dict:
        raise NotImplementedError

    async def send(self, user_id, content, address=None):
        if not self.url:
            raise PermanentDeliveryError(f"{self.provider} gateway URL not configured")

        payload = self.build_payload(user_id, content, address)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self._client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"{self.provider} gateway timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"{self.provider} gateway unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"{self.provider} gateway returned {response.status_code}"
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"{self.provider} gateway rejected message: {response.status_code} {response.text}"
            )

        try:
            data = response.json() if response.content else {}
        except ValueError:
            return None
        ref = data.get("id") if isinstance(data, dict) else None
        return str(ref) if ref is not None else None

    async def aclose(self):
        await self._client.aclose()


class SmsChannel(GatewayChannel):
    channel = ChannelType.sms
    provider = "sms-gateway"

    @classmethod
    def from_env(cls) -> "SmsChannel":
        return cls(
            url=os.environ.get("SMS_GATEWAY_URL"),
            token=os.environ.get("SMS_GATEWAY_TOKEN"),
        )

    def build_payload(self, user_id, content, address):
        if not address:
            raise PermanentDeliveryError(f"No phone number for user {user_id}")
        text = f"{content.title}: {content.body}" if content.title else content.body
        return {"to": address, "text": text, "reference": user_id}


class PushChannel(GatewayChannel):
    channel = ChannelType.push
    provider = "push-gateway"

    @classmethod
    def from_env(cls) -> "PushChannel":
        return cls(
            url=os.environ.get("PUSH_GATEWAY_URL"),
            token=os.environ.get("PUSH_GATEWAY_TOKEN"),
        )

    def build_payload(self, user_id, content, address):
        # Without a device token the gateway fans out to all of the user's devices
        return {
            "user_id": user_id,
            "device_token": address,
            "title": content.title,
            "body": content.body,
        }
