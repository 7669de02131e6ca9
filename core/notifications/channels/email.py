"""SendGrid email delivery channel."""

import asyncio
import os
import re

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.enums import ChannelType
from core.notifications.channels.base import ChannelAdapter, MessageContent
from core.notifications.errors import PermanentDeliveryError, TransientDeliveryError

# Regex to match markdown links: [text](url)
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")

DEFAULT_SUBJECT = "You have a new notification"


def markdown_to_html(text: str) -> str:
    """
    Convert markdown-style links to HTML and wrap in basic HTML structure.

    Converts [text](url) to <a href="url">text</a> and preserves line breaks.
    """
    html_body = MARKDOWN_LINK_PATTERN.sub(r'<a href="\2">\1</a>', text)
    html_body = html_body.replace("\n", "<br>\n")

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.5; color: #333;">
{html_body}
</body>
</html>"""


def markdown_to_plain_text(text: str) -> str:
    """Convert [text](url) to text (url) for the plain text part."""
    return MARKDOWN_LINK_PATTERN.sub(r"\1 (\2)", text)


def classify_status(status_code: int | None) -> type[Exception]:
    """4xx (except 429) is the provider refusing the message; anything else may clear up."""
    if status_code is not None and 400 <= status_code < 500 and status_code != 429:
        return PermanentDeliveryError
    return TransientDeliveryError


class EmailChannel(ChannelAdapter):
    channel = ChannelType.email
    provider = "sendgrid"

    def __init__(
        self,
        api_key: str | None,
        from_email: str,
        from_name: str,
        client: SendGridAPIClient | None = None,
    ):
        self.from_email = from_email
        self.from_name = from_name
        self._client = client or (SendGridAPIClient(api_key) if api_key else None)

    @classmethod
    def from_env(cls) -> "EmailChannel":
        return cls(
            api_key=os.environ.get("SENDGRID_API_KEY"),
            from_email=os.environ.get("FROM_EMAIL", "notifications@example.com"),
            from_name=os.environ.get("FROM_NAME", "Notifications"),
        )

    def build_message(self, to_email: str, content: MessageContent) -> Mail:
        return Mail(
            from_email=(self.from_email, self.from_name),
            to_emails=to_email,
            subject=content.title or DEFAULT_SUBJECT,
            plain_text_content=markdown_to_plain_text(content.body),
            html_content=markdown_to_html(content.body),
        )

    async def send(self, user_id, content, address=None):
        if self._client is None:
            raise PermanentDeliveryError("SendGrid not configured (SENDGRID_API_KEY not set)")
        if not address:
            raise PermanentDeliveryError(f"No email address for user {user_id}")

        message = self.build_message(address, content)
        try:
            # The SendGrid client is blocking
            response = await asyncio.to_thread(self._client.send, message)
        except Exception as e:
            error_cls = classify_status(getattr(e, "status_code", None))
            raise error_cls(f"SendGrid error for user {user_id}: {e}") from e

        if response.status_code not in (200, 201, 202):
            error_cls = classify_status(response.status_code)
            raise error_cls(f"SendGrid returned {response.status_code} for user {user_id}")

        headers = getattr(response, "headers", None) or {}
        return headers.get("X-Message-Id")
