"""Transactional email over the SendGrid v3 API."""

import base64
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class EmailDeliveryError(Exception):
    """The email provider did not accept the message."""


@dataclass
class InlineAttachment:
    content: bytes
    filename: str
    mime_type: str
    content_id: str

    @classmethod
    def from_file(cls, path: str, content_id: str, mime_type: str = "image/jpeg") -> Optional["InlineAttachment"]:
        file = Path(path)
        if not path or not file.is_file():
            return None
        return cls(
            content=file.read_bytes(),
            filename=file.name,
            mime_type=mime_type,
            content_id=content_id,
        )

    def to_dict(self) -> dict:
        return {
            "content": base64.b64encode(self.content).decode("ascii"),
            "filename": self.filename,
            "type": self.mime_type,
            "disposition": "inline",
            "content_id": self.content_id,
        }


class SendGridMailer:
    """Minimal SendGrid sender."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.from_email = from_email or settings.billing_from_email
        self.from_name = from_name or settings.billing_from_name
        self._transport = transport

    def build_message(
        self,
        to: str,
        to_name: str,
        subject: str,
        html: str,
        attachments: Optional[list[InlineAttachment]] = None,
    ) -> dict:
        message = {
            "personalizations": [
                {"to": [{"email": to, "name": to_name}], "subject": subject}
            ],
            "from": {"email": self.from_email, "name": self.from_name},
            "content": [{"type": "text/html", "value": html}],
        }
        if attachments:
            message["attachments"] = [a.to_dict() for a in attachments]
        return message

    async def send(
        self,
        to: str,
        to_name: str,
        subject: str,
        html: str,
        attachments: Optional[list[InlineAttachment]] = None,
    ) -> None:
        if not self.api_key:
            raise EmailDeliveryError("SendGrid API key is not configured")

        message = self.build_message(to, to_name, subject, html, attachments)
        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                resp = await client.post(
                    SENDGRID_URL,
                    json=message,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"SendGrid request failed: {e}") from e

        if not resp.is_success:
            logger.error("SendGrid API error %s: %s", resp.status_code, resp.text)
            raise EmailDeliveryError(f"SendGrid API error: {resp.status_code}")

        logger.info("Email '%s' sent to %s", subject, to)
