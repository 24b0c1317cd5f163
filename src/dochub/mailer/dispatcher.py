from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Protocol
from uuid import uuid4

import requests

from dochub.config import Settings, get_settings
from dochub.errors import DispatchFailure

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | Path) -> EmailAttachment:
        file_path = Path(path)
        if not file_path.is_file():
            raise DispatchFailure(f"attachment not found: {file_path}", path=str(file_path))
        mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        return cls(filename=file_path.name, content=file_path.read_bytes(), mime_type=mime_type)


class EmailDispatcher(Protocol):
    def send(
        self,
        *,
        to: str,
        subject: str,
        body: str,
        attachments: list[EmailAttachment],
        timeout: float,
    ) -> str: ...


class SendGridDispatcher:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.endpoint = settings.sendgrid_base_url.rstrip("/") + "/mail/send"

    def send(
        self,
        *,
        to: str,
        subject: str,
        body: str,
        attachments: list[EmailAttachment],
        timeout: float,
    ) -> str:
        if not self.settings.sendgrid_api_key:
            raise DispatchFailure("SendGrid API key is not configured")

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.settings.email_from_address, "name": self.settings.email_from_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(item.content).decode("ascii"),
                    "filename": item.filename,
                    "type": item.mime_type,
                    "disposition": "attachment",
                }
                for item in attachments
            ]

        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise DispatchFailure(f"SendGrid request timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise DispatchFailure(f"SendGrid request failed: {exc}") from exc

        if response.status_code >= 300:
            logger.warning("SendGrid rejected message to=%s status=%s", to, response.status_code)
            raise DispatchFailure(
                f"SendGrid rejected the message with status {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )

        message_id = response.headers.get("X-Message-Id") or uuid4().hex
        logger.info("SendGrid accepted message to=%s message_id=%s", to, message_id)
        return message_id


class OutboxDispatcher:
    """Writes each message as an .eml file instead of delivering it."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.outbox_dir = settings.outbox_dir

    def send(
        self,
        *,
        to: str,
        subject: str,
        body: str,
        attachments: list[EmailAttachment],
        timeout: float,
    ) -> str:
        if not to:
            raise DispatchFailure("recipient address is empty")

        message_id = uuid4().hex
        message = EmailMessage()
        message["From"] = formataddr((self.settings.email_from_name, self.settings.email_from_address))
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(idstring=message_id)
        message.set_content(body)
        for item in attachments:
            maintype, _, subtype = item.mime_type.partition("/")
            message.add_attachment(
                item.content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=item.filename,
            )

        try:
            self.outbox_dir.mkdir(parents=True, exist_ok=True)
            (self.outbox_dir / f"{message_id}.eml").write_bytes(message.as_bytes())
        except OSError as exc:
            raise DispatchFailure(f"could not write message to outbox: {exc}") from exc

        logger.info("Message written to outbox to=%s message_id=%s", to, message_id)
        return message_id


def build_dispatcher(settings: Settings | None = None) -> EmailDispatcher:
    settings = settings or get_settings()
    if settings.email_provider == "sendgrid":
        return SendGridDispatcher(settings)
    return OutboxDispatcher(settings)
