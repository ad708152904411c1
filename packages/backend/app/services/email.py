from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from app.core.settings import settings


logger = logging.getLogger(__name__)

_HTML_TAG_PATTERN = re.compile(r"<\s*(html|body|div|p|br|table|a|span|h[1-6]|ul|ol|li|strong|em)\b", re.IGNORECASE)


class EmailDeliveryError(Exception):
    pass


class EmailSender(Protocol):
    async def send_email(
        self,
        *,
        recipient_email: str,
        subject: str,
        html_body: str,
    ) -> None: ...


@dataclass
class StubEmailSender:
    """Development sender: logs instead of delivering."""

    enabled: bool = True

    async def send_email(
        self,
        *,
        recipient_email: str,
        subject: str,
        html_body: str,
    ) -> None:
        if not self.enabled:
            return
        logger.info("email (stub) to=%s subject=%r bytes=%d", recipient_email, subject, len(html_body))


@dataclass
class SmtpEmailSender:
    host: str
    port: int
    username: str | None
    password: str | None
    use_tls: bool
    timeout_seconds: float
    from_address: str
    from_name: str

    async def send_email(
        self,
        *,
        recipient_email: str,
        subject: str,
        html_body: str,
    ) -> None:
        message = EmailMessage()
        message["From"] = f"{self.from_name} <{self.from_address}>"
        message["To"] = recipient_email
        message["Subject"] = subject
        message.set_content(html_to_text(html_body))
        message.add_alternative(html_body, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
                timeout=self.timeout_seconds,
            )
        except aiosmtplib.SMTPResponseException as exc:
            raise EmailDeliveryError(f"smtp {exc.code}: {exc.message}") from exc
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"smtp delivery failed: {exc}") from exc


def build_email_sender() -> EmailSender:
    if not settings.smtp_host:
        return StubEmailSender()
    return SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        timeout_seconds=settings.smtp_timeout_seconds,
        from_address=settings.mail_from_address,
        from_name=settings.mail_from_name,
    )


def looks_like_html(body: str) -> bool:
    return bool(_HTML_TAG_PATTERN.search(body))


def html_to_text(body: str) -> str:
    without_tags = re.sub(r"<[^>]+>", " ", body)
    return re.sub(r"\s+", " ", html.unescape(without_tags)).strip()


def wrap_plain_text(body: str) -> str:
    if looks_like_html(body):
        return body
    paragraphs = [html.escape(chunk).replace("\n", "<br>") for chunk in body.strip().split("\n\n")]
    inner = "".join(f"<p>{paragraph}</p>" for paragraph in paragraphs if paragraph)
    return f"<!DOCTYPE html><html><body>{inner}</body></html>"


def build_share_invitation(*, sender_name: str, item_name: str) -> tuple[str, str]:
    subject = f"{sender_name} wants to share a Passwall item with you"
    signup_link = f"{settings.frontend_base_url.rstrip('/')}/signup"
    body = wrap_plain_text(
        f"{sender_name} tried to share \"{item_name}\" with you.\n\n"
        f"Create a Passwall account to receive it: {signup_link}"
    )
    return subject, body


def build_share_notification(*, sender_name: str, item_name: str) -> tuple[str, str]:
    subject = f"{sender_name} shared a Passwall item with you"
    body = wrap_plain_text(f"{sender_name} shared \"{item_name}\" with you. Open Passwall to view it.")
    return subject, body
