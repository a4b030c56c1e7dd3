from __future__ import annotations

from email.message import EmailMessage
from email.utils import formataddr, make_msgid
import logging

import aiosmtplib

from webengine.core.config import Settings, get_settings
from webengine.core.errors import MailDeliveryError
from webengine.providers.mail.base import OutgoingEmail


logger = logging.getLogger(__name__)


class SmtpMailTransport:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def build_message(self, message: OutgoingEmail) -> EmailMessage:
        settings = self._settings
        email = EmailMessage()
        email["From"] = formataddr((settings.mail_from_name, settings.mail_from_address))
        email["To"] = ", ".join(message.to)
        email["Subject"] = message.subject
        email["Message-ID"] = make_msgid()
        for key, value in message.headers.items():
            email[key] = value
        email.set_content(message.text_body)
        if message.html_body:
            email.add_alternative(message.html_body, subtype="html")
        return email

    async def send(self, message: OutgoingEmail) -> None:
        if not message.to:
            raise MailDeliveryError("Email has no recipients")
        settings = self._settings
        try:
            email = self.build_message(message)
        except ValueError as exc:
            raise MailDeliveryError(f"Invalid email headers: {exc}") from exc
        try:
            await aiosmtplib.send(
                email,
                hostname=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password,
                start_tls=settings.smtp_start_tls,
                timeout=settings.smtp_timeout_s,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            raise MailDeliveryError(f"SMTP delivery failed: {exc}") from exc
        logger.info("mail_sent template=%s recipients=%s", message.template, len(message.to))
