from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from webengine.core.config import Settings, get_settings
from webengine.core.errors import MailDeliveryError, ValidationFailed
from webengine.providers.mail.base import MailTransport, OutgoingEmail
from webengine.providers.mail.factory import get_mail_transport
from webengine.services.backup import BackupRecord, BackupResult
from webengine.services.notifications.templates import RenderedEmail, format_bytes, render_template
from webengine.services.settings import BackupConfig


logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


async def send_template_email(
    transport: MailTransport,
    *,
    to: str | list[str],
    template: str,
    data: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> RenderedEmail:
    # Render and hand off one message; transport errors propagate as MailDeliveryError.
    recipients = [to] if isinstance(to, str) else list(to)
    rendered = render_template(template, data)
    await transport.send(
        OutgoingEmail(
            to=recipients,
            subject=rendered.subject,
            text_body=rendered.text_body,
            html_body=rendered.html_body,
            template=template,
            headers=headers or {},
        )
    )
    return rendered


def _format_timestamp(value: str | datetime | None) -> str:
    if value is None:
        return datetime.now(timezone.utc).strftime(_TIMESTAMP_FORMAT)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.strftime(_TIMESTAMP_FORMAT)


class BackupNotifier:
    """Send backup success/failure emails without ever failing the backup run."""

    def __init__(
        self,
        transport: MailTransport | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    @property
    def transport(self) -> MailTransport:
        if self._transport is None:
            self._transport = get_mail_transport()
        return self._transport

    def recipient(self, config: BackupConfig) -> str | None:
        return config.email_address or self._settings.admin_email or None

    def success_payload(self, result: BackupResult) -> dict[str, Any]:
        return {
            "siteName": self._settings.site_name,
            "siteUrl": self._settings.site_url.rstrip("/"),
            "filename": result.filename or "",
            "fileSize": format_bytes(result.size),
            "tablesCount": result.tables_count,
            "createdAt": _format_timestamp(result.timestamp),
            "backupType": result.backup_type,
        }

    def failure_payload(
        self,
        result: BackupResult,
        *,
        last_success: BackupRecord | None = None,
    ) -> dict[str, Any]:
        return {
            "siteName": self._settings.site_name,
            "siteUrl": self._settings.site_url.rstrip("/"),
            "errorMessage": result.error or "Unknown error",
            "attemptedAt": _format_timestamp(result.timestamp),
            "backupType": result.backup_type,
            "lastSuccessfulBackup": (
                _format_timestamp(last_success.created_at) if last_success is not None else "Never"
            ),
        }

    async def notify(
        self,
        result: BackupResult,
        config: BackupConfig,
        *,
        last_success: BackupRecord | None = None,
    ) -> bool:
        # Returns True only when a message was handed to the transport.
        if result.success and not config.email_on_success:
            return False
        if not result.success and not config.email_on_failure:
            return False
        recipient = self.recipient(config)
        if not recipient:
            logger.warning("backup_notification_skipped reason=no_recipient")
            return False
        if result.success:
            template, data = "backup_success", self.success_payload(result)
        else:
            template, data = "backup_failure", self.failure_payload(result, last_success=last_success)
        try:
            await send_template_email(self.transport, to=recipient, template=template, data=data)
        except MailDeliveryError as exc:
            logger.error("backup_notification_failed template=%s error=%s", template, exc)
            return False
        logger.info("backup_notification_sent template=%s", template)
        return True


async def send_contact_message(
    transport: MailTransport,
    *,
    name: str,
    email: str,
    subject: str,
    message: str,
    settings: Settings | None = None,
) -> RenderedEmail:
    # Validate the public contact form before relaying it to the site admin.
    resolved = settings or get_settings()
    name, email, subject, message = (value.strip() for value in (name, email, subject, message))
    if not name or not email or not subject or not message:
        raise ValidationFailed("All fields are required.")
    if "@" not in email or len(email) > 255 or any(char.isspace() for char in email):
        raise ValidationFailed("Please enter a valid email address.")
    if any(char in value for value in (name, subject) for char in "\r\n"):
        raise ValidationFailed("Name and subject must be a single line.")
    if len(subject) > 255:
        raise ValidationFailed("Subject must be less than 255 characters.")
    if len(message) > 2000:
        raise ValidationFailed("Message must be less than 2000 characters.")
    return await send_template_email(
        transport,
        to=resolved.admin_email,
        template="contact_form",
        data={
            "siteName": resolved.site_name,
            "siteUrl": resolved.site_url,
            "name": name,
            "email": email,
            "subject": subject,
            "message": message,
            "submissionTime": _format_timestamp(None),
        },
        headers={"Reply-To": email},
    )
