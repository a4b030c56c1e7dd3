from webengine.services.notifications.mailer import (
    BackupNotifier,
    send_contact_message,
    send_template_email,
)
from webengine.services.notifications.templates import format_bytes, render_template

__all__ = [
    "BackupNotifier",
    "send_contact_message",
    "send_template_email",
    "format_bytes",
    "render_template",
]
