from __future__ import annotations

from webengine.core.config import get_settings
from webengine.core.errors import MailDeliveryError
from webengine.providers.mail.base import MailTransport
from webengine.providers.mail.fake_mail import FakeMailTransport, NullMailTransport
from webengine.providers.mail.smtp_mail import SmtpMailTransport


def get_mail_transport() -> MailTransport:
    settings = get_settings()
    provider = (settings.mail_provider or "none").lower()

    if provider == "none":
        return NullMailTransport()
    if provider == "fake":
        return FakeMailTransport()
    if provider == "smtp":
        return SmtpMailTransport(settings)

    raise MailDeliveryError(f"Unsupported mail provider: {provider}")
