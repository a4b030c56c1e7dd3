from __future__ import annotations

from webengine.core.errors import MailDeliveryError
from webengine.providers.mail.base import OutgoingEmail


class FakeMailTransport:
    def __init__(self, *, fail: bool = False) -> None:
        # Keep delivered messages in memory so tests can assert on them.
        self.outbox: list[OutgoingEmail] = []
        self._fail = fail

    async def send(self, message: OutgoingEmail) -> None:
        if self._fail:
            raise MailDeliveryError("Fake transport configured to fail")
        self.outbox.append(message)


class NullMailTransport:
    async def send(self, message: OutgoingEmail) -> None:
        # Drop messages when mail is disabled for this deployment.
        _ = message
