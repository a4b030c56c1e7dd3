from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class OutgoingEmail:
    to: list[str]
    subject: str
    text_body: str
    html_body: str | None = None
    template: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


class MailTransport(Protocol):
    async def send(self, message: OutgoingEmail) -> None:
        ...
