from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from webengine.domain.models import AuditEvent
from webengine.persistence.db import SessionLocal

if TYPE_CHECKING:
    from webengine.services.authz import Actor


logger = logging.getLogger(__name__)

# Session ids, remember-me tokens, CSRF tokens and passwords never reach the audit table.
_SECRET_KEY = re.compile(r"password|passwd|token|secret|cookie|csrf|session_id|authorization", re.IGNORECASE)
REDACTED = "[REDACTED]"
MAX_METADATA_STRING = 1000


@dataclass(frozen=True)
class ClientInfo:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def client_info(request: Request | None) -> ClientInfo:
    # Request id comes from the middleware; fall back to the inbound header.
    if request is None:
        return ClientInfo()
    return ClientInfo(
        request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _SECRET_KEY.search(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > MAX_METADATA_STRING:
        return value[:MAX_METADATA_STRING] + "..."
    return value


async def _write(session: AsyncSession, event: AuditEvent, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        log = logger.warning if best_effort else logger.error
        log(
            "audit_write_failed event_type=%s request_id=%s",
            event.event_type,
            event.request_id,
            exc_info=exc,
        )


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    """Append one row to the audit trail.

    Without ``session`` the row is committed in its own session, so a failed
    request still leaves its trace. With ``session`` the row joins the
    caller's transaction and is committed only when ``commit`` is true.
    Write failures are logged, never raised.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        await _write(session, event, commit=bool(commit), best_effort=best_effort)
        return
    async with SessionLocal() as own_session:
        await _write(own_session, event, commit=True, best_effort=best_effort)


async def record_actor_event(
    session: AsyncSession | None,
    actor: Actor | None,
    *,
    event_type: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: Any = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    request_id: str | None = None,
) -> None:
    # Service-level events: a user actor, or "system" for cron and CLI runs.
    await record_event(
        session=session,
        actor_type="system" if actor is None else "user",
        actor_id=None if actor is None else str(actor.user_id),
        actor_role=None if actor is None else actor.role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=None if resource_id is None else str(resource_id),
        request_id=request_id,
        metadata=metadata,
        error_code=error_code,
    )
