from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.domain.models import WebSession
from webengine.services.auth.tokens import as_utc, hash_token


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionState:
    """Mutable per-request session data, passed explicitly to handlers."""

    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = True

    @property
    def user_id(self) -> int | None:
        value = self.data.get("user_id")
        return int(value) if value is not None else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def pop(self, key: str, default: Any = None) -> Any:
        return self.data.pop(key, default)

    def clear(self) -> None:
        self.data.clear()


class SessionStore:
    """Server-side sessions keyed by the sha256 of an opaque cookie value."""

    def __init__(self, db: AsyncSession, *, ttl_seconds: int) -> None:
        self._db = db
        self._ttl = timedelta(seconds=ttl_seconds)

    async def load(self, raw_id: str | None) -> SessionState:
        # Unknown or expired ids start a fresh anonymous session.
        if not raw_id:
            return SessionState()
        row = await self._db.get(WebSession, hash_token(raw_id))
        if row is None:
            return SessionState()
        if as_utc(row.expires_at) <= _utc_now():
            await self._db.delete(row)
            await self._db.flush()
            return SessionState()
        return SessionState(session_id=raw_id, data=dict(row.data_json or {}), is_new=False)

    async def save(
        self,
        state: SessionState,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        # Persist data and slide the expiry window; returns the cookie value.
        now = _utc_now()
        if state.session_id is None:
            state.session_id = secrets.token_urlsafe(32)
        session_hash = hash_token(state.session_id)
        row = await self._db.get(WebSession, session_hash)
        if row is None:
            row = WebSession(id=session_hash, created_at=now)
            self._db.add(row)
        row.user_id = state.user_id
        # Assign a copy so the JSON column is flagged dirty.
        row.data_json = dict(state.data)
        row.last_seen_at = now
        row.expires_at = now + self._ttl
        if ip_address is not None:
            row.ip_address = ip_address[:64]
        if user_agent is not None:
            row.user_agent = user_agent[:255]
        await self._db.flush()
        state.is_new = False
        return state.session_id

    async def regenerate(self, state: SessionState) -> SessionState:
        # Issue a new id for the same data so a pre-login id cannot be fixated.
        if state.session_id is not None:
            await self._delete_row(state.session_id)
        state.session_id = secrets.token_urlsafe(32)
        state.is_new = True
        return state

    async def destroy(self, state: SessionState) -> None:
        if state.session_id is not None:
            await self._delete_row(state.session_id)
        state.session_id = None
        state.clear()
        state.is_new = True

    async def purge_expired(self, *, now: datetime | None = None) -> int:
        # Abandoned anonymous sessions are only ever removed here.
        cutoff = now or _utc_now()
        result = await self._db.execute(delete(WebSession).where(WebSession.expires_at <= cutoff))
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("web_sessions_purged removed=%s", removed)
        return removed

    async def _delete_row(self, raw_id: str) -> None:
        await self._db.execute(delete(WebSession).where(WebSession.id == hash_token(raw_id)))
