from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.domain.models import UserToken


logger = logging.getLogger(__name__)

REMEMBER_ME = "remember_me"


def _utc_now() -> datetime:
    # Keep token timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hash_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_hex(32)


async def create_token(
    session: AsyncSession,
    *,
    user_id: int,
    token_type: str,
    ttl: timedelta,
) -> tuple[str, UserToken]:
    # Only the hash is stored; the raw token goes to the client once.
    raw_token = generate_token()
    now = _utc_now()
    row = UserToken(
        user_id=user_id,
        token_hash=hash_token(raw_token),
        token_type=token_type,
        expires_at=now + ttl,
        created_at=now,
    )
    session.add(row)
    await session.flush()
    logger.info("user_token_created user_id=%s token_type=%s", user_id, token_type)
    return raw_token, row


async def verify_token(
    session: AsyncSession,
    raw_token: str | None,
    *,
    token_type: str,
) -> UserToken | None:
    # Reject empty, unknown, revoked, expired, or mistyped tokens alike.
    if not raw_token:
        return None
    row = await session.scalar(select(UserToken).where(UserToken.token_hash == hash_token(raw_token)))
    if row is None or row.token_type != token_type:
        return None
    now = _utc_now()
    if row.revoked_at is not None:
        return None
    if as_utc(row.expires_at) <= now:
        return None
    row.last_used_at = now
    return row


async def revoke_token(session: AsyncSession, raw_token: str | None) -> bool:
    if not raw_token:
        return False
    result = await session.execute(
        update(UserToken)
        .where(UserToken.token_hash == hash_token(raw_token), UserToken.revoked_at.is_(None))
        .values(revoked_at=_utc_now())
    )
    return bool(result.rowcount)


async def revoke_user_tokens(
    session: AsyncSession,
    user_id: int,
    *,
    token_type: str | None = None,
) -> int:
    statement = update(UserToken).where(UserToken.user_id == user_id, UserToken.revoked_at.is_(None))
    if token_type is not None:
        statement = statement.where(UserToken.token_type == token_type)
    result = await session.execute(statement.values(revoked_at=_utc_now()))
    return int(result.rowcount or 0)


async def cleanup_expired_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Drop expired and revoked rows; revocation has already taken effect.
    cutoff = now or _utc_now()
    result = await session.execute(
        delete(UserToken).where(or_(UserToken.expires_at <= cutoff, UserToken.revoked_at.is_not(None)))
    )
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("user_tokens_cleaned removed=%s", removed)
    return removed
