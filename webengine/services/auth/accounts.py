from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Callable

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.errors import AuthenticationFailed, PermissionDenied, ValidationFailed
from webengine.domain.models import User
from webengine.services.auth.csrf import rotate_csrf_token
from webengine.services.auth.passwords import hash_password, verify_password
from webengine.services.auth.sessions import SessionState, SessionStore
from webengine.services.auth.tokens import (
    REMEMBER_ME,
    cleanup_expired_tokens,
    create_token,
    revoke_token,
    verify_token,
)
from webengine.services.authz import Actor


logger = logging.getLogger(__name__)

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,50}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role, username=user.username)


async def authenticate(session: AsyncSession, identifier: str, password: str) -> User:
    # Accept either username or email; the message never says which part was wrong.
    identifier = (identifier or "").strip()
    if not identifier or not password:
        raise ValidationFailed("Username and password are required.")
    user = await session.scalar(
        select(User).where(
            or_(User.username == identifier, func.lower(User.email) == identifier.lower())
        )
    )
    if user is None or not verify_password(password, user.password_hash):
        logger.info("login_failed reason=bad_credentials")
        raise AuthenticationFailed("Invalid username or password.")
    if not user.is_active:
        logger.info("login_failed reason=inactive user_id=%s", user.id)
        raise PermissionDenied("Your account is not active.")
    user.last_login_at = _utc_now()
    return user


async def register_user(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    role: str = "user",
) -> User:
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not _USERNAME_PATTERN.match(username):
        raise ValidationFailed("Username must be 3-50 characters: letters, digits, underscore.")
    if len(email) > 255 or not _EMAIL_PATTERN.match(email):
        raise ValidationFailed("Please enter a valid email address.")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    existing = await session.scalar(
        select(User.id).where(or_(User.username == username, User.email == email))
    )
    if existing is not None:
        raise ValidationFailed("Username or email is already registered.")
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    session.add(user)
    await session.flush()
    logger.info("user_registered user_id=%s", user.id)
    return user


async def start_session(store: SessionStore, state: SessionState, user: User) -> SessionState:
    # New session id on login; data that belonged to the anonymous session is dropped.
    await store.regenerate(state)
    state.clear()
    state.set("user_id", user.id)
    state.set("role", user.role)
    state.set("username", user.username)
    state.set("logged_in_at", int(_utc_now().timestamp()))
    rotate_csrf_token(state)
    return state


async def issue_remember_token(session: AsyncSession, user: User, *, days: int) -> str:
    raw_token, _row = await create_token(
        session,
        user_id=user.id,
        token_type=REMEMBER_ME,
        ttl=timedelta(days=days),
    )
    return raw_token


async def restore_from_remember_token(
    session: AsyncSession,
    store: SessionStore,
    state: SessionState,
    raw_token: str | None,
) -> User | None:
    # A valid remember-me cookie for an active user re-establishes the session.
    token = await verify_token(session, raw_token, token_type=REMEMBER_ME)
    if token is None:
        return None
    user = await session.get(User, token.user_id)
    if user is None or not user.is_active:
        return None
    await start_session(store, state, user)
    logger.info("session_restored_from_remember_token user_id=%s", user.id)
    return user


@dataclass
class LogoutReport:
    revoked_tokens: int = 0
    failed_steps: list[str] = field(default_factory=list)


async def logout(
    session: AsyncSession,
    store: SessionStore,
    state: SessionState,
    *,
    remember_tokens: list[str | None],
    clear_cookies: Callable[[], None],
) -> LogoutReport:
    """Best-effort logout: revoke remember tokens, clear cookies, reset the session.

    Each step runs even when an earlier one fails; failures are logged and
    listed in the report.
    """
    report = LogoutReport()
    user_id = state.user_id

    try:
        for raw_token in remember_tokens:
            if raw_token and await revoke_token(session, raw_token):
                report.revoked_tokens += 1
        await session.flush()
    except SQLAlchemyError:
        logger.exception("logout_step_failed step=revoke_remember_token user_id=%s", user_id)
        report.failed_steps.append("revoke_remember_token")
        await session.rollback()

    try:
        clear_cookies()
    except Exception:  # noqa: BLE001 - cookie cleanup must not block session teardown
        logger.exception("logout_step_failed step=clear_cookies user_id=%s", user_id)
        report.failed_steps.append("clear_cookies")

    try:
        await store.destroy(state)
        rotate_csrf_token(state)
        await session.flush()
    except SQLAlchemyError:
        logger.exception("logout_step_failed step=destroy_session user_id=%s", user_id)
        report.failed_steps.append("destroy_session")
        await session.rollback()
        state.clear()
        state.session_id = None

    logger.info("logout_completed user_id=%s failed_steps=%s", user_id, ",".join(report.failed_steps))
    return report


@dataclass(frozen=True)
class AuthMaintenanceReport:
    sessions_removed: int
    tokens_removed: int


async def purge_stale_auth_state(
    session: AsyncSession,
    *,
    ttl_seconds: int,
    now: datetime | None = None,
) -> AuthMaintenanceReport:
    # Expired sessions plus expired or revoked remember-me tokens; caller commits.
    store = SessionStore(session, ttl_seconds=ttl_seconds)
    sessions_removed = await store.purge_expired(now=now)
    tokens_removed = await cleanup_expired_tokens(session, now=now)
    return AuthMaintenanceReport(sessions_removed=sessions_removed, tokens_removed=tokens_removed)
