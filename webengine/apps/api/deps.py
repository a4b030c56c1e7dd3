from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.config import get_settings
from webengine.domain.models import User
from webengine.persistence.db import get_session
from webengine.services.audit import client_info
from webengine.services.audit import record_event
from webengine.services.auth.accounts import actor_for, restore_from_remember_token
from webengine.services.auth.csrf import (
    extract_csrf_token,
    parse_legacy_keys,
    rotate_csrf_token,
    validate_csrf,
)
from webengine.services.auth.sessions import SessionState, SessionStore
from webengine.services.authz import Actor, authorize


REMEMBER_COOKIE = "remember_token"
# Older login pages set the remember-me cookie under this name.
LEGACY_REMEMBER_COOKIE = "remember_me"
_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


@dataclass
class RequestContext:
    """Everything a handler needs about the caller, passed explicitly."""

    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    db: AsyncSession
    store: SessionStore
    session: SessionState
    cookies: dict[str, str]


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str = "Access denied") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    # Load the server-side session named by the session cookie.
    settings = get_settings()
    store = SessionStore(db, ttl_seconds=settings.session_ttl_seconds)
    state = await store.load(request.cookies.get(settings.session_cookie_name))
    client = client_info(request)
    return RequestContext(
        request_id=client.request_id,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
        db=db,
        store=store,
        session=state,
        cookies=dict(request.cookies),
    )


def set_session_cookie(response: Response, raw_session_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        raw_session_id,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def set_remember_cookie(response: Response, raw_token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        REMEMBER_COOKIE,
        raw_token,
        max_age=settings.remember_me_days * 24 * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def clear_auth_cookies(response: Response) -> None:
    settings = get_settings()
    for name in (REMEMBER_COOKIE, LEGACY_REMEMBER_COOKIE, settings.session_cookie_name):
        response.delete_cookie(name, path="/")


async def commit_session(ctx: RequestContext, response: Response) -> str:
    # Persist session data, commit the request transaction, and refresh the cookie.
    raw_session_id = await ctx.store.save(
        ctx.session,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    await ctx.db.commit()
    set_session_cookie(response, raw_session_id)
    return raw_session_id


async def get_optional_actor(
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
) -> Actor | None:
    # Resolve the caller from the session, falling back to a remember-me cookie.
    user_id = ctx.session.user_id
    if user_id is not None:
        user = await ctx.db.get(User, user_id)
        if user is not None and user.is_active:
            return actor_for(user)
        await ctx.store.destroy(ctx.session)
        await ctx.db.commit()
        return None
    raw_token = ctx.cookies.get(REMEMBER_COOKIE)
    if not raw_token:
        return None
    user = await restore_from_remember_token(ctx.db, ctx.store, ctx.session, raw_token)
    if user is None:
        return None
    await commit_session(ctx, response)
    return actor_for(user)


async def get_current_actor(actor: Actor | None = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise _auth_error("Authentication required")
    return actor


def require_action(action: str) -> Callable[..., Actor]:
    # Gate a whole endpoint on an owner-independent policy action.
    async def _dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not authorize(actor, action).allowed:
            raise _forbidden_error()
        return actor

    return _dependency


async def verify_csrf(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> None:
    # Unsafe methods must echo the session CSRF token from body, header, or cookie.
    if request.method in _SAFE_METHODS:
        return
    settings = get_settings()
    form = None
    json_body = None
    content_type = (request.headers.get("content-type") or "").lower()
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
    elif content_type.startswith("application/json"):
        try:
            json_body = await request.json()
        except ValueError:
            json_body = None
    token = extract_csrf_token(
        form=form,
        json_body=json_body,
        headers=request.headers,
        cookies=request.cookies,
    )
    if validate_csrf(
        ctx.session,
        token,
        lifetime_s=settings.csrf_token_lifetime_seconds,
        legacy_keys=parse_legacy_keys(settings.csrf_legacy_session_keys),
    ):
        return
    # Rotate on failure so a leaked token cannot be retried.
    if not ctx.session.is_new:
        rotate_csrf_token(ctx.session)
        await ctx.store.save(ctx.session, ip_address=ctx.ip_address, user_agent=ctx.user_agent)
        await ctx.db.commit()
    await record_event(
        actor_type="user" if ctx.session.user_id else "anonymous",
        actor_id=str(ctx.session.user_id) if ctx.session.user_id else None,
        actor_role=ctx.session.get("role"),
        event_type="auth.csrf.failure",
        outcome="failure",
        resource_type="http",
        resource_id=request.url.path,
        request_id=ctx.request_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        metadata={"method": request.method, "token_present": bool(token)},
        error_code="CSRF_INVALID",
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "CSRF_INVALID", "message": "Invalid security token. Please refresh the page and try again."},
    )
