from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from webengine.apps.api.deps import (
    LEGACY_REMEMBER_COOKIE,
    REMEMBER_COOKIE,
    RequestContext,
    clear_auth_cookies,
    commit_session,
    get_current_actor,
    get_request_context,
    set_remember_cookie,
    verify_csrf,
)
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.core.config import get_settings
from webengine.core.errors import WebEngineError
from webengine.domain.models import User
from webengine.services.audit import record_event
from webengine.services.auth.accounts import (
    authenticate,
    issue_remember_token,
    logout,
    register_user,
    start_session,
)
from webengine.services.auth.csrf import issue_csrf_token
from webengine.services.authz import Actor


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["auth"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(verify_csrf)],
)


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class LoginRequest(BaseModel):
    # Either the username or the email address is accepted as identifier.
    username: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=1024)
    remember_me: bool = False


class RegisterRequest(BaseModel):
    username: str = Field(max_length=50)
    email: str = Field(max_length=255)
    password: str = Field(max_length=1024)


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    role: str
    last_login_at: datetime | None = None


class LoginResponse(BaseModel):
    user: UserResponse
    csrf_token: str
    remember_me: bool


class LogoutResponse(BaseModel):
    logged_out: bool
    csrf_token: str
    failed_steps: list[str]


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        last_login_at=user.last_login_at,
    )


@router.get("/csrf", response_model=SuccessEnvelope[CsrfTokenResponse])
async def get_csrf_token(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    # Hand out the session token forms and fetch() calls must echo back.
    settings = get_settings()
    token = issue_csrf_token(ctx.session, lifetime_s=settings.csrf_token_lifetime_seconds)
    await commit_session(ctx, response)
    return success_response(request=request, data=CsrfTokenResponse(csrf_token=token))


@router.post("/login", response_model=SuccessEnvelope[LoginResponse])
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    settings = get_settings()
    try:
        user = await authenticate(ctx.db, payload.username, payload.password)
    except WebEngineError as exc:
        await record_event(
            actor_type="anonymous",
            actor_id=None,
            actor_role=None,
            event_type="auth.login.failure",
            outcome="failure",
            resource_type="user",
            request_id=ctx.request_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"identifier": payload.username[:255]},
            error_code=exc.code,
        )
        raise

    await start_session(ctx.store, ctx.session, user)
    if payload.remember_me:
        raw_token = await issue_remember_token(ctx.db, user, days=settings.remember_me_days)
        set_remember_cookie(response, raw_token)
    await record_event(
        session=ctx.db,
        actor_type="user",
        actor_id=str(user.id),
        actor_role=user.role,
        event_type="auth.login.success",
        outcome="success",
        resource_type="user",
        resource_id=str(user.id),
        request_id=ctx.request_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        metadata={"remember_me": payload.remember_me},
    )
    await commit_session(ctx, response)
    logger.info("login_succeeded user_id=%s remember_me=%s", user.id, payload.remember_me)
    data = LoginResponse(
        user=_user_payload(user),
        csrf_token=ctx.session.get("csrf_token"),
        remember_me=payload.remember_me,
    )
    return success_response(request=request, data=data)


@router.post("/logout", response_model=SuccessEnvelope[LogoutResponse])
async def logout_route(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    # Logout always succeeds from the client's point of view.
    user_id = ctx.session.user_id
    role = ctx.session.get("role")
    report = await logout(
        ctx.db,
        ctx.store,
        ctx.session,
        remember_tokens=[ctx.cookies.get(REMEMBER_COOKIE), ctx.cookies.get(LEGACY_REMEMBER_COOKIE)],
        clear_cookies=lambda: clear_auth_cookies(response),
    )
    # The fresh anonymous session carries the rotated CSRF token.
    await commit_session(ctx, response)
    if user_id is not None:
        await record_event(
            actor_type="user",
            actor_id=str(user_id),
            actor_role=role,
            event_type="auth.logout",
            outcome="success" if not report.failed_steps else "partial",
            resource_type="user",
            resource_id=str(user_id),
            request_id=ctx.request_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            metadata={"revoked_tokens": report.revoked_tokens, "failed_steps": report.failed_steps},
        )
    data = LogoutResponse(
        logged_out=True,
        csrf_token=ctx.session.get("csrf_token"),
        failed_steps=report.failed_steps,
    )
    return success_response(request=request, data=data)


@router.post("/register", response_model=SuccessEnvelope[UserResponse], status_code=201)
async def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    user = await register_user(
        ctx.db,
        username=payload.username,
        email=payload.email,
        password=payload.password,
    )
    await record_event(
        session=ctx.db,
        actor_type="user",
        actor_id=str(user.id),
        actor_role=user.role,
        event_type="auth.registered",
        outcome="success",
        resource_type="user",
        resource_id=str(user.id),
        request_id=ctx.request_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
    )
    await commit_session(ctx, response)
    return success_response(request=request, data=_user_payload(user))


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    user = await ctx.db.get(User, actor.user_id)
    return success_response(request=request, data=_user_payload(user))
