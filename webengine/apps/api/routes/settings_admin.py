from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from webengine.apps.api.deps import RequestContext, get_request_context, require_action, verify_csrf
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor
from webengine.services.settings import SiteSettingsService


router = APIRouter(tags=["settings"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(verify_csrf)])


class SettingsUpdateRequest(BaseModel):
    values: dict[str, Any] = Field(min_length=1)
    is_public: bool | None = None


class SettingsResponse(BaseModel):
    category: str | None = None
    values: dict[str, Any]


@router.get("/admin/settings/{category}", response_model=SuccessEnvelope[SettingsResponse])
async def get_settings_category(
    category: str,
    request: Request,
    actor: Actor = Depends(require_action("settings.manage")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    values = await SiteSettingsService(ctx.db).get_by_category(category)
    return success_response(request=request, data=SettingsResponse(category=category, values=values))


@router.put("/admin/settings/{category}", response_model=SuccessEnvelope[SettingsResponse])
async def update_settings_category(
    category: str,
    payload: SettingsUpdateRequest,
    request: Request,
    actor: Actor = Depends(require_action("settings.manage")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    values = await SiteSettingsService(ctx.db).update_settings(
        category,
        payload.values,
        public=payload.is_public,
    )
    await record_actor_event(
        ctx.db,
        actor,
        event_type="settings.updated",
        resource_type="site_settings",
        resource_id=category,
        metadata={"keys": sorted(payload.values)},
        request_id=ctx.request_id,
    )
    await ctx.db.commit()
    return success_response(request=request, data=SettingsResponse(category=category, values=values))


@router.get("/public/settings", response_model=SuccessEnvelope[SettingsResponse])
async def public_settings(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    values = await SiteSettingsService(ctx.db).get_public_settings()
    return success_response(request=request, data=SettingsResponse(values=values))
