from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from webengine.apps.api.deps import (
    RequestContext,
    get_current_actor,
    get_optional_actor,
    get_request_context,
    verify_csrf,
)
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.domain.models import ClientProject
from webengine.services import portfolio
from webengine.services.authz import Actor


router = APIRouter(tags=["portfolio"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(verify_csrf)])


class ProjectCreateRequest(BaseModel):
    title: str = Field(max_length=255)
    description: str = Field(default="", max_length=10000)
    media: list[Any] | None = None


class ProjectUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=10000)
    media: list[Any] | None = None


class ProjectResponse(BaseModel):
    id: int
    title: str
    description: str
    media: list[Any] | None
    status: str
    visibility: str
    moderation_notes: str | None
    moderated_at: datetime | None
    submitted_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class ProjectListResponse(BaseModel):
    items: list[ProjectResponse]


def project_to_response(project: ClientProject) -> ProjectResponse:
    # Map ORM rows to API payloads so clients never see internal columns.
    return ProjectResponse(
        id=project.id,
        title=project.title,
        description=project.description or "",
        media=project.media_json,
        status=project.status,
        visibility=project.visibility,
        moderation_notes=project.moderation_notes,
        moderated_at=project.moderated_at,
        submitted_at=project.submitted_at,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


@router.get("/portfolio/projects", response_model=SuccessEnvelope[ProjectListResponse])
async def list_my_projects(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    projects = await portfolio.list_client_projects(ctx.db, actor)
    data = ProjectListResponse(items=[project_to_response(project) for project in projects])
    return success_response(request=request, data=data)


@router.post("/portfolio/projects", response_model=SuccessEnvelope[ProjectResponse], status_code=201)
async def create_project(
    payload: ProjectCreateRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await portfolio.create_project(
        ctx.db,
        actor,
        title=payload.title,
        description=payload.description,
        media=payload.media,
    )
    await ctx.db.commit()
    return success_response(request=request, data=project_to_response(project))


@router.get("/portfolio/projects/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def get_project(
    project_id: int,
    request: Request,
    actor: Actor | None = Depends(get_optional_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await portfolio.get_project(ctx.db, actor, project_id)
    return success_response(request=request, data=project_to_response(project))


@router.patch("/portfolio/projects/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def update_project(
    project_id: int,
    payload: ProjectUpdateRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await portfolio.update_project(
        ctx.db,
        actor,
        project_id,
        title=payload.title,
        description=payload.description,
        media=payload.media,
    )
    await ctx.db.commit()
    return success_response(request=request, data=project_to_response(project))


@router.delete("/portfolio/projects/{project_id}")
async def delete_project(
    project_id: int,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    await portfolio.delete_project(ctx.db, actor, project_id)
    await ctx.db.commit()
    return success_response(request=request, data={"id": project_id, "deleted": True})


@router.post("/portfolio/projects/{project_id}/submit", response_model=SuccessEnvelope[ProjectResponse])
async def submit_project(
    project_id: int,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await portfolio.submit_for_moderation(ctx.db, actor, project_id)
    await ctx.db.commit()
    return success_response(request=request, data=project_to_response(project))


@router.post(
    "/portfolio/projects/{project_id}/toggle-visibility",
    response_model=SuccessEnvelope[ProjectResponse],
)
async def toggle_project_visibility(
    project_id: int,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await portfolio.toggle_visibility(ctx.db, actor, project_id)
    await ctx.db.commit()
    return success_response(request=request, data=project_to_response(project))


@router.get("/public/projects", response_model=SuccessEnvelope[ProjectListResponse])
async def list_public_projects(
    request: Request,
    limit: int = Query(default=50, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    projects = await portfolio.list_public_projects(ctx.db, limit=limit)
    data = ProjectListResponse(items=[project_to_response(project) for project in projects])
    return success_response(request=request, data=data)
