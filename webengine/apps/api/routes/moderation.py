from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from webengine.apps.api.deps import RequestContext, get_request_context, require_action, verify_csrf
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.apps.api.routes.comments import CommentResponse, comment_to_response
from webengine.apps.api.routes.portfolio import ProjectResponse, project_to_response
from webengine.services import comments, moderation
from webengine.services.authz import Actor


router = APIRouter(
    prefix="/moderation",
    tags=["moderation"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(verify_csrf)],
)


class ModerateProjectRequest(BaseModel):
    # Actions are validated by the service so the error text stays consistent.
    action: str
    notes: str | None = Field(default=None, max_length=5000)


class BulkModerateRequest(BaseModel):
    project_ids: list[int] = Field(default_factory=list)
    action: str
    notes: str | None = Field(default=None, max_length=5000)


class BulkModerateResponse(BaseModel):
    processed_count: int
    errors: list[str]
    message: str


class ModerationQueueResponse(BaseModel):
    items: list[ProjectResponse]
    total: int
    page: int
    per_page: int


class ModerateCommentRequest(BaseModel):
    action: str
    reason: str | None = Field(default=None, max_length=2000)


class PendingCommentsResponse(BaseModel):
    items: list[CommentResponse]


@router.get("/projects", response_model=SuccessEnvelope[ModerationQueueResponse])
async def moderation_queue(
    request: Request,
    status: Literal["draft", "pending", "published", "rejected"] | None = Query(default="pending"),
    search: str | None = Query(default=None, max_length=255),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(require_action("moderation.view")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    items, total = await moderation.list_projects_for_moderation(
        ctx.db,
        actor,
        status=status,
        search=search,
        page=page,
        per_page=per_page,
    )
    data = ModerationQueueResponse(
        items=[project_to_response(project) for project in items],
        total=total,
        page=page,
        per_page=per_page,
    )
    return success_response(request=request, data=data)


@router.post("/projects/bulk", response_model=SuccessEnvelope[BulkModerateResponse])
async def bulk_moderate_projects(
    payload: BulkModerateRequest,
    request: Request,
    actor: Actor = Depends(require_action("project.moderate")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    result = await moderation.bulk_moderate(ctx.db, actor, payload.project_ids, payload.action, payload.notes)
    await ctx.db.commit()
    data = BulkModerateResponse(
        processed_count=result.processed_count,
        errors=list(result.errors),
        message=result.message,
    )
    return success_response(request=request, data=data)


@router.post("/projects/{project_id}", response_model=SuccessEnvelope[ProjectResponse])
async def moderate_project(
    project_id: int,
    payload: ModerateProjectRequest,
    request: Request,
    actor: Actor = Depends(require_action("project.moderate")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    project = await moderation.moderate_project(ctx.db, actor, project_id, payload.action, payload.notes)
    await ctx.db.commit()
    return success_response(request=request, data=project_to_response(project))


@router.get("/stats")
async def moderation_stats(
    request: Request,
    actor: Actor = Depends(require_action("moderation.view")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    stats: dict[str, Any] = await moderation.moderation_statistics(ctx.db, actor)
    return success_response(request=request, data=stats)


@router.get("/comments", response_model=SuccessEnvelope[PendingCommentsResponse])
async def pending_comments(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(require_action("comment.moderate")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    items = await comments.list_pending_comments(ctx.db, actor, limit=limit)
    data = PendingCommentsResponse(items=[comment_to_response(comment) for comment in items])
    return success_response(request=request, data=data)


@router.post("/comments/{comment_id}", response_model=SuccessEnvelope[CommentResponse])
async def moderate_comment(
    comment_id: int,
    payload: ModerateCommentRequest,
    request: Request,
    actor: Actor = Depends(require_action("comment.moderate")),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    comment = await comments.moderate_comment(ctx.db, actor, comment_id, payload.action, payload.reason)
    await ctx.db.commit()
    return success_response(request=request, data=comment_to_response(comment))
