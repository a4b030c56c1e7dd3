from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
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
from webengine.domain.models import Comment
from webengine.services import comments
from webengine.services.authz import Actor


router = APIRouter(tags=["comments"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(verify_csrf)])

TargetType = Literal["article", "portfolio_project"]


class CommentCreateRequest(BaseModel):
    target_type: TargetType
    target_id: int
    content: str = Field(max_length=5000)
    parent_id: int | None = None


class CommentUpdateRequest(BaseModel):
    content: str = Field(max_length=5000)


class CommentResponse(BaseModel):
    id: int
    target_type: str
    target_id: int
    author_id: int | None
    parent_id: int | None
    content: str
    is_approved: bool
    status: str
    rejection_reason: str | None
    created_at: datetime | None
    updated_at: datetime | None


class CommentThreadResponse(BaseModel):
    items: list[dict[str, Any]]


def comment_to_response(comment: Comment) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        target_type=comment.target_type,
        target_id=comment.target_id,
        author_id=comment.author_id,
        parent_id=comment.parent_id,
        content=comment.content,
        is_approved=comment.is_approved,
        status=comment.status,
        rejection_reason=comment.rejection_reason,
        created_at=comment.created_at,
        updated_at=comment.updated_at,
    )


@router.post("/comments", response_model=SuccessEnvelope[CommentResponse], status_code=201)
async def create_comment(
    payload: CommentCreateRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    comment = await comments.create_comment(
        ctx.db,
        actor,
        target_type=payload.target_type,
        target_id=payload.target_id,
        content=payload.content,
        parent_id=payload.parent_id,
    )
    await ctx.db.commit()
    return success_response(request=request, data=comment_to_response(comment))


@router.get("/comments/{target_type}/{target_id}", response_model=SuccessEnvelope[CommentThreadResponse])
async def comment_thread(
    target_type: TargetType,
    target_id: int,
    request: Request,
    actor: Actor | None = Depends(get_optional_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    # Moderators also see pending comments; the tree is rebuilt on every read.
    nodes = await comments.get_thread(ctx.db, target_type, target_id, actor=actor)
    data = CommentThreadResponse(items=[node.to_dict() for node in nodes])
    return success_response(request=request, data=data)


@router.patch("/comments/{comment_id}", response_model=SuccessEnvelope[CommentResponse])
async def update_comment(
    comment_id: int,
    payload: CommentUpdateRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    comment = await comments.update_comment(ctx.db, actor, comment_id, payload.content)
    await ctx.db.commit()
    return success_response(request=request, data=comment_to_response(comment))


@router.delete("/comments/{comment_id}", response_model=SuccessEnvelope[CommentResponse])
async def delete_comment(
    comment_id: int,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    comment = await comments.delete_comment(ctx.db, actor, comment_id)
    await ctx.db.commit()
    return success_response(request=request, data=comment_to_response(comment))
