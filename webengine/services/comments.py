from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import html
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from webengine.domain.models import Article, ClientProject, Comment
from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor, authorize, require


logger = logging.getLogger(__name__)

TARGET_TYPES = ("article", "portfolio_project")
MAX_COMMENT_LENGTH = 5000
COMMENT_ACTIONS = ("approve", "reject")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_content(content: str | None) -> str:
    cleaned = (content or "").strip()
    if not cleaned:
        raise ValidationFailed("Comment cannot be empty.")
    if len(cleaned) > MAX_COMMENT_LENGTH:
        raise ValidationFailed(f"Comment must be at most {MAX_COMMENT_LENGTH} characters.")
    return html.escape(cleaned, quote=True)


async def target_exists(session: AsyncSession, target_type: str, target_id: int) -> bool:
    # Comments attach to articles or to portfolio projects visible to the public.
    if target_id <= 0:
        return False
    if target_type == "article":
        return await session.get(Article, target_id) is not None
    if target_type == "portfolio_project":
        project = await session.get(ClientProject, target_id)
        return project is not None and project.status == "published"
    return False


async def create_comment(
    session: AsyncSession,
    actor: Actor,
    *,
    target_type: str,
    target_id: int,
    content: str,
    parent_id: int | None = None,
) -> Comment:
    require(actor, "comment.create")
    if target_type not in TARGET_TYPES:
        raise ValidationFailed("Invalid comment target type")
    if not await target_exists(session, target_type, target_id):
        raise NotFound("Comment target not found")
    body = _clean_content(content)
    if parent_id is not None:
        parent = await session.get(Comment, parent_id)
        # Replies must stay on the same target and hang off visible comments.
        if (
            parent is None
            or parent.target_type != target_type
            or parent.target_id != target_id
            or not parent.is_approved
            or parent.status == "deleted"
        ):
            raise ValidationFailed("Invalid parent comment")
    approved = actor.is_staff
    now = _utc_now()
    comment = Comment(
        target_type=target_type,
        target_id=target_id,
        author_id=actor.user_id,
        parent_id=parent_id,
        content=body,
        is_approved=approved,
        status="active",
        moderated_by=actor.user_id if approved else None,
        moderated_at=now if approved else None,
        created_at=now,
    )
    session.add(comment)
    await session.flush()
    logger.info(
        "comment_created comment_id=%s target=%s:%s approved=%s",
        comment.id,
        target_type,
        target_id,
        approved,
    )
    return comment


async def _load_comment(session: AsyncSession, comment_id: int) -> Comment | None:
    if comment_id <= 0:
        return None
    return await session.get(Comment, comment_id)


async def update_comment(session: AsyncSession, actor: Actor, comment_id: int, content: str) -> Comment:
    comment = await _load_comment(session, comment_id)
    require(actor, "comment.edit", owner_id=comment.author_id if comment else None)
    if comment is None:
        raise PermissionDenied()
    if comment.status == "deleted":
        raise InvalidTransition("Deleted comments cannot be edited")
    comment.content = _clean_content(content)
    comment.updated_at = _utc_now()
    if not actor.is_staff and comment.moderated_at is not None and not comment.is_approved:
        # A rejected comment that is edited goes back into the queue.
        comment.moderated_at = None
        comment.moderated_by = None
        comment.rejection_reason = None
    await session.flush()
    return comment


async def delete_comment(session: AsyncSession, actor: Actor, comment_id: int) -> Comment:
    # Soft delete keeps the row so replies still resolve their parent.
    comment = await _load_comment(session, comment_id)
    require(actor, "comment.delete", owner_id=comment.author_id if comment else None)
    if comment is None:
        raise NotFound("Comment not found")
    if comment.status == "deleted":
        raise InvalidTransition("Comment is already deleted")
    now = _utc_now()
    comment.status = "deleted"
    comment.deleted_at = now
    comment.updated_at = now
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type="comment.deleted",
        resource_type="comment",
        resource_id=comment.id,
    )
    logger.info("comment_deleted comment_id=%s by_user_id=%s", comment.id, actor.user_id)
    return comment


async def moderate_comment(
    session: AsyncSession,
    actor: Actor,
    comment_id: int,
    action: str,
    reason: str | None = None,
) -> Comment:
    require(actor, "comment.moderate")
    if action not in COMMENT_ACTIONS:
        raise ValidationFailed("Invalid moderation action")
    reason = (reason or "").strip() or None
    if action == "reject" and reason is None:
        raise ValidationFailed("Rejection reason is required")
    comment = await _load_comment(session, comment_id)
    if comment is None:
        raise NotFound("Comment not found")
    if comment.status == "deleted":
        raise InvalidTransition("Deleted comments cannot be moderated")
    now = _utc_now()
    comment.is_approved = action == "approve"
    comment.rejection_reason = reason if action == "reject" else None
    comment.moderated_by = actor.user_id
    comment.moderated_at = now
    comment.updated_at = now
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type=f"comment.moderation.{action}",
        resource_type="comment",
        resource_id=comment.id,
    )
    logger.info("comment_moderated comment_id=%s action=%s moderator_id=%s", comment.id, action, actor.user_id)
    return comment


async def list_pending_comments(session: AsyncSession, actor: Actor, *, limit: int = 100) -> list[Comment]:
    require(actor, "comment.moderate")
    result = await session.execute(
        select(Comment)
        .where(Comment.is_approved.is_(False), Comment.status == "active", Comment.moderated_at.is_(None))
        .order_by(Comment.created_at.asc(), Comment.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


@dataclass
class CommentNode:
    comment: Comment
    replies: list[CommentNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        comment = self.comment
        return {
            "id": comment.id,
            "author_id": comment.author_id,
            "parent_id": comment.parent_id,
            "content": comment.content,
            "is_approved": comment.is_approved,
            "created_at": comment.created_at.isoformat() if comment.created_at else None,
            "replies": [reply.to_dict() for reply in self.replies],
        }


async def get_thread(
    session: AsyncSession,
    target_type: str,
    target_id: int,
    *,
    actor: Actor | None = None,
) -> list[CommentNode]:
    """Non-deleted comments for a target arranged as a reply tree.

    Readers see approved comments only; moderators also see the pending ones.
    Replies whose parent is hidden are dropped with it.
    """
    if target_type not in TARGET_TYPES:
        raise ValidationFailed("Invalid comment target type")
    include_unapproved = actor is not None and authorize(actor, "comment.moderate").allowed
    query = select(Comment).where(
        Comment.target_type == target_type,
        Comment.target_id == target_id,
        Comment.status != "deleted",
    )
    if not include_unapproved:
        query = query.where(Comment.is_approved.is_(True))
    result = await session.execute(query.order_by(Comment.created_at.asc(), Comment.id.asc()))
    nodes = {comment.id: CommentNode(comment) for comment in result.scalars().all()}
    roots: list[CommentNode] = []
    for node in nodes.values():
        parent_id = node.comment.parent_id
        if parent_id is None:
            roots.append(node)
        elif parent_id in nodes:
            nodes[parent_id].replies.append(node)
    return roots
