from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.errors import InvalidTransition, NotFound, ValidationFailed
from webengine.domain.models import ClientProject, Comment
from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor, require
from webengine.services.portfolio import PROJECT_STATUSES


logger = logging.getLogger(__name__)

ACTION_TARGET_STATUS = {"approve": "published", "reject": "rejected"}
MAX_BULK_IDS = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BulkModerationResult:
    processed_count: int
    errors: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Processed {self.processed_count} projects successfully"


def _validate_action(action: str) -> str:
    if action not in ACTION_TARGET_STATUS:
        raise ValidationFailed("Invalid moderation action")
    return action


def _apply_decision(
    project: ClientProject,
    actor: Actor,
    action: str,
    notes: str | None,
    now: datetime,
) -> None:
    # Exactly one transition per submission: pending -> published | rejected.
    if project.status != "pending":
        raise InvalidTransition("Project is not pending moderation")
    project.status = ACTION_TARGET_STATUS[action]
    project.moderator_id = actor.user_id
    project.moderated_at = now
    project.moderation_notes = (notes or "").strip() or None
    project.updated_at = now
    if project.status != "published":
        project.visibility = "private"


async def moderate_project(
    session: AsyncSession,
    actor: Actor,
    project_id: int,
    action: str,
    notes: str | None = None,
) -> ClientProject:
    require(actor, "project.moderate")
    _validate_action(action)
    if project_id <= 0:
        raise ValidationFailed("Invalid project ID")
    project = await session.get(ClientProject, project_id)
    if project is None:
        raise NotFound("Project not found")
    _apply_decision(project, actor, action, notes, _utc_now())
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type=f"project.moderation.{action}",
        resource_type="client_project",
        resource_id=project.id,
        metadata={"status": project.status},
    )
    logger.info(
        "project_moderated project_id=%s action=%s moderator_id=%s",
        project.id,
        action,
        actor.user_id,
    )
    # Client notification is delivered through the activity log for now.
    logger.info("project_moderation_notice project_id=%s status=%s", project.id, project.status)
    return project


async def bulk_moderate(
    session: AsyncSession,
    actor: Actor,
    project_ids: list[int],
    action: str,
    notes: str | None = None,
) -> BulkModerationResult:
    """Moderate each id independently; failures are collected, never abort the batch."""
    require(actor, "project.moderate")
    _validate_action(action)
    if not project_ids:
        raise ValidationFailed("No projects selected")
    if len(project_ids) > MAX_BULK_IDS:
        raise ValidationFailed(f"At most {MAX_BULK_IDS} projects can be moderated at once")

    now = _utc_now()
    processed: list[int] = []
    errors: list[str] = []
    for project_id in project_ids:
        try:
            project = await session.get(ClientProject, project_id) if project_id > 0 else None
        except SQLAlchemyError:
            logger.exception("bulk_moderation_item_failed project_id=%s", project_id)
            errors.append(f"Failed to moderate project ID: {project_id}")
            continue
        if project is None:
            errors.append(f"Project ID {project_id} not found")
            continue
        try:
            _apply_decision(project, actor, action, notes, now)
        except InvalidTransition:
            errors.append(f"Project ID {project_id} is not pending moderation")
            continue
        processed.append(project_id)

    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type=f"project.moderation.bulk_{action}",
        resource_type="client_project",
        metadata={"processed": processed, "failed_count": len(errors)},
    )
    logger.info(
        "project_bulk_moderated action=%s processed=%s failed=%s",
        action,
        len(processed),
        len(errors),
    )
    return BulkModerationResult(processed_count=len(processed), errors=errors)


async def list_projects_for_moderation(
    session: AsyncSession,
    actor: Actor,
    *,
    status: str | None = "pending",
    search: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[ClientProject], int]:
    require(actor, "moderation.view")
    if status is not None and status not in PROJECT_STATUSES:
        raise ValidationFailed("Invalid status filter")
    page = max(1, page)
    per_page = max(1, min(100, per_page))
    filters: list[Any] = []
    if status is not None:
        filters.append(ClientProject.status == status)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(ClientProject.title.ilike(pattern), ClientProject.description.ilike(pattern)))
    total = await session.scalar(select(func.count()).select_from(ClientProject).where(*filters))
    # Oldest submissions first so the queue drains in arrival order.
    result = await session.execute(
        select(ClientProject)
        .where(*filters)
        .order_by(ClientProject.submitted_at.asc(), ClientProject.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), int(total or 0)


async def moderation_statistics(session: AsyncSession, actor: Actor) -> dict[str, Any]:
    require(actor, "moderation.view")
    rows = await session.execute(
        select(ClientProject.status, func.count()).group_by(ClientProject.status)
    )
    projects = {status: 0 for status in PROJECT_STATUSES}
    for status, count in rows.all():
        projects[status] = int(count)
    pending_comments = await session.scalar(
        select(func.count())
        .select_from(Comment)
        .where(Comment.is_approved.is_(False), Comment.status == "active", Comment.moderated_at.is_(None))
    )
    return {
        "projects": projects,
        "projects_total": sum(projects.values()),
        "pending_projects": projects["pending"],
        "pending_comments": int(pending_comments or 0),
    }
