from __future__ import annotations

from datetime import datetime, timezone
import html
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from webengine.domain.models import ClientProfile, ClientProject
from webengine.services.audit import record_actor_event
from webengine.services.authz import Actor, authorize, require


logger = logging.getLogger(__name__)

PROJECT_STATUSES = ("draft", "pending", "published", "rejected")
VISIBILITIES = ("private", "public")
_SUBMITTABLE = {"draft", "rejected"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_text(value: str | None, *, field: str, min_length: int, max_length: int) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) < min_length:
        raise ValidationFailed(f"{field} must be at least {min_length} characters.")
    if len(cleaned) > max_length:
        raise ValidationFailed(f"{field} must be at most {max_length} characters.")
    return html.escape(cleaned, quote=True)


def _clean_media(media: list[Any] | None) -> list[str] | None:
    if media is None:
        return None
    if not isinstance(media, list) or len(media) > 20:
        raise ValidationFailed("Media must be a list of at most 20 items.")
    cleaned = [str(item).strip() for item in media if str(item).strip()]
    if any(len(item) > 500 for item in cleaned):
        raise ValidationFailed("Media references must be at most 500 characters.")
    return cleaned


async def get_or_create_profile(session: AsyncSession, actor: Actor) -> ClientProfile:
    profile = await session.scalar(select(ClientProfile).where(ClientProfile.user_id == actor.user_id))
    if profile is None:
        profile = ClientProfile(user_id=actor.user_id)
        session.add(profile)
        await session.flush()
    return profile


async def project_owner_id(session: AsyncSession, project: ClientProject) -> int | None:
    # Projects belong to client profiles; ownership checks compare profile user ids.
    return await session.scalar(
        select(ClientProfile.user_id).where(ClientProfile.id == project.client_profile_id)
    )


async def _load_owned(session: AsyncSession, actor: Actor, project_id: int, action: str) -> ClientProject:
    # Missing and foreign projects both surface as "Access denied".
    project = await session.get(ClientProject, project_id) if project_id > 0 else None
    owner_id = await project_owner_id(session, project) if project is not None else None
    require(actor, action, owner_id=owner_id)
    if project is None:
        raise PermissionDenied()
    return project


async def create_project(
    session: AsyncSession,
    actor: Actor,
    *,
    title: str,
    description: str = "",
    media: list[Any] | None = None,
) -> ClientProject:
    require(actor, "project.create")
    profile = await get_or_create_profile(session, actor)
    project = ClientProject(
        client_profile_id=profile.id,
        title=_clean_text(title, field="Title", min_length=3, max_length=255),
        description=_clean_text(description, field="Description", min_length=0, max_length=10000),
        media_json=_clean_media(media),
        status="draft",
        visibility="private",
        created_at=_utc_now(),
    )
    session.add(project)
    await session.flush()
    logger.info("project_created project_id=%s user_id=%s", project.id, actor.user_id)
    return project


async def update_project(
    session: AsyncSession,
    actor: Actor,
    project_id: int,
    *,
    title: str | None = None,
    description: str | None = None,
    media: list[Any] | None = None,
) -> ClientProject:
    # Edits keep the current status; published work stays published.
    project = await _load_owned(session, actor, project_id, "project.edit")
    if project.status == "pending":
        raise InvalidTransition("Project is awaiting moderation and cannot be edited")
    if title is not None:
        project.title = _clean_text(title, field="Title", min_length=3, max_length=255)
    if description is not None:
        project.description = _clean_text(description, field="Description", min_length=0, max_length=10000)
    if media is not None:
        project.media_json = _clean_media(media)
    project.updated_at = _utc_now()
    await session.flush()
    return project


async def submit_for_moderation(session: AsyncSession, actor: Actor, project_id: int) -> ClientProject:
    project = await _load_owned(session, actor, project_id, "project.submit")
    if project.status not in _SUBMITTABLE:
        raise InvalidTransition("Only draft or rejected projects can be submitted for moderation")
    now = _utc_now()
    project.status = "pending"
    project.visibility = "private"
    project.moderator_id = None
    project.moderated_at = None
    project.moderation_notes = None
    project.submitted_at = now
    project.updated_at = now
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type="project.submitted",
        resource_type="client_project",
        resource_id=project.id,
    )
    logger.info("project_submitted project_id=%s", project.id)
    return project


async def toggle_visibility(session: AsyncSession, actor: Actor, project_id: int) -> ClientProject:
    project = await _load_owned(session, actor, project_id, "project.toggle_visibility")
    if project.status != "published":
        raise InvalidTransition("Only published projects can be made public")
    project.visibility = "private" if project.visibility == "public" else "public"
    project.updated_at = _utc_now()
    await session.flush()
    logger.info("project_visibility_changed project_id=%s visibility=%s", project.id, project.visibility)
    return project


async def delete_project(session: AsyncSession, actor: Actor, project_id: int) -> None:
    project = await _load_owned(session, actor, project_id, "project.delete")
    if project.status == "pending":
        raise InvalidTransition("Project is awaiting moderation and cannot be deleted")
    await session.delete(project)
    await session.flush()
    logger.info("project_deleted project_id=%s user_id=%s", project_id, actor.user_id)


async def get_project(session: AsyncSession, actor: Actor | None, project_id: int) -> ClientProject:
    # Public published projects are readable by anyone; everything else by owner or staff.
    project = await session.get(ClientProject, project_id) if project_id > 0 else None
    if project is not None and project.status == "published" and project.visibility == "public":
        return project
    if project is None:
        if actor is not None and actor.is_staff:
            raise NotFound("Project not found")
        raise PermissionDenied()
    owner_id = await project_owner_id(session, project)
    if not (authorize(actor, "project.edit", owner_id=owner_id).allowed or (actor and actor.is_staff)):
        raise PermissionDenied()
    return project


async def list_client_projects(session: AsyncSession, actor: Actor) -> list[ClientProject]:
    result = await session.execute(
        select(ClientProject)
        .join(ClientProfile, ClientProfile.id == ClientProject.client_profile_id)
        .where(ClientProfile.user_id == actor.user_id)
        .order_by(ClientProject.created_at.desc(), ClientProject.id.desc())
    )
    return list(result.scalars().all())


async def list_public_projects(session: AsyncSession, *, limit: int = 50) -> list[ClientProject]:
    result = await session.execute(
        select(ClientProject)
        .where(ClientProject.status == "published", ClientProject.visibility == "public")
        .order_by(ClientProject.moderated_at.desc(), ClientProject.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
