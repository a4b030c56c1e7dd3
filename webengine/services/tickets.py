from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import html
import logging
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from webengine.core.errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from webengine.domain.models import SupportTicket, TicketMessage, User
from webengine.services.audit import record_actor_event
from webengine.services.authz import STAFF_ROLES, Actor, authorize, require


logger = logging.getLogger(__name__)

PRIORITIES = ("low", "medium", "high", "critical")
DEFAULT_PRIORITY = "medium"
STATUSES = ("open", "in_progress", "waiting_client", "resolved", "closed")
CATEGORIES = ("general", "technical", "billing", "project", "other")
SUBJECT_MIN, SUBJECT_MAX = 5, 255
DESCRIPTION_MIN = 10
MESSAGE_MAX = 10000

_PRIORITY_RANK = case(
    {"critical": 0, "high": 1, "medium": 2, "low": 3},
    value=SupportTicket.priority,
    else_=4,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TicketView:
    ticket: SupportTicket
    messages: list[TicketMessage] = field(default_factory=list)


def normalize_priority(priority: str | None) -> str:
    # Unknown priorities fall back to medium instead of failing the request.
    value = (priority or "").strip().lower()
    return value if value in PRIORITIES else DEFAULT_PRIORITY


async def _load_accessible(
    session: AsyncSession,
    actor: Actor,
    ticket_id: int,
    action: str,
) -> SupportTicket:
    # Clients get the same denial for missing and foreign tickets.
    ticket = await session.get(SupportTicket, ticket_id) if ticket_id > 0 else None
    require(actor, action, owner_id=ticket.client_id if ticket else None)
    if ticket is None:
        raise NotFound("Ticket not found")
    return ticket


async def create_ticket(
    session: AsyncSession,
    actor: Actor,
    *,
    subject: str,
    description: str,
    priority: str | None = None,
    category: str | None = None,
) -> SupportTicket:
    require(actor, "ticket.create")
    subject = (subject or "").strip()
    description = (description or "").strip()
    if not SUBJECT_MIN <= len(subject) <= SUBJECT_MAX:
        raise ValidationFailed(f"Subject must be between {SUBJECT_MIN} and {SUBJECT_MAX} characters.")
    if len(description) < DESCRIPTION_MIN:
        raise ValidationFailed(f"Description must be at least {DESCRIPTION_MIN} characters.")
    if len(description) > MESSAGE_MAX:
        raise ValidationFailed(f"Description must be at most {MESSAGE_MAX} characters.")
    resolved_category = (category or "general").strip().lower()
    if resolved_category not in CATEGORIES:
        resolved_category = "general"
    now = _utc_now()
    ticket = SupportTicket(
        client_id=actor.user_id,
        subject=html.escape(subject, quote=True),
        description=html.escape(description, quote=True),
        priority=normalize_priority(priority),
        category=resolved_category,
        status="open",
        created_at=now,
        updated_at=now,
    )
    session.add(ticket)
    await session.flush()
    # The description doubles as the first message of the conversation.
    session.add(
        TicketMessage(
            ticket_id=ticket.id,
            author_id=actor.user_id,
            body=ticket.description,
            is_internal=False,
            created_at=now,
        )
    )
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type="ticket.created",
        resource_type="support_ticket",
        resource_id=ticket.id,
        metadata={"priority": ticket.priority},
    )
    logger.info("ticket_created ticket_id=%s client_id=%s priority=%s", ticket.id, actor.user_id, ticket.priority)
    return ticket


def next_status_after_message(ticket: SupportTicket, author: Actor) -> str:
    """Status a ticket moves to when ``author`` posts a reply."""
    if author.user_id == ticket.client_id and not author.is_staff:
        if ticket.status == "waiting_client":
            return "in_progress"
        return ticket.status
    if author.is_staff and ticket.status == "open":
        return "in_progress"
    return ticket.status


async def add_message(
    session: AsyncSession,
    actor: Actor,
    ticket_id: int,
    body: str,
    *,
    is_internal: bool = False,
) -> TicketMessage:
    ticket = await _load_accessible(session, actor, ticket_id, "ticket.reply")
    if is_internal:
        require(actor, "ticket.internal_note")
    body = (body or "").strip()
    if not body:
        raise ValidationFailed("Message cannot be empty.")
    if len(body) > MESSAGE_MAX:
        raise ValidationFailed(f"Message must be at most {MESSAGE_MAX} characters.")
    if ticket.status == "closed":
        raise InvalidTransition("Closed tickets cannot receive new messages")
    now = _utc_now()
    message = TicketMessage(
        ticket_id=ticket.id,
        author_id=actor.user_id,
        body=html.escape(body, quote=True),
        is_internal=is_internal,
        created_at=now,
    )
    session.add(message)
    previous = ticket.status
    if not is_internal:
        ticket.status = next_status_after_message(ticket, actor)
    ticket.updated_at = now
    await session.flush()
    if ticket.status != previous:
        logger.info("ticket_status_auto_changed ticket_id=%s from=%s to=%s", ticket.id, previous, ticket.status)
    return message


async def update_status(
    session: AsyncSession,
    actor: Actor,
    ticket_id: int,
    status: str,
    *,
    assigned_to: int | None = None,
    priority: str | None = None,
) -> SupportTicket:
    require(actor, "ticket.update_status")
    if status not in STATUSES:
        raise ValidationFailed("Invalid ticket status")
    ticket = await _load_accessible(session, actor, ticket_id, "ticket.update_status")
    if assigned_to is not None:
        await _require_staff_user(session, assigned_to)
        ticket.assigned_to = assigned_to
    if priority is not None:
        if priority not in PRIORITIES:
            raise ValidationFailed("Invalid ticket priority")
        ticket.priority = priority
    now = _utc_now()
    previous = ticket.status
    ticket.status = status
    if status == "resolved":
        ticket.resolved_at = now
    elif status == "closed":
        ticket.closed_at = now
        ticket.resolved_at = ticket.resolved_at or now
    else:
        # Reopening clears terminal timestamps.
        ticket.resolved_at = None
        ticket.closed_at = None
    ticket.updated_at = now
    await session.flush()
    await record_actor_event(
        session,
        actor,
        event_type="ticket.status_changed",
        resource_type="support_ticket",
        resource_id=ticket.id,
        metadata={"from": previous, "to": status, "assigned_to": ticket.assigned_to},
    )
    logger.info("ticket_status_changed ticket_id=%s from=%s to=%s", ticket.id, previous, status)
    return ticket


async def _require_staff_user(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None or user.role not in STAFF_ROLES or not user.is_active:
        raise ValidationFailed("Tickets can only be assigned to active staff members")
    return user


async def assign_ticket(session: AsyncSession, actor: Actor, ticket_id: int, assignee_id: int) -> SupportTicket:
    # Assignment starts work on the ticket.
    return await update_status(session, actor, ticket_id, "in_progress", assigned_to=assignee_id)


async def get_ticket(session: AsyncSession, actor: Actor, ticket_id: int) -> TicketView:
    ticket = await _load_accessible(session, actor, ticket_id, "ticket.read")
    statement = select(TicketMessage).where(TicketMessage.ticket_id == ticket.id)
    if not actor.is_staff:
        statement = statement.where(TicketMessage.is_internal.is_(False))
    result = await session.execute(statement.order_by(TicketMessage.id.asc()))
    return TicketView(ticket=ticket, messages=list(result.scalars().all()))


async def list_tickets(
    session: AsyncSession,
    actor: Actor,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[SupportTicket]:
    if status is not None and status not in STATUSES:
        raise ValidationFailed("Invalid ticket status")
    statement = select(SupportTicket)
    if authorize(actor, "ticket.list_all").allowed:
        # Staff triage: most urgent first, then oldest.
        statement = statement.order_by(_PRIORITY_RANK, SupportTicket.created_at.asc(), SupportTicket.id.asc())
    else:
        statement = statement.where(SupportTicket.client_id == actor.user_id).order_by(
            SupportTicket.created_at.desc(), SupportTicket.id.desc()
        )
    if status is not None:
        statement = statement.where(SupportTicket.status == status)
    result = await session.execute(statement.offset(max(0, offset)).limit(max(1, min(200, limit))))
    return list(result.scalars().all())


async def ticket_statistics(session: AsyncSession, actor: Actor) -> dict[str, Any]:
    statement = select(SupportTicket.status, func.count()).group_by(SupportTicket.status)
    if not authorize(actor, "ticket.list_all").allowed:
        if actor.role != "client":
            raise PermissionDenied()
        statement = statement.where(SupportTicket.client_id == actor.user_id)
    counts = {status: 0 for status in STATUSES}
    for status, count in (await session.execute(statement)).all():
        counts[status] = int(count)
    return {
        "by_status": counts,
        "total": sum(counts.values()),
        "active": counts["open"] + counts["in_progress"] + counts["waiting_client"],
    }
