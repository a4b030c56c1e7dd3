from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from webengine.apps.api.deps import RequestContext, get_current_actor, get_request_context, verify_csrf
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.domain.models import SupportTicket, TicketMessage
from webengine.services import tickets
from webengine.services.authz import Actor


router = APIRouter(
    prefix="/tickets",
    tags=["tickets"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(verify_csrf)],
)

TicketStatus = Literal["open", "in_progress", "waiting_client", "resolved", "closed"]


class TicketCreateRequest(BaseModel):
    subject: str = Field(max_length=1000)
    description: str = Field(max_length=20000)
    # Unknown priorities fall back to medium.
    priority: str | None = None
    category: str | None = None


class TicketMessageRequest(BaseModel):
    body: str = Field(max_length=20000)
    is_internal: bool = False


class TicketStatusRequest(BaseModel):
    status: TicketStatus
    assigned_to: int | None = None
    priority: Literal["low", "medium", "high", "critical"] | None = None


class TicketAssignRequest(BaseModel):
    assignee_id: int


class TicketMessageResponse(BaseModel):
    id: int
    author_id: int
    body: str
    is_internal: bool
    created_at: datetime | None


class TicketResponse(BaseModel):
    id: int
    client_id: int
    subject: str
    description: str
    category: str | None
    priority: str
    status: str
    assigned_to: int | None
    resolved_at: datetime | None
    closed_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class TicketDetailResponse(TicketResponse):
    messages: list[TicketMessageResponse]


class TicketListResponse(BaseModel):
    items: list[TicketResponse]


def _ticket_fields(ticket: SupportTicket) -> dict:
    return {
        "id": ticket.id,
        "client_id": ticket.client_id,
        "subject": ticket.subject,
        "description": ticket.description,
        "category": ticket.category,
        "priority": ticket.priority,
        "status": ticket.status,
        "assigned_to": ticket.assigned_to,
        "resolved_at": ticket.resolved_at,
        "closed_at": ticket.closed_at,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


def _message_to_response(message: TicketMessage) -> TicketMessageResponse:
    return TicketMessageResponse(
        id=message.id,
        author_id=message.author_id,
        body=message.body,
        is_internal=message.is_internal,
        created_at=message.created_at,
    )


@router.post("", response_model=SuccessEnvelope[TicketResponse], status_code=201)
async def create_ticket(
    payload: TicketCreateRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    ticket = await tickets.create_ticket(
        ctx.db,
        actor,
        subject=payload.subject,
        description=payload.description,
        priority=payload.priority,
        category=payload.category,
    )
    await ctx.db.commit()
    return success_response(request=request, data=TicketResponse(**_ticket_fields(ticket)))


@router.get("", response_model=SuccessEnvelope[TicketListResponse])
async def list_tickets(
    request: Request,
    status: TicketStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    rows = await tickets.list_tickets(ctx.db, actor, status=status, limit=limit, offset=offset)
    data = TicketListResponse(items=[TicketResponse(**_ticket_fields(ticket)) for ticket in rows])
    return success_response(request=request, data=data)


@router.get("/stats")
async def ticket_stats(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    stats = await tickets.ticket_statistics(ctx.db, actor)
    return success_response(request=request, data=stats)


@router.get("/{ticket_id}", response_model=SuccessEnvelope[TicketDetailResponse])
async def get_ticket(
    ticket_id: int,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    view = await tickets.get_ticket(ctx.db, actor, ticket_id)
    data = TicketDetailResponse(
        **_ticket_fields(view.ticket),
        messages=[_message_to_response(message) for message in view.messages],
    )
    return success_response(request=request, data=data)


@router.post(
    "/{ticket_id}/messages",
    response_model=SuccessEnvelope[TicketMessageResponse],
    status_code=201,
)
async def add_ticket_message(
    ticket_id: int,
    payload: TicketMessageRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    message = await tickets.add_message(ctx.db, actor, ticket_id, payload.body, is_internal=payload.is_internal)
    await ctx.db.commit()
    return success_response(request=request, data=_message_to_response(message))


@router.post("/{ticket_id}/status", response_model=SuccessEnvelope[TicketResponse])
async def update_ticket_status(
    ticket_id: int,
    payload: TicketStatusRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    ticket = await tickets.update_status(
        ctx.db,
        actor,
        ticket_id,
        payload.status,
        assigned_to=payload.assigned_to,
        priority=payload.priority,
    )
    await ctx.db.commit()
    return success_response(request=request, data=TicketResponse(**_ticket_fields(ticket)))


@router.post("/{ticket_id}/assign", response_model=SuccessEnvelope[TicketResponse])
async def assign_ticket(
    ticket_id: int,
    payload: TicketAssignRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: RequestContext = Depends(get_request_context),
) -> dict:
    ticket = await tickets.assign_ticket(ctx.db, actor, ticket_id, payload.assignee_id)
    await ctx.db.commit()
    return success_response(request=request, data=TicketResponse(**_ticket_fields(ticket)))
