from __future__ import annotations

import pytest

from webengine.core.errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from webengine.persistence.db import SessionLocal
from webengine.services.tickets import (
    add_message,
    assign_ticket,
    create_ticket,
    get_ticket,
    list_tickets,
    normalize_priority,
    ticket_statistics,
    update_status,
)
from webengine.tests.utils.auth import create_test_user


async def _open_ticket(session, client, *, subject: str = "Site is down", priority: str | None = None):
    return await create_ticket(
        session,
        client,
        subject=subject,
        description="The homepage returns a blank page since this morning.",
        priority=priority,
    )


def test_unknown_priority_falls_back_to_medium() -> None:
    assert normalize_priority("URGENT") == "medium"
    assert normalize_priority(None) == "medium"
    assert normalize_priority(" High ") == "high"


@pytest.mark.asyncio
async def test_create_ticket_validates_input_and_role() -> None:
    _client_user, client = await create_test_user(username="client_t1", role="client")
    _plain_user, plain = await create_test_user(username="plain_t1")
    async with SessionLocal() as session:
        with pytest.raises(PermissionDenied):
            await _open_ticket(session, plain)
        with pytest.raises(ValidationFailed, match="Subject"):
            await create_ticket(session, client, subject="Hey", description="Long enough description")
        with pytest.raises(ValidationFailed, match="Description"):
            await create_ticket(session, client, subject="Valid subject", description="short")

        ticket = await _open_ticket(session, client, priority="bogus")
        view = await get_ticket(session, client, ticket.id)

    assert ticket.status == "open"
    assert ticket.priority == "medium"
    assert ticket.category == "general"
    assert [message.body for message in view.messages] == [ticket.description]


@pytest.mark.asyncio
async def test_replies_move_ticket_between_states() -> None:
    # Staff replies start work; client replies on waiting tickets resume it.
    _client_user, client = await create_test_user(username="client_t2", role="client")
    _staff_user, staff = await create_test_user(username="staff_t2", role="employee")
    async with SessionLocal() as session:
        ticket = await _open_ticket(session, client)

        await add_message(session, client, ticket.id, "Any update?")
        assert ticket.status == "open"

        await add_message(session, staff, ticket.id, "Looking into it.")
        assert ticket.status == "in_progress"

        await update_status(session, staff, ticket.id, "waiting_client")
        await add_message(session, staff, ticket.id, "Internal: waiting on DNS", is_internal=True)
        assert ticket.status == "waiting_client"

        await add_message(session, client, ticket.id, "Here are the DNS records.")
        assert ticket.status == "in_progress"


@pytest.mark.asyncio
async def test_closed_tickets_reject_messages() -> None:
    _client_user, client = await create_test_user(username="client_t3", role="client")
    _staff_user, staff = await create_test_user(username="staff_t3", role="admin")
    async with SessionLocal() as session:
        ticket = await _open_ticket(session, client)
        await update_status(session, staff, ticket.id, "closed")
        assert ticket.closed_at is not None
        assert ticket.resolved_at is not None

        with pytest.raises(InvalidTransition):
            await add_message(session, client, ticket.id, "Hello?")

        # Reopening clears the terminal timestamps.
        await update_status(session, staff, ticket.id, "open")
        assert ticket.closed_at is None
        assert ticket.resolved_at is None


@pytest.mark.asyncio
async def test_clients_see_only_their_tickets() -> None:
    # Foreign and missing tickets both answer "Access denied" to clients.
    _owner_user, owner = await create_test_user(username="client_t4", role="client")
    _other_user, other = await create_test_user(username="client_t4b", role="client")
    _staff_user, staff = await create_test_user(username="staff_t4", role="employee")
    async with SessionLocal() as session:
        ticket = await _open_ticket(session, owner)
        with pytest.raises(PermissionDenied, match="Access denied"):
            await get_ticket(session, other, ticket.id)
        with pytest.raises(PermissionDenied, match="Access denied"):
            await get_ticket(session, other, 424242)
        with pytest.raises(PermissionDenied, match="Access denied"):
            await add_message(session, other, ticket.id, "Let me in")
        with pytest.raises(NotFound):
            await get_ticket(session, staff, 424242)
        assert await list_tickets(session, other) == []


@pytest.mark.asyncio
async def test_internal_notes_are_hidden_from_clients() -> None:
    _client_user, client = await create_test_user(username="client_t5", role="client")
    _staff_user, staff = await create_test_user(username="staff_t5", role="employee")
    async with SessionLocal() as session:
        ticket = await _open_ticket(session, client)
        await add_message(session, staff, ticket.id, "Customer is on legacy plan", is_internal=True)
        await add_message(session, staff, ticket.id, "We are on it.")
        with pytest.raises(PermissionDenied):
            await add_message(session, client, ticket.id, "Sneaky note", is_internal=True)

        client_view = await get_ticket(session, client, ticket.id)
        staff_view = await get_ticket(session, staff, ticket.id)

    assert len(client_view.messages) == 2
    assert all(not message.is_internal for message in client_view.messages)
    assert len(staff_view.messages) == 3


@pytest.mark.asyncio
async def test_staff_listing_orders_by_priority() -> None:
    _client_user, client = await create_test_user(username="client_t6", role="client")
    _staff_user, staff = await create_test_user(username="staff_t6", role="employee")
    async with SessionLocal() as session:
        low = await _open_ticket(session, client, subject="Typo on about page", priority="low")
        critical = await _open_ticket(session, client, subject="Checkout broken", priority="critical")
        medium = await _open_ticket(session, client, subject="Slow admin panel")
        await update_status(session, staff, medium.id, "resolved")

        staff_order = [ticket.id for ticket in await list_tickets(session, staff)]
        client_order = [ticket.id for ticket in await list_tickets(session, client)]
        resolved = await list_tickets(session, staff, status="resolved")
        stats = await ticket_statistics(session, client)

    assert staff_order == [critical.id, medium.id, low.id]
    assert set(client_order) == {low.id, critical.id, medium.id}
    assert [ticket.id for ticket in resolved] == [medium.id]
    assert stats["total"] == 3
    assert stats["active"] == 2
    assert stats["by_status"]["resolved"] == 1


@pytest.mark.asyncio
async def test_assignment_requires_active_staff() -> None:
    _client_user, client = await create_test_user(username="client_t7", role="client")
    staff_user, staff = await create_test_user(username="staff_t7", role="employee")
    async with SessionLocal() as session:
        ticket = await _open_ticket(session, client)
        with pytest.raises(PermissionDenied):
            await assign_ticket(session, client, ticket.id, staff_user.id)
        with pytest.raises(ValidationFailed, match="active staff"):
            await assign_ticket(session, staff, ticket.id, client.user_id)

        await assign_ticket(session, staff, ticket.id, staff_user.id)

    assert ticket.assigned_to == staff_user.id
    assert ticket.status == "in_progress"
