import pytest
from sqlalchemy import select, update

from src.core import (
    ConflictException,
    InvalidStatusException,
    PermissionDeniedException,
    ResourceNotFoundException,
    ValidationException,
)
from src.tickets.application import StatusTransitionService, TATService
from src.tickets.infrastructure import SQLAlchemyUnitOfWork
from src.tickets.infrastructure.models import TicketGroupModel, TicketModel, TicketStatusModel

from factories import (
    ADMIN,
    COMMITTEE,
    NOW,
    OTHER_STUDENT,
    OUTSIDE_COMMITTEE,
    STUDENT,
    create_ticket,
    load_ticket,
    outbox_rows,
)


async def transition(session_factory, clock, ticket_id, status, actor):
    async with session_factory() as session:
        return await StatusTransitionService(clock).transition(
            SQLAlchemyUnitOfWork(session), ticket_id, status, actor
        )


async def test_admin_moves_ticket_in_progress(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)
    clock.advance(hours=1)

    result = await transition(session_factory, clock, created.ticket.id, "In Progress", ADMIN)

    assert (result.old_status, result.new_status) == ("open", "in_progress")
    ticket = await load_ticket(session_factory, created.ticket.id)
    assert ticket.status == "in_progress"
    assert ticket.assigned_to == ADMIN.id
    assert ticket.acknowledged_at == clock.now
    assert ticket.updated_at == clock.now

    [event] = await outbox_rows(session_factory, "ticket.status.updated")
    assert event.id == result.outbox_event_id
    assert event.payload == {
        "ticket_id": created.ticket.id,
        "old_status": "open",
        "new_status": "in_progress",
        "updated_by": ADMIN.id,
        "actor_role": "admin",
    }


async def test_same_status_is_rejected(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)

    with pytest.raises(ValidationException):
        await transition(session_factory, clock, created.ticket.id, "OPEN", ADMIN)

    assert await outbox_rows(session_factory, "ticket.status.updated") == []


async def test_unknown_and_inactive_targets(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)
    async with session_factory() as session:
        await session.execute(
            update(TicketStatusModel).where(TicketStatusModel.value == "forwarded").values(is_active=False)
        )

    with pytest.raises(InvalidStatusException) as unknown:
        await transition(session_factory, clock, created.ticket.id, "on_hold", ADMIN)
    assert unknown.value.reason == "unknown"

    with pytest.raises(InvalidStatusException) as inactive:
        await transition(session_factory, clock, created.ticket.id, "forwarded", ADMIN)
    assert inactive.value.reason == "inactive"


async def test_missing_ticket(session_factory, seeded, clock):
    with pytest.raises(ResourceNotFoundException):
        await transition(session_factory, clock, 999, "resolved", ADMIN)


async def test_student_closes_own_ticket(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)

    result = await transition(session_factory, clock, created.ticket.id, "closed", STUDENT)

    assert result.new_status == "resolved"
    ticket = await load_ticket(session_factory, created.ticket.id)
    assert ticket.resolved_at == NOW
    # Students never take ownership
    assert ticket.assigned_to == "warden-any"


async def test_student_denied_moves(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)

    with pytest.raises(PermissionDeniedException):
        await transition(session_factory, clock, created.ticket.id, "in_progress", STUDENT)
    with pytest.raises(PermissionDeniedException):
        await transition(session_factory, clock, created.ticket.id, "resolved", OTHER_STUDENT)

    ticket = await load_ticket(session_factory, created.ticket.id)
    assert ticket.status == "open"


async def test_committee_acts_within_its_groups(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock, group_id=1)

    with pytest.raises(PermissionDeniedException):
        await transition(session_factory, clock, created.ticket.id, "in_progress", OUTSIDE_COMMITTEE)

    result = await transition(session_factory, clock, created.ticket.id, "in_progress", COMMITTEE)
    assert result.new_status == "in_progress"


async def test_committee_tag_grants_scope(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock, committee_ids=[8])

    result = await transition(session_factory, clock, created.ticket.id, "in_progress", OUTSIDE_COMMITTEE)

    assert result.new_status == "in_progress"


async def test_reopen_starts_new_tat_cycle(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)
    ticket_id = created.ticket.id
    tat = TATService(clock=clock)

    for value in ("1 day", "2 days"):
        async with session_factory() as session:
            await tat.set_tat(SQLAlchemyUnitOfWork(session), ticket_id, value, True, ADMIN)
    await transition(session_factory, clock, ticket_id, "resolved", ADMIN)

    clock.advance(days=1)
    result = await transition(session_factory, clock, ticket_id, "open", STUDENT)

    assert result.old_status == "resolved"
    assert result.new_status == "reopened"
    ticket = await load_ticket(session_factory, ticket_id)
    assert ticket.status == "reopened"
    assert ticket.reopen_count == 1
    assert ticket.reopened_at == clock.now
    assert ticket.resolved_at is None
    assert ticket.due_at is None
    assert ticket.tat_extension_count == 0
    assert not ticket.state.has_tat
    assert ticket.state.tat_extensions == []


async def test_failure_after_transition_rolls_back_outbox(uow_scope, session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)

    with pytest.raises(RuntimeError):
        async with uow_scope() as uow:
            await StatusTransitionService(clock).transition(uow, created.ticket.id, "in_progress", ADMIN)
            raise RuntimeError("crash before commit")

    ticket = await load_ticket(session_factory, created.ticket.id)
    assert ticket.status == "open"
    assert await outbox_rows(session_factory, "ticket.status.updated") == []


async def test_guarded_save_detects_concurrent_change(session_factory, seeded, clock):
    created = await create_ticket(session_factory, clock)
    stale = await load_ticket(session_factory, created.ticket.id)

    await transition(session_factory, clock, created.ticket.id, "in_progress", ADMIN)

    stale.status = "awaiting_student"
    async with session_factory() as session:
        with pytest.raises(ConflictException):
            await SQLAlchemyUnitOfWork(session).tickets.save(stale, expected_status="open")


async def test_group_archived_when_last_ticket_resolves(session_factory, seeded, clock):
    first = await create_ticket(session_factory, clock, group_id=1)
    second = await create_ticket(session_factory, clock, group_id=1)

    result = await transition(session_factory, clock, first.ticket.id, "resolved", ADMIN)
    assert not result.group_archived

    result = await transition(session_factory, clock, second.ticket.id, "resolved", ADMIN)
    assert result.group_archived

    async with session_factory() as session:
        group = (await session.execute(select(TicketGroupModel).where(TicketGroupModel.id == 1))).scalar_one()
    assert group.is_archived
    assert group.archived_at is not None


async def test_group_archived_when_other_member_has_legacy_final_status(session_factory, seeded, clock):
    first = await create_ticket(session_factory, clock, group_id=1)
    second = await create_ticket(session_factory, clock, group_id=1)
    async with session_factory() as session:
        await session.execute(
            update(TicketModel).where(TicketModel.id == first.ticket.id).values(status="RESOLVED")
        )

    result = await transition(session_factory, clock, second.ticket.id, "resolved", ADMIN)

    assert result.group_archived
