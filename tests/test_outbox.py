from datetime import timedelta

import pytest
from sqlalchemy import select

from src.core import DeliveryException, ValidationException
from src.outbox.application import NotificationHandlers, OutboxDispatcher, enqueue
from src.outbox.domain import retry_delay
from src.outbox.infrastructure import SQLAlchemyOutboxRepository, outbox_repository_scope
from src.tickets.application import EscalationSweep, StatusTransitionService
from src.tickets.infrastructure import SQLAlchemyNotificationDirectory, SQLAlchemyUnitOfWork
from src.tickets.infrastructure.models import TicketModel

from factories import ADMIN, STUDENT, FakeChatSink, FakeEmailSink, create_ticket, outbox_rows


async def add_events(session_factory, *event_types):
    ids = []
    async with session_factory() as session:
        repo = SQLAlchemyOutboxRepository(session)
        for event_type in event_types:
            ids.append(await enqueue(repo, event_type, {"n": len(ids)}))
    return ids


async def get_event(session_factory, event_id):
    async with session_factory() as session:
        return await SQLAlchemyOutboxRepository(session).get(event_id)


def dispatcher_for(session_factory, clock, handlers, **kwargs):
    return OutboxDispatcher(outbox_repository_scope(session_factory), handlers, clock=clock, **kwargs)


class Recorder:
    def __init__(self, error=None):
        self.seen = []
        self.error = error

    async def __call__(self, event):
        self.seen.append(event.id)
        if self.error:
            raise self.error


# ========== Enqueue ==========

async def test_enqueue_rejects_blank_event_type(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValidationException):
            await enqueue(SQLAlchemyOutboxRepository(session), "  ", {})


async def test_enqueue_serializes_datetimes(session_factory, clock):
    async with session_factory() as session:
        await enqueue(SQLAlchemyOutboxRepository(session), "demo", {"at": clock.now, "ids": (1, 2)})

    [row] = await outbox_rows(session_factory, "demo")
    assert row.payload == {"at": "2030-01-16T09:00:00+00:00", "ids": [1, 2]}
    assert row.attempts == 0
    assert row.processed_at is None


@pytest.mark.parametrize("attempts, minutes", [(1, 2), (2, 4), (3, 8), (5, 32), (6, 60), (40, 60)])
def test_retry_delay_is_exponential_and_capped(attempts, minutes):
    assert retry_delay(attempts, max_backoff_minutes=60) == timedelta(minutes=minutes)


# ========== Drain ==========

async def test_drain_delivers_in_insertion_order(session_factory, clock):
    ids = await add_events(session_factory, "demo", "demo", "demo")
    recorder = Recorder()
    dispatcher = dispatcher_for(session_factory, clock, {"demo": recorder})

    partial = await dispatcher.drain(batch_limit=2)
    rest = await dispatcher.drain()

    assert recorder.seen == ids
    assert (partial.claimed, partial.delivered) == (2, 2)
    assert (rest.claimed, rest.delivered) == (1, 1)
    assert (await dispatcher.drain()).claimed == 0

    event = await get_event(session_factory, ids[0])
    assert event.processed_at == clock.now
    assert event.attempts == 1
    assert event.next_retry_at is None


async def test_failed_delivery_backs_off(session_factory, clock):
    [event_id] = await add_events(session_factory, "demo")
    dispatcher = dispatcher_for(session_factory, clock, {"demo": Recorder(RuntimeError("boom"))})

    result = await dispatcher.drain()
    assert (result.claimed, result.failed, result.dead) == (1, 1, 0)

    event = await get_event(session_factory, event_id)
    assert event.attempts == 1
    assert event.last_error == "RuntimeError: boom"
    assert event.next_retry_at == clock.now + timedelta(minutes=2)
    assert event.processed_at is None

    assert (await dispatcher.drain()).claimed == 0

    clock.advance(minutes=2)
    assert (await dispatcher.drain()).claimed == 1
    event = await get_event(session_factory, event_id)
    assert event.attempts == 2
    assert event.next_retry_at == clock.now + timedelta(minutes=4)


async def test_event_parked_after_max_attempts(session_factory, clock):
    [event_id] = await add_events(session_factory, "demo")
    dispatcher = dispatcher_for(session_factory, clock, {"demo": Recorder(RuntimeError("boom"))}, max_attempts=2)

    await dispatcher.drain()
    clock.advance(minutes=2)
    result = await dispatcher.drain()
    assert (result.failed, result.dead) == (1, 1)

    clock.advance(days=1)
    assert (await dispatcher.drain()).claimed == 0

    async with session_factory() as session:
        repo = SQLAlchemyOutboxRepository(session)
        failed = await repo.list_failed()
        pending = await repo.count_pending()
    assert [e.id for e in failed] == [event_id]
    assert failed[0].is_dead
    assert failed[0].attempts == 2
    assert pending == 0


async def test_unknown_event_type_is_a_failure(session_factory, clock):
    [event_id] = await add_events(session_factory, "mystery")

    result = await dispatcher_for(session_factory, clock, {}).drain()

    assert result.failed == 1
    event = await get_event(session_factory, event_id)
    assert "No handler registered" in event.last_error


async def test_dispatch_single_event(session_factory, clock):
    [event_id] = await add_events(session_factory, "demo")
    recorder = Recorder()
    dispatcher = dispatcher_for(session_factory, clock, {"demo": recorder})

    assert await dispatcher.dispatch(event_id)
    assert not await dispatcher.dispatch(event_id)
    assert not await dispatcher.dispatch(9999)
    assert recorder.seen == [event_id]


async def test_claim_lease_blocks_other_workers_until_it_expires(session_factory, clock):
    [event_id] = await add_events(session_factory, "demo")
    scope = outbox_repository_scope(session_factory)

    # A worker claims the row and dies before recording the outcome
    async with scope() as repo:
        claimed = await repo.claim_next(clock.now, clock.now + timedelta(seconds=300))
    assert claimed.id == event_id

    recorder = Recorder()
    dispatcher = dispatcher_for(session_factory, clock, {"demo": recorder}, claim_timeout_seconds=300)
    assert (await dispatcher.drain()).claimed == 0

    clock.advance(seconds=301)
    assert (await dispatcher.drain()).delivered == 1
    assert (await get_event(session_factory, event_id)).attempts == 2


# ========== Notification handlers ==========

def notification_dispatcher(session_factory, clock, chat, email):
    handlers = NotificationHandlers(
        SQLAlchemyNotificationDirectory(session_factory), chat, email, lambda domain: f"#{(domain or 'general').lower()}"
    )
    return dispatcher_for(session_factory, clock, handlers.registry())


async def thread_refs(session_factory, ticket_id):
    async with session_factory() as session:
        row = (await session.execute(
            select(TicketModel.slack_channel, TicketModel.slack_thread_ts, TicketModel.email_thread_id)
            .where(TicketModel.id == ticket_id)
        )).one()
    return tuple(row)


async def test_ticket_events_thread_in_chat_and_email(session_factory, seeded, clock):
    chat, email = FakeChatSink(), FakeEmailSink()
    dispatcher = notification_dispatcher(session_factory, clock, chat, email)
    created = await create_ticket(session_factory, clock)
    ticket_id = created.ticket.id

    assert (await dispatcher.drain()).delivered == 1
    [root] = chat.posts
    assert root["channel"] == "#hostel"
    assert f"New ticket #{ticket_id}" in root["text"]
    assert email.sent[0]["to"] == "student1@example.edu"
    assert email.sent[0]["in_reply_to"] is None
    assert await thread_refs(session_factory, ticket_id) == ("#hostel", root["ts"], "<msg-1@test>")

    async with session_factory() as session:
        await StatusTransitionService(clock).transition(
            SQLAlchemyUnitOfWork(session), ticket_id, "in_progress", ADMIN
        )
    assert (await dispatcher.drain()).delivered == 1

    assert len(chat.posts) == 1
    [reply] = chat.replies
    assert reply["thread_ts"] == root["ts"]
    assert "*Open* → *In Progress*" in reply["text"]
    assert email.sent[1]["in_reply_to"] == "<msg-1@test>"
    assert email.sent[1]["references"] == "<msg-1@test>"
    # First Message-ID stays the thread root
    assert (await thread_refs(session_factory, ticket_id))[2] == "<msg-1@test>"


async def test_disabled_sinks_are_successful_noops(session_factory, seeded, clock):
    chat, email = FakeChatSink(enabled=False), FakeEmailSink(enabled=False)
    created = await create_ticket(session_factory, clock)

    result = await notification_dispatcher(session_factory, clock, chat, email).drain()

    assert result.delivered == 1
    assert chat.posts == [] and email.sent == []
    assert await thread_refs(session_factory, created.ticket.id) == (None, None, None)


async def test_email_only_escalation_rule(session_factory, seeded, clock):
    chat, email = FakeChatSink(), FakeEmailSink()
    dispatcher = notification_dispatcher(session_factory, clock, chat, email)
    created = await create_ticket(session_factory, clock)
    await dispatcher.drain()

    async with session_factory() as session:
        await EscalationSweep(lambda: None, clock=clock).escalate(
            SQLAlchemyUnitOfWork(session), created.ticket.id, STUDENT
        )
    await dispatcher.drain()

    assert chat.replies == []
    escalation_mail = email.sent[-1]
    assert escalation_mail["to"] == "chief.warden@example.edu"
    assert escalation_mail["subject"] == f"Escalation #1: ticket #{created.ticket.id}"


async def test_chat_failure_is_recorded_for_retry(session_factory, seeded, clock):
    chat, email = FakeChatSink(), FakeEmailSink()
    chat.raise_on_post = DeliveryException("slack", "channel_not_found")
    created = await create_ticket(session_factory, clock)

    result = await notification_dispatcher(session_factory, clock, chat, email).drain()

    assert result.failed == 1
    [row] = await outbox_rows(session_factory, "ticket.created")
    assert "channel_not_found" in row.last_error
    assert row.processed_at is None
    assert await thread_refs(session_factory, created.ticket.id) == (None, None, None)


async def test_event_for_missing_ticket_fails(session_factory, seeded, clock):
    async with session_factory() as session:
        await enqueue(SQLAlchemyOutboxRepository(session), "ticket.status.updated", {"ticket_id": 4242})

    result = await notification_dispatcher(session_factory, clock, FakeChatSink(), FakeEmailSink()).drain()

    assert result.failed == 1
