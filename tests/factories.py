"""Test doubles, constants and helpers shared by the test modules."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from src.outbox.application.interfaces import IChatSink, IEmailSink
from src.outbox.infrastructure.models import OutboxModel
from src.tickets.application import TicketService
from src.tickets.domain import Actor
from src.tickets.infrastructure import SQLAlchemyUnitOfWork

# Wednesday
NOW = datetime(2030, 1, 16, 9, 0, tzinfo=timezone.utc)

STUDENT = Actor(id="student-1", role="student")
OTHER_STUDENT = Actor(id="student-2", role="student")
ADMIN = Actor(id="admin-1", role="admin")
COMMITTEE = Actor(id="committee-1", role="committee", committee_ids=frozenset({7}))
OUTSIDE_COMMITTEE = Actor(id="committee-2", role="committee", committee_ids=frozenset({8}))

HOSTEL_CATEGORY = 1
ACADEMIC_CATEGORY = 2
EMPTY_CATEGORY = 3
PLUMBING_SUBCATEGORY = 10


class FrozenClock:
    """Callable clock the services accept; advance() moves it forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChatSink(IChatSink):
    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self.posts: List[Dict[str, Any]] = []
        self.replies: List[Dict[str, Any]] = []
        self.raise_on_post: Optional[Exception] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def post(self, channel, text, blocks=None):
        if not self._enabled:
            return None
        if self.raise_on_post:
            raise self.raise_on_post
        ts = f"1700000000.{len(self.posts):06d}"
        self.posts.append({"channel": channel, "text": text, "ts": ts})
        return ts

    async def reply(self, channel, message_ref, text):
        if not self._enabled:
            return
        self.replies.append({"channel": channel, "thread_ts": message_ref, "text": text})


class FakeEmailSink(IEmailSink):
    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def send(self, to, subject, html, in_reply_to=None, references=None):
        if not self._enabled:
            return None
        message_id = f"<msg-{len(self.sent) + 1}@test>"
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "in_reply_to": in_reply_to,
            "references": references,
            "message_id": message_id,
        })
        return message_id



async def create_ticket(
    session_factory,
    clock: Optional[FrozenClock] = None,
    actor: Actor = STUDENT,
    category_id: int = HOSTEL_CATEGORY,
    **kwargs,
):
    """Create a ticket through the service and commit it."""
    kwargs.setdefault("description", "Tap in the washroom is leaking")
    kwargs.setdefault("requester_email", "student1@example.edu")
    service = TicketService(default_resolution_hours=48, clock=clock)
    async with session_factory() as session:
        result = await service.create_ticket(SQLAlchemyUnitOfWork(session), actor, category_id, **kwargs)
    return result


async def outbox_rows(session_factory, event_type: Optional[str] = None) -> List[OutboxModel]:
    async with session_factory() as session:
        stmt = select(OutboxModel).order_by(OutboxModel.id.asc())
        if event_type:
            stmt = stmt.where(OutboxModel.event_type == event_type)
        return list((await session.execute(stmt)).scalars().all())


async def load_ticket(session_factory, ticket_id: int):
    async with session_factory() as session:
        return await SQLAlchemyUnitOfWork(session).tickets.get(ticket_id)
