"""
Outbox Infrastructure Repositories
==================================

SQLAlchemy implementation of the outbox repository.

Claiming locks the oldest eligible row with FOR UPDATE SKIP LOCKED, so
concurrent drains never hand the same row to two workers. The claim bumps
attempts and pushes next_retry_at forward as a lease, then commits; the
handler runs afterwards with no lock held.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core import RepositoryException
from src.infrastructure.database import SessionFactory, get_session_context
from src.outbox.application.interfaces import IOutboxRepository
from src.outbox.domain import OutboxEvent
from src.outbox.infrastructure.models import OutboxModel


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_event(model: OutboxModel) -> OutboxEvent:
    return OutboxEvent(
        id=model.id,
        event_type=model.event_type,
        payload=dict(model.payload or {}),
        created_at=_utc(model.created_at),
        attempts=model.attempts,
        processed_at=_utc(model.processed_at),
        last_error=model.last_error,
        next_retry_at=_utc(model.next_retry_at),
        failed_at=_utc(model.failed_at),
    )


def _eligible(now: datetime):
    return (
        OutboxModel.processed_at.is_(None),
        OutboxModel.failed_at.is_(None),
        or_(OutboxModel.next_retry_at.is_(None), OutboxModel.next_retry_at <= now),
    )


class SQLAlchemyOutboxRepository(IOutboxRepository):
    """
    SQLAlchemy implementation of the outbox repository.

    Bound to one session; the caller owns commit/rollback.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def enqueue(self, event_type: str, payload: Dict[str, Any]) -> int:
        model = OutboxModel(
            event_type=event_type,
            payload=payload,
            created_at=datetime.now(timezone.utc),
            attempts=0,
        )
        self._session.add(model)
        await self._session.flush()
        return model.id

    async def claim_next(self, now: datetime, lease_until: datetime) -> Optional[OutboxEvent]:
        stmt = (
            select(OutboxModel)
            .where(*_eligible(now))
            .order_by(OutboxModel.created_at.asc(), OutboxModel.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return await self._claim(stmt, lease_until)

    async def claim_by_id(
        self, event_id: int, now: datetime, lease_until: datetime
    ) -> Optional[OutboxEvent]:
        stmt = (
            select(OutboxModel)
            .where(OutboxModel.id == event_id, *_eligible(now))
            .with_for_update(skip_locked=True)
        )
        return await self._claim(stmt, lease_until)

    async def _claim(self, stmt, lease_until: datetime) -> Optional[OutboxEvent]:
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        if model is None:
            return None

        model.attempts += 1
        model.next_retry_at = lease_until
        await self._session.flush()
        return _to_event(model)

    async def mark_processed(self, event_id: int, processed_at: datetime) -> None:
        result = await self._session.execute(
            update(OutboxModel)
            .where(OutboxModel.id == event_id)
            .values(processed_at=processed_at, next_retry_at=None, last_error=None)
        )
        if result.rowcount == 0:
            raise RepositoryException(f"Outbox event {event_id} not found")

    async def mark_failed(
        self,
        event_id: int,
        error: str,
        next_retry_at: Optional[datetime],
        failed_at: Optional[datetime] = None,
    ) -> None:
        result = await self._session.execute(
            update(OutboxModel)
            .where(OutboxModel.id == event_id)
            .values(last_error=error[:4000], next_retry_at=next_retry_at, failed_at=failed_at)
        )
        if result.rowcount == 0:
            raise RepositoryException(f"Outbox event {event_id} not found")

    async def get(self, event_id: int) -> Optional[OutboxEvent]:
        model = await self._session.get(OutboxModel, event_id, populate_existing=True)
        return _to_event(model) if model else None

    async def list_failed(self, limit: int = 100) -> List[OutboxEvent]:
        stmt = (
            select(OutboxModel)
            .where(OutboxModel.failed_at.is_not(None), OutboxModel.processed_at.is_(None))
            .order_by(OutboxModel.failed_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_to_event(model) for model in result.scalars().all()]

    async def count_pending(self) -> int:
        stmt = select(func.count(OutboxModel.id)).where(
            OutboxModel.processed_at.is_(None), OutboxModel.failed_at.is_(None)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


def outbox_repository_scope(session_factory: SessionFactory = get_session_context):
    """
    Build a repository scope for OutboxDispatcher.

    Each ``async with`` opens a session, yields a repository on it and
    commits on exit.
    """

    @asynccontextmanager
    async def scope() -> AsyncGenerator[SQLAlchemyOutboxRepository, None]:
        async with session_factory() as session:
            yield SQLAlchemyOutboxRepository(session)

    return scope
