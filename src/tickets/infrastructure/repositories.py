"""
Ticket Infrastructure Repositories
==================================

Concrete implementations of the ticket repository interfaces using
SQLAlchemy.

Ticket writes go through a Core UPDATE guarded on the status (and, for
escalations, the level) that was read. A row that no longer matches raises
ConflictException instead of silently overwriting a concurrent change.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Iterable, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import ActorRole
from src.core import ConflictException, RepositoryException
from src.infrastructure.database import SessionFactory, get_session_context
from src.outbox.application.interfaces import INotificationDirectory
from src.outbox.domain import TicketNotificationContext
from src.outbox.infrastructure.repositories import SQLAlchemyOutboxRepository
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.interfaces import (
    IAssignmentDirectory,
    IEscalationRuleRepository,
    IGroupArchiver,
    IStatusRepository,
    ITicketRepository,
    IUnitOfWork,
)
from src.tickets.domain import (
    DEFAULT_STATUSES,
    CategoryAssignment,
    CategoryInfo,
    EscalationRule,
    StaffMember,
    StatusDefinition,
    StatusRegistry,
    Ticket,
    TicketExtendedState,
)
from src.tickets.infrastructure.models import (
    CategoryAssignmentModel,
    CategoryFieldModel,
    CategoryModel,
    EscalationRuleModel,
    StaffModel,
    SubcategoryModel,
    TicketCommitteeTagModel,
    TicketGroupModel,
    TicketModel,
    TicketStatusModel,
)

logger = get_logger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_staff(model: StaffModel) -> StaffMember:
    return StaffMember(
        id=model.id,
        role=model.role,
        full_name=model.full_name,
        email=model.email,
        domain=model.domain,
        scope=model.scope,
        is_active=model.is_active,
    )


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Maps TicketModel rows (plus category and committee tags) to Ticket
    entities; the metadata column is (de)serialized here and nowhere else.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, ticket_id: int, for_update: bool = False) -> Optional[Ticket]:
        stmt = (
            select(TicketModel, CategoryModel)
            .outerjoin(CategoryModel, CategoryModel.id == TicketModel.category_id)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update(of=TicketModel)

        row = (await self._session.execute(stmt)).first()
        if row is None:
            return None
        model, category = row
        return self._to_entity(model, category, await self._scope_tags(model))

    async def add(self, ticket: Ticket) -> Ticket:
        model = TicketModel(
            created_by=ticket.created_by,
            status=ticket.status,
            category_id=ticket.category_id,
            subcategory_id=ticket.subcategory_id,
            sub_subcategory_id=ticket.sub_subcategory_id,
            description=ticket.description,
            location=ticket.location,
            requester_email=ticket.requester_email,
            assigned_to=ticket.assigned_to,
            escalated_to=ticket.escalated_to,
            group_id=ticket.group_id,
            escalation_level=ticket.escalation_level,
            reopen_count=ticket.reopen_count,
            tat_extension_count=ticket.tat_extension_count,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            due_at=ticket.due_at,
            extended_state=ticket.state.to_dict(),
        )
        self._session.add(model)
        await self._session.flush()

        for committee_id in sorted(ticket.scope_tags):
            self._session.add(TicketCommitteeTagModel(ticket_id=model.id, committee_id=committee_id))
        await self._session.flush()

        ticket.id = model.id
        return ticket

    async def save(
        self,
        ticket: Ticket,
        expected_status: str,
        expected_level: Optional[int] = None,
    ) -> None:
        if ticket.id is None:
            raise RepositoryException("Cannot save a ticket without an id")

        stmt = update(TicketModel).where(
            TicketModel.id == ticket.id,
            TicketModel.status == expected_status,
        )
        if expected_level is not None:
            stmt = stmt.where(TicketModel.escalation_level == expected_level)

        stmt = stmt.values(
            status=ticket.status,
            assigned_to=ticket.assigned_to,
            escalated_to=ticket.escalated_to,
            escalation_level=ticket.escalation_level,
            reopen_count=ticket.reopen_count,
            tat_extension_count=ticket.tat_extension_count,
            updated_at=ticket.updated_at,
            resolved_at=ticket.resolved_at,
            acknowledged_at=ticket.acknowledged_at,
            reopened_at=ticket.reopened_at,
            last_escalation_at=ticket.last_escalation_at,
            sla_breached_at=ticket.sla_breached_at,
            due_at=ticket.due_at,
            extended_state=ticket.state.to_dict(),
        ).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConflictException(
                "Ticket was modified concurrently",
                {"ticket_id": ticket.id, "expected_status": expected_status, "expected_level": expected_level}
            )

    async def list_active_ids(self, final_codes: Sequence[str]) -> List[int]:
        stmt = select(TicketModel.id).order_by(TicketModel.id.asc())
        if final_codes:
            stmt = stmt.where(TicketModel.status.not_in(list(final_codes)))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_with_tat(self, final_codes: Sequence[str]) -> List[Ticket]:
        stmt = (
            select(TicketModel, CategoryModel)
            .outerjoin(CategoryModel, CategoryModel.id == TicketModel.category_id)
            .order_by(TicketModel.id.asc())
        )
        if final_codes:
            stmt = stmt.where(TicketModel.status.not_in(list(final_codes)))

        tickets = []
        for model, category in (await self._session.execute(stmt)).all():
            ticket = self._to_entity(model, category, frozenset())
            if ticket.state.has_tat:
                tickets.append(ticket)
        return tickets

    async def _scope_tags(self, model: TicketModel) -> frozenset:
        tags = set(
            (await self._session.execute(
                select(TicketCommitteeTagModel.committee_id)
                .where(TicketCommitteeTagModel.ticket_id == model.id)
            )).scalars().all()
        )
        if model.group_id is not None:
            group_committee = (await self._session.execute(
                select(TicketGroupModel.committee_id).where(TicketGroupModel.id == model.group_id)
            )).scalar_one_or_none()
            if group_committee is not None:
                tags.add(group_committee)
        return frozenset(tags)

    @staticmethod
    def _to_entity(model: TicketModel, category: Optional[CategoryModel], tags: Iterable[int]) -> Ticket:
        return Ticket(
            id=model.id,
            created_by=model.created_by,
            status=model.status,
            category_id=model.category_id,
            subcategory_id=model.subcategory_id,
            sub_subcategory_id=model.sub_subcategory_id,
            category_name=category.name if category else None,
            domain=category.domain if category else None,
            location=model.location,
            description=model.description,
            requester_email=model.requester_email,
            assigned_to=model.assigned_to,
            escalated_to=model.escalated_to,
            group_id=model.group_id,
            scope_tags=frozenset(tags),
            escalation_level=model.escalation_level,
            reopen_count=model.reopen_count,
            tat_extension_count=model.tat_extension_count,
            created_at=_utc(model.created_at),
            updated_at=_utc(model.updated_at),
            resolved_at=_utc(model.resolved_at),
            acknowledged_at=_utc(model.acknowledged_at),
            reopened_at=_utc(model.reopened_at),
            last_escalation_at=_utc(model.last_escalation_at),
            sla_breached_at=_utc(model.sla_breached_at),
            due_at=_utc(model.due_at),
            state=TicketExtendedState.from_dict(model.extended_state),
        )


class SQLAlchemyStatusRepository(IStatusRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_registry(self) -> StatusRegistry:
        result = await self._session.execute(select(TicketStatusModel))
        models = result.scalars().all()
        if not models:
            logger.warning("ticket_statuses table is empty, using built-in statuses")
            return StatusRegistry.default()
        return StatusRegistry(
            StatusDefinition(
                code=m.value,
                label=m.label,
                progress_percent=m.progress_percent,
                is_final=m.is_final,
                is_active=m.is_active,
                description=m.description or "",
                badge_color=m.badge_color,
                display_order=m.display_order,
            )
            for m in models
        )


class SQLAlchemyAssignmentDirectory(IAssignmentDirectory):
    """Read-only reference lookups for the assignment resolver."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_category(self, category_id: int) -> Optional[CategoryInfo]:
        model = await self._session.get(CategoryModel, category_id)
        if model is None or not model.is_active:
            return None
        return CategoryInfo(
            id=model.id,
            name=model.name,
            domain=model.domain,
            default_admin_id=model.default_admin_id,
        )

    async def field_owner(self, category_id: int, field_slugs: Sequence[str]) -> Optional[str]:
        if not field_slugs:
            return None
        stmt = (
            select(CategoryFieldModel.assigned_admin_id)
            .where(
                CategoryFieldModel.category_id == category_id,
                CategoryFieldModel.slug.in_(list(field_slugs)),
                CategoryFieldModel.is_active.is_(True),
                CategoryFieldModel.assigned_admin_id.is_not(None),
            )
            .order_by(CategoryFieldModel.display_order.asc(), CategoryFieldModel.id.asc())
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def subcategory_owner(self, subcategory_id: int) -> Optional[str]:
        stmt = select(SubcategoryModel.assigned_admin_id).where(
            SubcategoryModel.id == subcategory_id,
            SubcategoryModel.is_active.is_(True),
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def category_assignments(self, category_id: int) -> List[CategoryAssignment]:
        stmt = (
            select(CategoryAssignmentModel)
            .join(StaffModel, StaffModel.id == CategoryAssignmentModel.staff_id)
            .where(
                CategoryAssignmentModel.category_id == category_id,
                StaffModel.is_active.is_(True),
            )
        )
        result = await self._session.execute(stmt)
        return [
            CategoryAssignment(
                staff_id=m.staff_id,
                is_primary=m.is_primary,
                priority=m.priority,
                created_at=_utc(m.created_at),
            )
            for m in result.scalars().all()
        ]

    async def staff_for_domain(self, domain: str, scope: Optional[str]) -> List[StaffMember]:
        stmt = select(StaffModel).where(
            func.lower(StaffModel.domain) == domain.strip().lower(),
            StaffModel.is_active.is_(True),
            StaffModel.role != ActorRole.STUDENT,
        )
        if scope is None:
            stmt = stmt.where(StaffModel.scope.is_(None))
        else:
            stmt = stmt.where(func.lower(StaffModel.scope) == scope.strip().lower())
        result = await self._session.execute(stmt.order_by(StaffModel.id.asc()))
        return [_to_staff(m) for m in result.scalars().all()]

    async def super_admins(self) -> List[StaffMember]:
        stmt = (
            select(StaffModel)
            .where(StaffModel.role == ActorRole.SUPER_ADMIN, StaffModel.is_active.is_(True))
            .order_by(StaffModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_staff(m) for m in result.scalars().all()]


class SQLAlchemyEscalationRuleRepository(IEscalationRuleRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def rules_for(self, domain: str) -> List[EscalationRule]:
        stmt = (
            select(EscalationRuleModel)
            .where(
                func.lower(EscalationRuleModel.domain) == domain.strip().lower(),
                EscalationRuleModel.is_active.is_(True),
            )
            .order_by(EscalationRuleModel.level.asc(), EscalationRuleModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [
            EscalationRule(
                id=m.id,
                domain=m.domain,
                level=m.level,
                staff_id=m.staff_id,
                scope=m.scope,
                notify_channel=m.notify_channel,
                is_active=m.is_active,
            )
            for m in result.scalars().all()
        ]


class SQLAlchemyGroupArchiver(IGroupArchiver):
    """Archives a ticket group once all its tickets are final."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def exists(self, group_id: int) -> bool:
        found = await self._session.execute(
            select(TicketGroupModel.id).where(TicketGroupModel.id == group_id)
        )
        return found.scalar_one_or_none() is not None

    async def archive_if_complete(self, group_id: int, final_codes: Sequence[str]) -> bool:
        open_count = (await self._session.execute(
            select(func.count(TicketModel.id)).where(
                TicketModel.group_id == group_id,
                TicketModel.status.not_in(list(final_codes)),
            )
        )).scalar_one()
        if open_count:
            return False

        result = await self._session.execute(
            update(TicketGroupModel)
            .where(TicketGroupModel.id == group_id, TicketGroupModel.is_archived.is_(False))
            .values(is_archived=True, archived_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Ticket group archived", extra={"group_id": group_id})
        return bool(result.rowcount)


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """All ticket repositories and the outbox writer on one session."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.tickets = SQLAlchemyTicketRepository(session)
        self.statuses = SQLAlchemyStatusRepository(session)
        self.directory = SQLAlchemyAssignmentDirectory(session)
        self.rules = SQLAlchemyEscalationRuleRepository(session)
        self.groups = SQLAlchemyGroupArchiver(session)
        self.outbox = SQLAlchemyOutboxRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()


def unit_of_work_scope(session_factory: SessionFactory = get_session_context):
    """
    Build a scope for background jobs: each ``async with`` is one
    transaction that commits on exit and rolls back on error.
    """

    @asynccontextmanager
    async def scope() -> AsyncGenerator[SQLAlchemyUnitOfWork, None]:
        async with session_factory() as session:
            yield SQLAlchemyUnitOfWork(session)

    return scope


class SQLAlchemyNotificationDirectory(INotificationDirectory):
    """
    Ticket lookups for the outbox handlers.

    Each call runs in its own short session; handlers never hold a
    transaction open across a network call.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get_ticket_context(self, ticket_id: int) -> Optional[TicketNotificationContext]:
        async with self._session_factory() as session:
            stmt = (
                select(TicketModel, CategoryModel, StaffModel)
                .outerjoin(CategoryModel, CategoryModel.id == TicketModel.category_id)
                .outerjoin(StaffModel, StaffModel.id == TicketModel.assigned_to)
                .where(TicketModel.id == ticket_id)
            )
            row = (await session.execute(stmt)).first()
            if row is None:
                return None
            ticket, category, assignee = row
            return TicketNotificationContext(
                ticket_id=ticket.id,
                status=ticket.status,
                description=ticket.description or "",
                category_name=category.name if category else None,
                domain=category.domain if category else None,
                location=ticket.location,
                creator_email=ticket.requester_email,
                assignee_id=ticket.assigned_to,
                assignee_email=assignee.email if assignee else None,
                assignee_name=assignee.full_name if assignee else None,
                slack_channel=ticket.slack_channel,
                slack_thread_ts=ticket.slack_thread_ts,
                email_thread_id=ticket.email_thread_id,
                escalation_level=ticket.escalation_level,
            )

    async def get_staff_email(self, staff_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            return (await session.execute(
                select(StaffModel.email).where(StaffModel.id == staff_id)
            )).scalar_one_or_none()

    async def save_slack_thread(self, ticket_id: int, channel: str, thread_ts: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(TicketModel)
                .where(TicketModel.id == ticket_id, TicketModel.slack_thread_ts.is_(None))
                .values(slack_channel=channel, slack_thread_ts=thread_ts)
                .execution_options(synchronize_session=False)
            )

    async def save_email_thread(self, ticket_id: int, message_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(TicketModel)
                .where(TicketModel.id == ticket_id, TicketModel.email_thread_id.is_(None))
                .values(email_thread_id=message_id)
                .execution_options(synchronize_session=False)
            )


async def seed_ticket_statuses(
    session: AsyncSession, statuses: Iterable[StatusDefinition] = DEFAULT_STATUSES
) -> int:
    """Insert missing built-in statuses. Returns how many were added."""
    existing = set((await session.execute(select(TicketStatusModel.value))).scalars().all())
    added = 0
    for status in statuses:
        if status.code in existing:
            continue
        session.add(TicketStatusModel(
            value=status.code,
            label=status.label,
            description=status.description,
            progress_percent=status.progress_percent,
            badge_color=status.badge_color,
            is_active=status.is_active,
            is_final=status.is_final,
            display_order=status.display_order,
        ))
        added += 1
    if added:
        await session.flush()
        logger.info("Seeded ticket statuses", extra={"count": added})
    return added
