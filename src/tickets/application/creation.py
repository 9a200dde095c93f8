"""
Ticket creation workflow: initial status, one assignment resolution, the
default expected-resolution window and a ticket.created outbox row, all in
the caller's transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from src.config import OutboxEventType, TicketStatus
from src.core import ConfigurationException, ResourceNotFoundException
from src.outbox.application import enqueue
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.assignment import AssignmentResolver
from src.tickets.application.interfaces import IUnitOfWork
from src.tickets.domain import Actor, AssignmentContext, Ticket, TicketExtendedState

logger = get_logger(__name__)


@dataclass
class TicketCreationResult:
    ticket: Ticket
    assignment_source: Optional[str]
    outbox_event_id: int


class TicketService:
    """
    Args:
        default_resolution_hours: Expected resolution window stamped into due_at
        super_admin_id: Configured fallback party
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        default_resolution_hours: int = 48,
        super_admin_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._resolution_window = timedelta(hours=default_resolution_hours)
        self._super_admin_id = super_admin_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_ticket(
        self,
        uow: IUnitOfWork,
        actor: Actor,
        category_id: int,
        description: str,
        subcategory_id: Optional[int] = None,
        sub_subcategory_id: Optional[int] = None,
        location: Optional[str] = None,
        requester_email: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        group_id: Optional[int] = None,
        committee_ids: Iterable[int] = (),
    ) -> TicketCreationResult:
        category = await uow.directory.get_category(category_id)
        if category is None:
            raise ResourceNotFoundException("Category", category_id)
        if group_id is not None and not await uow.groups.exists(group_id):
            raise ResourceNotFoundException("Ticket group", group_id)

        registry = await uow.statuses.get_registry()
        initial = registry.get(TicketStatus.OPEN)
        if initial is None or not initial.is_active:
            raise ConfigurationException("Initial status 'open' is not configured")

        now = self._clock()
        state = TicketExtendedState(fields=dict(fields or {}))
        decision = await AssignmentResolver(uow.directory, self._super_admin_id).resolve_with_source(
            AssignmentContext(
                category_id=category_id,
                domain=category.domain,
                subcategory_id=subcategory_id,
                field_slugs=state.field_slugs,
                location=location,
            )
        )

        ticket = await uow.tickets.add(Ticket(
            id=None,
            created_by=actor.id,
            status=initial.code,
            category_id=category_id,
            subcategory_id=subcategory_id,
            sub_subcategory_id=sub_subcategory_id,
            category_name=category.name,
            domain=category.domain,
            location=location,
            description=description,
            requester_email=requester_email,
            assigned_to=decision.staff_id,
            group_id=group_id,
            scope_tags=frozenset(committee_ids),
            created_at=now,
            updated_at=now,
            due_at=now + self._resolution_window,
            state=state,
        ))

        event_id = await enqueue(uow.outbox, OutboxEventType.TICKET_CREATED, {
            "ticket_id": ticket.id,
            "created_by": actor.id,
            "category_id": category_id,
            "status": ticket.status,
            "assigned_to": ticket.assigned_to,
            "assignment_source": decision.source,
        })

        logger.info(
            "Ticket created",
            extra={
                "ticket_id": ticket.id,
                "category_id": category_id,
                "assigned_to": ticket.assigned_to,
                "assignment_source": decision.source,
            }
        )
        return TicketCreationResult(ticket=ticket, assignment_source=decision.source, outbox_event_id=event_id)
