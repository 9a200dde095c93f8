"""
Status State Machine
====================

Validates and applies ticket status transitions.

Order of checks:
1. canonicalize the requested status; unknown or inactive is rejected
2. final -> open is rewritten to reopened
3. same-status requests are rejected
4. can_transition() decides permission

Side effects run on the entity, then the row is written with a guard on the
status that was read, and one ticket.status.updated outbox row is appended
to the same transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from src.config import OutboxEventType, TicketStatus
from src.core import (
    PermissionDeniedException,
    ResourceNotFoundException,
    ValidationException,
)
from src.outbox.application import enqueue
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.interfaces import IUnitOfWork
from src.tickets.domain import (
    Actor,
    StatusDefinition,
    StatusRegistry,
    Ticket,
    can_transition,
)

logger = get_logger(__name__)


@dataclass
class TransitionResult:
    """Outcome of a status change."""
    ticket: Ticket
    old_status: str
    new_status: str
    outbox_event_id: int
    group_archived: bool = False


def scope_membership(ticket: Ticket, actor: Actor) -> bool:
    """Whether the actor belongs to the ticket's scope."""
    if actor.is_admin:
        return True
    if actor.is_committee:
        return ticket.in_scope_of(actor)
    return ticket.is_owned_by(actor)


def resolve_target(
    registry: StatusRegistry, current: StatusDefinition, requested: Optional[str]
) -> StatusDefinition:
    """Canonical target status, applying the final -> open rewrite."""
    target = registry.require_transition_target(requested)
    if current.is_final and target.code == TicketStatus.OPEN:
        target = registry.require_transition_target(TicketStatus.REOPENED)
    return target


def apply_status_change(
    ticket: Ticket,
    current: StatusDefinition,
    target: StatusDefinition,
    at: datetime,
) -> None:
    """Pause bookkeeping and timestamps for entering/leaving a status."""
    if current.code == TicketStatus.AWAITING_STUDENT and target.code != TicketStatus.AWAITING_STUDENT:
        ticket.state.resume(at)
    if target.code == TicketStatus.AWAITING_STUDENT:
        ticket.state.pause(at)
    if target.code == TicketStatus.IN_PROGRESS:
        ticket.mark_acknowledged(at)
    if target.is_final:
        ticket.mark_resolved(at)
    if target.code == TicketStatus.REOPENED:
        ticket.mark_reopened(at)

    ticket.status = target.code
    ticket.touch(at)


class StatusTransitionService:
    """
    Ticket status transitions.

    Args:
        clock: Returns the current UTC time
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def transition(
        self,
        uow: IUnitOfWork,
        ticket_id: int,
        requested_status: Optional[str],
        actor: Actor,
    ) -> TransitionResult:
        """
        Move a ticket to ``requested_status`` on behalf of ``actor``.

        Raises:
            InvalidStatusException: unknown or inactive target
            ValidationException: target equals the current status
            PermissionDeniedException: the actor may not perform this move
            ResourceNotFoundException: no such ticket
            ConflictException: the ticket changed concurrently
        """
        registry = await uow.statuses.get_registry()
        ticket = await uow.tickets.get(ticket_id, for_update=True)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        stored_status = ticket.status
        current = registry.describe(stored_status)
        target = resolve_target(registry, current, requested_status)

        if target.code == current.code:
            raise ValidationException(
                f"Ticket is already {target.label}",
                {"ticket_id": ticket_id, "status": target.code}
            )

        if not can_transition(actor.role, scope_membership(ticket, actor), current, target):
            raise PermissionDeniedException(
                f"Not allowed to move ticket from {current.code} to {target.code}",
                {"ticket_id": ticket_id, "actor_id": actor.id, "role": actor.role}
            )

        now = self._clock()
        apply_status_change(ticket, current, target, now)
        if actor.is_admin:
            ticket.assign(actor.id)

        await uow.tickets.save(ticket, expected_status=stored_status)

        event_id = await enqueue(uow.outbox, OutboxEventType.TICKET_STATUS_UPDATED, {
            "ticket_id": ticket.id,
            "old_status": current.code,
            "new_status": target.code,
            "updated_by": actor.id,
            "actor_role": actor.role,
        })

        archived = False
        if target.is_final and ticket.group_id is not None:
            archived = await uow.groups.archive_if_complete(ticket.group_id, registry.final_spellings)

        logger.info(
            "Ticket status changed",
            extra={
                "ticket_id": ticket.id,
                "old_status": current.code,
                "new_status": target.code,
                "actor_id": actor.id,
                "group_archived": archived,
            }
        )
        return TransitionResult(
            ticket=ticket,
            old_status=current.code,
            new_status=target.code,
            outbox_event_id=event_id,
            group_archived=archived,
        )
