"""
TAT Engine
==========

Setting, extending and reporting turnaround time.

A TAT set on a ticket that already has one is an extension: the history
gains an entry and tat_extension_count grows. Both the count and the paused
total only grow within a TAT cycle; a reopen clears them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from src.config import OutboxEventType, TicketStatus
from src.core import (
    ConflictException,
    PermissionDeniedException,
    ResourceNotFoundException,
)
from src.outbox.application import enqueue
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.interfaces import IUnitOfWork
from src.tickets.application.state_machine import scope_membership
from src.tickets.domain import (
    Actor,
    EscalationConfig,
    TATCalculator,
    TATExtension,
    Ticket,
)

logger = get_logger(__name__)


class TATUpdateKind:
    """Labels carried by ticket.tat.updated events."""
    EXTENDED = "extended"
    SET_IN_PROGRESS = "set_in_progress"
    UPDATED = "updated"


@dataclass
class TATUpdateResult:
    ticket: Ticket
    kind: str
    previous_tat: Optional[str]
    outbox_event_id: int


@dataclass
class TATInfo:
    """Read model of a ticket's TAT."""
    ticket_id: int
    tat: Optional[str]
    tat_date: Optional[datetime]
    effective_deadline: Optional[datetime]
    due_at: Optional[datetime]
    is_paused: bool
    paused_seconds: float
    extension_count: int
    extension_limit_reached: bool
    is_breached: bool
    hours_overdue: float
    extensions: List[Dict[str, Any]] = field(default_factory=list)


class TATService:
    """
    TAT set/extend and breach reporting.

    Args:
        config: Escalation thresholds (extension cap)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        config: Optional[EscalationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or EscalationConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def set_tat(
        self,
        uow: IUnitOfWork,
        ticket_id: int,
        tat: Union[str, int, float],
        mark_in_progress: bool,
        actor: Actor,
    ) -> TATUpdateResult:
        """
        Set or extend the TAT of a ticket.

        Raises:
            PermissionDeniedException: actor is not an administrator
            ResourceNotFoundException: no such ticket
            ConflictException: ticket is final or changed concurrently
            TATParseException: unparsable, non-positive or past TAT
        """
        if not actor.is_admin:
            raise PermissionDeniedException(
                "Only administrators can set TAT",
                {"ticket_id": ticket_id, "actor_id": actor.id}
            )

        registry = await uow.statuses.get_registry()
        ticket = await uow.tickets.get(ticket_id, for_update=True)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)

        current = registry.describe(ticket.status)
        if current.is_final:
            raise ConflictException(
                "Cannot set TAT on a closed ticket",
                {"ticket_id": ticket_id, "status": current.code}
            )

        now = self._clock()
        deadline = TATCalculator.parse_deadline(tat, now)
        tat_text = TATCalculator.tat_text(tat)
        state = ticket.state
        previous_tat = state.tat

        if state.has_tat:
            state.tat_extensions.append(TATExtension(
                previous_tat=state.tat,
                new_tat=tat_text,
                previous_tat_date=state.tat_date,
                new_tat_date=deadline,
                extended_at=now,
                extended_by=actor.id,
            ))
            ticket.tat_extension_count += 1
            kind = TATUpdateKind.EXTENDED
        else:
            state.tat_extensions = []
            kind = TATUpdateKind.SET_IN_PROGRESS if mark_in_progress else TATUpdateKind.UPDATED

        state.tat = tat_text
        state.tat_date = deadline
        state.tat_set_at = now
        state.tat_set_by = actor.id

        stored_status = ticket.status
        if mark_in_progress and current.code != TicketStatus.IN_PROGRESS:
            if current.code == TicketStatus.AWAITING_STUDENT:
                state.resume(now)
            ticket.status = registry.require_transition_target(TicketStatus.IN_PROGRESS).code

        ticket.assign(actor.id)
        ticket.mark_acknowledged(now)
        ticket.due_at = deadline
        ticket.touch(now)

        await uow.tickets.save(ticket, expected_status=stored_status)

        event_id = await enqueue(uow.outbox, OutboxEventType.TICKET_TAT_UPDATED, {
            "ticket_id": ticket.id,
            "kind": kind,
            "tat": tat_text,
            "tat_date": deadline,
            "previous_tat": previous_tat,
            "extension_count": ticket.tat_extension_count,
            "set_by": actor.id,
            "old_status": current.code,
            "new_status": registry.describe(ticket.status).code,
        })

        if ticket.tat_extension_count >= self._config.extension_cap:
            logger.warning(
                "TAT extension limit reached",
                extra={"ticket_id": ticket.id, "extension_count": ticket.tat_extension_count}
            )
        logger.info(
            "Ticket TAT updated",
            extra={"ticket_id": ticket.id, "kind": kind, "tat": tat_text, "actor_id": actor.id}
        )
        return TATUpdateResult(ticket=ticket, kind=kind, previous_tat=previous_tat, outbox_event_id=event_id)

    async def get_tat_info(self, uow: IUnitOfWork, ticket_id: int, actor: Actor) -> TATInfo:
        registry = await uow.statuses.get_registry()
        ticket = await uow.tickets.get(ticket_id)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        if not scope_membership(ticket, actor):
            raise PermissionDeniedException(
                "Not allowed to view this ticket",
                {"ticket_id": ticket_id, "actor_id": actor.id}
            )
        return self.describe(ticket, registry.is_final(ticket.status))

    def describe(self, ticket: Ticket, is_final: bool = False) -> TATInfo:
        now = self._clock()
        state = ticket.state
        return TATInfo(
            ticket_id=ticket.id,
            tat=state.tat,
            tat_date=state.tat_date,
            effective_deadline=TATCalculator.effective_deadline(state),
            due_at=ticket.due_at,
            is_paused=state.is_tat_paused,
            paused_seconds=state.tat_paused_seconds,
            extension_count=ticket.tat_extension_count,
            extension_limit_reached=ticket.tat_extension_count >= self._config.extension_cap,
            is_breached=TATCalculator.is_breached(state, now, is_final=is_final),
            hours_overdue=0.0 if is_final else TATCalculator.hours_overdue(state, now),
            extensions=[ext.to_dict() for ext in state.tat_extensions],
        )
