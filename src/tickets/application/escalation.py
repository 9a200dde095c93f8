"""
Escalation Sweep
================

Periodic control loop over non-final tickets. Each ticket is re-read with a
row lock and handled in its own transaction, so one failing ticket never
aborts the rest of the sweep.

Triggers, highest priority first:
- inactivity: no update for inactivity_days
- TAT violation: effective deadline passed
- extension limit: tat_extension_count >= extension_cap
- lifecycle: ticket older than lifecycle_days
- reopen limit: reopen_count >= reopen_cap
- stalled: in progress without update for stalled_in_progress_hours (off by
  default)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from src.config import (
    EscalationReason,
    EscalationTarget,
    NotificationChannel,
    OutboxEventType,
    TicketStatus,
)
from src.core import (
    ConflictException,
    PermissionDeniedException,
    ResourceNotFoundException,
)
from src.outbox.application import enqueue
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.assignment import AssignmentResolver
from src.tickets.application.interfaces import IUnitOfWork, UnitOfWorkScope
from src.tickets.application.state_machine import scope_membership
from src.tickets.domain import (
    Actor,
    EscalationConfig,
    EscalationRule,
    StatusRegistry,
    TATCalculator,
    Ticket,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class EscalationTrigger:
    """The reason a ticket is escalated, with numbers for the message."""
    reason: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EscalationOutcome:
    ticket: Ticket
    trigger: EscalationTrigger
    previous_level: int
    escalated_to: str
    assigned_to: Optional[str]
    rule_id: Optional[int]
    outbox_event_id: int


@dataclass
class SweepResult:
    """Counters returned by one sweep."""
    scanned: int = 0
    escalated: int = 0
    skipped_cooldown: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "escalated": self.escalated,
            "skipped_cooldown": self.skipped_cooldown,
            "skipped": self.skipped,
            "failed": len(self.errors),
            "errors": list(self.errors),
        }


def classify_ticket(ticket: Ticket, now: datetime, config: EscalationConfig) -> Optional[EscalationTrigger]:
    """First trigger that fires, or None."""
    idle = now - ticket.updated_at
    if idle >= config.inactivity:
        return EscalationTrigger(EscalationReason.INACTIVITY, {"days_inactive": idle.days})

    if TATCalculator.is_breached(ticket.state, now):
        deadline = TATCalculator.running_deadline(ticket.state, now)
        return EscalationTrigger(EscalationReason.TAT_VIOLATION, {
            "hours_overdue": TATCalculator.hours_overdue(ticket.state, now),
            "deadline": deadline.isoformat() if deadline else None,
        })

    if ticket.tat_extension_count >= config.extension_cap:
        return EscalationTrigger(EscalationReason.EXTENSION_LIMIT, {
            "extension_count": ticket.tat_extension_count,
            "cap": config.extension_cap,
        })

    age = now - ticket.created_at
    if age >= config.lifecycle:
        return EscalationTrigger(EscalationReason.LIFECYCLE, {"age_days": age.days})

    if ticket.reopen_count >= config.reopen_cap:
        return EscalationTrigger(EscalationReason.REOPEN_LIMIT, {
            "reopen_count": ticket.reopen_count,
            "cap": config.reopen_cap,
        })

    if config.stalled_in_progress_hours and ticket.status == TicketStatus.IN_PROGRESS:
        hours_idle = idle.total_seconds() / 3600
        if hours_idle >= config.stalled_in_progress_hours:
            return EscalationTrigger(EscalationReason.STALLED, {"hours_stalled": int(hours_idle)})

    return None


def in_cooldown(ticket: Ticket, now: datetime, config: EscalationConfig) -> bool:
    if ticket.last_escalation_at is None:
        return False
    return now - ticket.last_escalation_at < config.cooldown


def earliest_breach(ticket: Ticket, now: datetime) -> Optional[datetime]:
    """Earliest passed deadline among due_at and the TAT effective deadline."""
    candidates = [ticket.due_at, TATCalculator.effective_deadline(ticket.state)]
    passed = [d for d in candidates if d is not None and d < now]
    return min(passed) if passed else None


def next_rule(
    rules: List[EscalationRule], ticket: Ticket
) -> Optional[EscalationRule]:
    """Lowest-level matching rule above the current level; scoped beats unscoped."""
    candidates = [
        rule for rule in rules
        if rule.level > ticket.escalation_level and rule.matches(ticket.domain, ticket.location)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda r: (r.level, r.scope is None, r.id or 0))


class EscalationSweep:
    """
    Auto-escalation of stale and overdue tickets.

    Args:
        uow_scope: Opens a unit of work per transaction
        config: Escalation thresholds
        super_admin_id: Configured fallback party for unmatched escalations
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        uow_scope: UnitOfWorkScope,
        config: Optional[EscalationConfig] = None,
        super_admin_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._uow_scope = uow_scope
        self._config = config or EscalationConfig()
        self._super_admin_id = super_admin_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def config(self) -> EscalationConfig:
        return self._config

    async def run(self) -> SweepResult:
        result = SweepResult()

        async with self._uow_scope() as uow:
            registry = await uow.statuses.get_registry()
            ticket_ids = await uow.tickets.list_active_ids(registry.final_spellings)

        for ticket_id in ticket_ids:
            result.scanned += 1
            try:
                async with self._uow_scope() as uow:
                    outcome = await self._sweep_ticket(uow, ticket_id, registry)
            except Exception as e:
                logger.error(
                    "Escalation failed for ticket",
                    extra={"ticket_id": ticket_id, "error": str(e), "error_type": type(e).__name__}
                )
                result.errors.append({"ticket_id": ticket_id, "error": str(e)})
                continue

            if outcome == "escalated":
                result.escalated += 1
            elif outcome == "cooldown":
                result.skipped_cooldown += 1
            else:
                result.skipped += 1

        logger.info("Escalation sweep finished", extra=result.to_dict())
        return result

    async def _sweep_ticket(self, uow: IUnitOfWork, ticket_id: int, registry: StatusRegistry) -> str:
        ticket = await uow.tickets.get(ticket_id, for_update=True)
        if ticket is None or registry.is_final(ticket.status):
            return "skipped"

        now = self._clock()
        if in_cooldown(ticket, now, self._config):
            return "cooldown"

        trigger = classify_ticket(ticket, now, self._config)
        if trigger is None:
            return "skipped"

        await self.escalate_ticket(uow, ticket, trigger, registry, now)
        return "escalated"

    async def escalate(
        self,
        uow: IUnitOfWork,
        ticket_id: int,
        actor: Actor,
        note: Optional[str] = None,
    ) -> EscalationOutcome:
        """
        Escalate one ticket on request.

        Raises:
            ResourceNotFoundException: no such ticket
            PermissionDeniedException: actor neither owns nor oversees the ticket
            ConflictException: ticket is final or was escalated recently
        """
        registry = await uow.statuses.get_registry()
        ticket = await uow.tickets.get(ticket_id, for_update=True)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", ticket_id)
        if not scope_membership(ticket, actor):
            raise PermissionDeniedException(
                "Not allowed to escalate this ticket",
                {"ticket_id": ticket_id, "actor_id": actor.id}
            )
        if registry.is_final(ticket.status):
            raise ConflictException("Cannot escalate a closed ticket", {"ticket_id": ticket_id})

        now = self._clock()
        if in_cooldown(ticket, now, self._config):
            raise ConflictException(
                "Ticket was escalated recently",
                {"ticket_id": ticket_id, "last_escalation_at": ticket.last_escalation_at.isoformat()}
            )

        trigger = EscalationTrigger(EscalationReason.MANUAL, {"note": note} if note else {})
        return await self.escalate_ticket(uow, ticket, trigger, registry, now, escalated_by=actor.id)

    async def escalate_ticket(
        self,
        uow: IUnitOfWork,
        ticket: Ticket,
        trigger: EscalationTrigger,
        registry: StatusRegistry,
        now: datetime,
        escalated_by: str = "system",
    ) -> EscalationOutcome:
        """Raise the level, reassign, write the guarded update and the outbox row."""
        stored_status = ticket.status
        previous_level = ticket.escalation_level
        new_level = previous_level + 1

        rule = next_rule(await uow.rules.rules_for(ticket.domain), ticket) if ticket.domain else None
        if rule is not None:
            escalated_to = rule.staff_id
            assignee: Optional[str] = rule.staff_id
            notify_channel = rule.notify_channel
        else:
            escalated_to = (
                EscalationTarget.SUPER_ADMIN_URGENT
                if new_level >= self._config.urgent_level
                else EscalationTarget.SUPER_ADMIN
            )
            assignee = await AssignmentResolver(uow.directory, self._super_admin_id).super_admin()
            notify_channel = NotificationChannel.BOTH

        ticket.raise_escalation_level(new_level, now)
        ticket.escalated_to = escalated_to
        if assignee:
            ticket.assign(assignee)
        ticket.record_breach(earliest_breach(ticket, now))

        escalated = registry.get(TicketStatus.ESCALATED)
        if escalated is not None and escalated.is_active and ticket.status != escalated.code:
            if registry.describe(stored_status).code == TicketStatus.AWAITING_STUDENT:
                ticket.state.resume(now)
            ticket.status = escalated.code
        ticket.touch(now)

        await uow.tickets.save(ticket, expected_status=stored_status, expected_level=previous_level)

        event_id = await enqueue(uow.outbox, OutboxEventType.TICKET_ESCALATED, {
            "ticket_id": ticket.id,
            "escalation_level": new_level,
            "previous_level": previous_level,
            "reason": trigger.reason,
            "detail": trigger.detail,
            "escalated_to": escalated_to,
            "assigned_to": ticket.assigned_to,
            "rule_id": rule.id if rule else None,
            "notify_channel": notify_channel,
            "escalated_by": escalated_by,
        })

        logger.info(
            "Ticket escalated",
            extra={
                "ticket_id": ticket.id,
                "escalation_level": new_level,
                "reason": trigger.reason,
                "escalated_to": escalated_to,
                "assigned_to": ticket.assigned_to,
            }
        )
        return EscalationOutcome(
            ticket=ticket,
            trigger=trigger,
            previous_level=previous_level,
            escalated_to=escalated_to,
            assigned_to=ticket.assigned_to,
            rule_id=rule.id if rule else None,
            outbox_event_id=event_id,
        )
