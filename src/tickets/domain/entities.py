"""
Ticket Domain Entities
======================

Pure Python entities for the ticket lifecycle. Free of infrastructure
concerns; repositories map them to and from ORM rows.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional, List

from src.config import ActorRole, ADMIN_ROLES, NotificationChannel
from src.core import DomainException
from src.tickets.domain.value_objects import TicketExtendedState


@dataclass(frozen=True)
class Actor:
    """
    Verified identity performing an action.

    committee_ids lists the committees the actor heads; it is the scope a
    committee reviewer may act in.
    """
    id: str
    role: str
    committee_ids: FrozenSet[int] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_student(self) -> bool:
        return self.role == ActorRole.STUDENT

    @property
    def is_committee(self) -> bool:
        return self.role == ActorRole.COMMITTEE


@dataclass
class Ticket:
    """
    Ticket entity.

    escalation_level only grows; a reopen starts a new TAT cycle but keeps
    the level.
    """

    id: Optional[int]
    created_by: str
    status: str

    # Classification
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    sub_subcategory_id: Optional[int] = None
    category_name: Optional[str] = None
    domain: Optional[str] = None
    location: Optional[str] = None
    description: str = ""
    requester_email: Optional[str] = None

    # Ownership
    assigned_to: Optional[str] = None
    escalated_to: Optional[str] = None
    group_id: Optional[int] = None
    scope_tags: FrozenSet[int] = frozenset()

    # Counters
    escalation_level: int = 0
    reopen_count: int = 0
    tat_extension_count: int = 0

    # Timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    last_escalation_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    due_at: Optional[datetime] = None

    state: TicketExtendedState = field(default_factory=TicketExtendedState)

    def __post_init__(self):
        """Validate ticket on initialization."""
        if self.escalation_level < 0:
            raise ValueError("escalation_level cannot be negative")
        if self.reopen_count < 0 or self.tat_extension_count < 0:
            raise ValueError("counters cannot be negative")
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")

    def is_owned_by(self, actor: Actor) -> bool:
        return self.created_by == actor.id

    def in_scope_of(self, actor: Actor) -> bool:
        return bool(self.scope_tags & actor.committee_ids)

    def touch(self, at: datetime) -> None:
        self.updated_at = at

    def assign(self, party_id: Optional[str]) -> None:
        self.assigned_to = party_id

    def mark_acknowledged(self, at: datetime) -> None:
        if self.acknowledged_at is None:
            self.acknowledged_at = at

    def mark_resolved(self, at: datetime) -> None:
        self.resolved_at = at

    def mark_reopened(self, at: datetime) -> None:
        """Stamp the reopen and start a fresh TAT cycle."""
        self.reopened_at = at
        self.reopen_count += 1
        self.resolved_at = None
        self.tat_extension_count = 0
        self.due_at = None
        self.state.reset_tat_cycle()

    def raise_escalation_level(self, level: int, at: datetime) -> None:
        if level <= self.escalation_level:
            raise DomainException(
                "Escalation level can only increase",
                {"ticket_id": self.id, "current": self.escalation_level, "requested": level}
            )
        self.escalation_level = level
        self.last_escalation_at = at

    def record_breach(self, at: Optional[datetime]) -> bool:
        """First breach wins; returns True when the timestamp was recorded."""
        if at is None or self.sla_breached_at is not None:
            return False
        self.sla_breached_at = at
        return True


@dataclass(frozen=True)
class StaffMember:
    """A responsible party tickets can be assigned to."""
    id: str
    role: str
    full_name: str = ""
    email: Optional[str] = None
    domain: Optional[str] = None
    scope: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class CategoryAssignment:
    """One entry of a category's assignee list."""
    staff_id: str
    is_primary: bool = False
    priority: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class EscalationRule:
    """Who takes over a ticket at a given escalation level."""
    id: Optional[int]
    domain: str
    level: int
    staff_id: str
    scope: Optional[str] = None
    notify_channel: str = NotificationChannel.SLACK
    is_active: bool = True

    def __post_init__(self):
        if self.level < 1:
            raise ValueError("escalation rule level must be >= 1")

    def matches(self, domain: Optional[str], scope: Optional[str]) -> bool:
        if not self.is_active or not domain:
            return False
        if self.domain.lower() != domain.lower():
            return False
        if self.scope is None:
            return True
        return scope is not None and self.scope.lower() == scope.lower()


@dataclass(frozen=True)
class AssignmentContext:
    """Everything the assignment resolver looks at."""
    category_id: Optional[int] = None
    domain: Optional[str] = None
    subcategory_id: Optional[int] = None
    field_slugs: List[str] = field(default_factory=list)
    location: Optional[str] = None


@dataclass(frozen=True)
class CategoryInfo:
    """Category reference data the engine reads."""
    id: int
    name: str
    domain: Optional[str] = None
    default_admin_id: Optional[str] = None
