"""
Ticket Domain Layer
===================

Contains:
- Entities: Ticket, Actor, StaffMember, EscalationRule
- Value Objects: TicketExtendedState, EscalationConfig
- Domain Services: StatusRegistry, TATCalculator, can_transition

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.tickets.domain.entities import (
    Actor,
    AssignmentContext,
    CategoryAssignment,
    CategoryInfo,
    EscalationRule,
    StaffMember,
    Ticket,
)
from src.tickets.domain.permissions import can_transition
from src.tickets.domain.status import (
    DEFAULT_STATUSES,
    STATUS_ALIASES,
    StatusDefinition,
    StatusRegistry,
    canonicalize_status,
)
from src.tickets.domain.value_objects import (
    EscalationConfig,
    TATCalculator,
    TATExtension,
    TicketComment,
    TicketExtendedState,
)

__all__ = [
    # Entities
    "Actor",
    "AssignmentContext",
    "CategoryAssignment",
    "CategoryInfo",
    "EscalationRule",
    "StaffMember",
    "Ticket",
    # Status registry
    "DEFAULT_STATUSES",
    "STATUS_ALIASES",
    "StatusDefinition",
    "StatusRegistry",
    "canonicalize_status",
    "can_transition",
    # Value Objects & Services
    "EscalationConfig",
    "TATCalculator",
    "TATExtension",
    "TicketComment",
    "TicketExtendedState",
]
