"""
Ticket Application Layer
========================

Contains:
- StatusTransitionService: status state machine
- TATService: TAT set/extend and breach reporting
- AssignmentResolver: responsible-party hierarchy
- EscalationSweep: periodic and manual escalation
- TATReminderService: daily due reminders
- TicketService: creation workflow
- Repository interfaces and DTOs

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.tickets.application.assignment import AssignmentDecision, AssignmentResolver
from src.tickets.application.creation import TicketCreationResult, TicketService
from src.tickets.application.escalation import (
    EscalationOutcome,
    EscalationSweep,
    EscalationTrigger,
    SweepResult,
    classify_ticket,
    earliest_breach,
    in_cooldown,
)
from src.tickets.application.interfaces import (
    IAssignmentDirectory,
    IEscalationRuleRepository,
    IGroupArchiver,
    IStatusRepository,
    ITicketRepository,
    IUnitOfWork,
    UnitOfWorkScope,
)
from src.tickets.application.reminders import ReminderResult, TATReminderService
from src.tickets.application.state_machine import StatusTransitionService, TransitionResult
from src.tickets.application.tat import TATInfo, TATService, TATUpdateKind, TATUpdateResult

__all__ = [
    # Services
    "AssignmentDecision",
    "AssignmentResolver",
    "TicketCreationResult",
    "TicketService",
    "EscalationOutcome",
    "EscalationSweep",
    "EscalationTrigger",
    "SweepResult",
    "classify_ticket",
    "earliest_breach",
    "in_cooldown",
    "ReminderResult",
    "TATReminderService",
    "StatusTransitionService",
    "TransitionResult",
    "TATInfo",
    "TATService",
    "TATUpdateKind",
    "TATUpdateResult",
    # Repository Interfaces
    "IAssignmentDirectory",
    "IEscalationRuleRepository",
    "IGroupArchiver",
    "IStatusRepository",
    "ITicketRepository",
    "IUnitOfWork",
    "UnitOfWorkScope",
]
