"""
Ticket Infrastructure Layer
===========================

Infrastructure implementations for the ticket lifecycle:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and unit of work
- External: Escalation config watcher and background scheduler
"""

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
from src.tickets.infrastructure.repositories import (
    SQLAlchemyAssignmentDirectory,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyGroupArchiver,
    SQLAlchemyNotificationDirectory,
    SQLAlchemyStatusRepository,
    SQLAlchemyTicketRepository,
    SQLAlchemyUnitOfWork,
    seed_ticket_statuses,
    unit_of_work_scope,
)
from src.tickets.infrastructure.external import EscalationConfigManager, LifecycleScheduler

__all__ = [
    "CategoryAssignmentModel",
    "CategoryFieldModel",
    "CategoryModel",
    "EscalationRuleModel",
    "StaffModel",
    "SubcategoryModel",
    "TicketCommitteeTagModel",
    "TicketGroupModel",
    "TicketModel",
    "TicketStatusModel",
    "SQLAlchemyAssignmentDirectory",
    "SQLAlchemyEscalationRuleRepository",
    "SQLAlchemyGroupArchiver",
    "SQLAlchemyNotificationDirectory",
    "SQLAlchemyStatusRepository",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyUnitOfWork",
    "seed_ticket_statuses",
    "unit_of_work_scope",
    "EscalationConfigManager",
    "LifecycleScheduler",
]
