"""
Ticket Application Interfaces
=============================

Repository interfaces the lifecycle services depend on. Concrete SQLAlchemy
implementations live in src.tickets.infrastructure.repositories.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, Callable, List, Optional, Sequence

from src.outbox.application.interfaces import IOutboxWriter
from src.tickets.domain import (
    CategoryAssignment,
    CategoryInfo,
    EscalationRule,
    StaffMember,
    StatusRegistry,
    Ticket,
)


class ITicketRepository(ABC):
    """Ticket persistence."""

    @abstractmethod
    async def get(self, ticket_id: int, for_update: bool = False) -> Optional[Ticket]:
        """Load a ticket; for_update locks the row until the transaction ends."""

    @abstractmethod
    async def add(self, ticket: Ticket) -> Ticket:
        """Insert a new ticket and return it with its id."""

    @abstractmethod
    async def save(
        self,
        ticket: Ticket,
        expected_status: str,
        expected_level: Optional[int] = None,
    ) -> None:
        """
        Write the ticket back if its stored status (and level) still match.

        Raises:
            ConflictException: the row changed since it was read
        """

    @abstractmethod
    async def list_active_ids(self, final_codes: Sequence[str]) -> List[int]:
        """Ids of tickets not in a final status."""

    @abstractmethod
    async def list_with_tat(self, final_codes: Sequence[str]) -> List[Ticket]:
        """Non-final tickets that carry a TAT."""


class IStatusRepository(ABC):
    """ticket_statuses reference table."""

    @abstractmethod
    async def get_registry(self) -> StatusRegistry:
        """All statuses, active and inactive."""


class IAssignmentDirectory(ABC):
    """Reference lookups used by the assignment resolver. Read-only."""

    @abstractmethod
    async def get_category(self, category_id: int) -> Optional[CategoryInfo]:
        """Category name, domain and default admin."""

    @abstractmethod
    async def field_owner(self, category_id: int, field_slugs: Sequence[str]) -> Optional[str]:
        """Owner of the first active category field among the ticket's slugs."""

    @abstractmethod
    async def subcategory_owner(self, subcategory_id: int) -> Optional[str]:
        """Admin assigned to a subcategory."""

    @abstractmethod
    async def category_assignments(self, category_id: int) -> List[CategoryAssignment]:
        """Assignee list of a category, unordered."""

    @abstractmethod
    async def staff_for_domain(self, domain: str, scope: Optional[str]) -> List[StaffMember]:
        """
        Active staff of a domain.

        scope=None returns only staff without a scope restriction.
        """

    @abstractmethod
    async def super_admins(self) -> List[StaffMember]:
        """Active super administrators."""


class IEscalationRuleRepository(ABC):
    """escalation_rules reference table."""

    @abstractmethod
    async def rules_for(self, domain: str) -> List[EscalationRule]:
        """Active rules of a domain ordered by level."""


class IGroupArchiver(ABC):
    """Ticket group archival collaborator."""

    @abstractmethod
    async def exists(self, group_id: int) -> bool:
        """True when the ticket group is known."""

    @abstractmethod
    async def archive_if_complete(self, group_id: int, final_codes: Sequence[str]) -> bool:
        """Archive the group when every member ticket is final."""


class IUnitOfWork(ABC):
    """
    Repositories sharing one transaction.

    The outbox writer is bound to the same transaction, so a ticket change
    and its notification intent commit or roll back together.
    """

    tickets: ITicketRepository
    statuses: IStatusRepository
    directory: IAssignmentDirectory
    rules: IEscalationRuleRepository
    groups: IGroupArchiver
    outbox: IOutboxWriter

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction."""


UnitOfWorkScope = Callable[[], AsyncContextManager[IUnitOfWork]]
