"""
Assignment Resolver
===================

Picks the responsible party for a ticket. First match wins:

1. owner of one of the ticket's dynamic fields
2. subcategory owner
3. category assignee list (primary first, then priority, then oldest),
   then the category's default admin
4. domain/scope staff: for location-sensitive domains the staff member whose
   scope is the ticket location, otherwise (or as fallback) unscoped staff
   of the domain
5. super administrator

Every step is a read; resolving twice with the same inputs gives the same
party.
"""

from dataclasses import dataclass
from typing import List, Optional

from src.config import AssignmentSource, LOCATION_SENSITIVE_DOMAINS
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.interfaces import IAssignmentDirectory
from src.tickets.domain import AssignmentContext, CategoryAssignment, StaffMember

logger = get_logger(__name__)


@dataclass(frozen=True)
class AssignmentDecision:
    """Resolved party and the tier that produced it."""
    staff_id: Optional[str]
    source: Optional[str]


def order_category_assignments(assignments: List[CategoryAssignment]) -> List[CategoryAssignment]:
    """is_primary desc, priority desc, created_at asc."""
    return sorted(
        assignments,
        key=lambda a: (not a.is_primary, -a.priority, a.created_at, a.staff_id),
    )


def _first_active(staff: List[StaffMember]) -> Optional[StaffMember]:
    active = sorted((s for s in staff if s.is_active), key=lambda s: s.id)
    return active[0] if active else None


class AssignmentResolver:
    """
    Resolves ticket ownership from reference data.

    Args:
        directory: Reference lookups
        super_admin_id: Configured fallback when no super admin is on file
    """

    def __init__(self, directory: IAssignmentDirectory, super_admin_id: Optional[str] = None):
        self._directory = directory
        self._super_admin_id = super_admin_id

    async def resolve(self, context: AssignmentContext) -> Optional[str]:
        decision = await self.resolve_with_source(context)
        return decision.staff_id

    async def resolve_with_source(self, context: AssignmentContext) -> AssignmentDecision:
        if context.category_id is not None and context.field_slugs:
            owner = await self._directory.field_owner(context.category_id, context.field_slugs)
            if owner:
                return AssignmentDecision(owner, AssignmentSource.FIELD)

        if context.subcategory_id is not None:
            owner = await self._directory.subcategory_owner(context.subcategory_id)
            if owner:
                return AssignmentDecision(owner, AssignmentSource.SUBCATEGORY)

        if context.category_id is not None:
            assignments = await self._directory.category_assignments(context.category_id)
            if assignments:
                first = order_category_assignments(assignments)[0]
                return AssignmentDecision(first.staff_id, AssignmentSource.CATEGORY)

            category = await self._directory.get_category(context.category_id)
            if category and category.default_admin_id:
                return AssignmentDecision(category.default_admin_id, AssignmentSource.CATEGORY_DEFAULT)

        if context.domain:
            decision = await self._resolve_by_domain(context.domain, context.location)
            if decision is not None:
                return decision

        fallback = await self.super_admin()
        if fallback is None:
            logger.warning(
                "No responsible party resolved and no super admin configured",
                extra={"category_id": context.category_id, "domain": context.domain}
            )
            return AssignmentDecision(None, None)
        return AssignmentDecision(fallback, AssignmentSource.SUPER_ADMIN)

    async def _resolve_by_domain(
        self, domain: str, location: Optional[str]
    ) -> Optional[AssignmentDecision]:
        if domain.strip().lower() in LOCATION_SENSITIVE_DOMAINS and location:
            scoped = _first_active(await self._directory.staff_for_domain(domain, location))
            if scoped:
                return AssignmentDecision(scoped.id, AssignmentSource.DOMAIN_SCOPE)

        unscoped = _first_active(await self._directory.staff_for_domain(domain, None))
        if unscoped:
            return AssignmentDecision(unscoped.id, AssignmentSource.DOMAIN)
        return None

    async def super_admin(self) -> Optional[str]:
        """First active super admin, else the configured fallback id."""
        admin = _first_active(await self._directory.super_admins())
        if admin:
            return admin.id
        return self._super_admin_id
