from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from src.core import ResourceNotFoundException
from src.tickets.application import AssignmentResolver, IAssignmentDirectory
from src.tickets.application.assignment import order_category_assignments
from src.tickets.domain import AssignmentContext, CategoryAssignment, CategoryInfo, StaffMember
from src.tickets.infrastructure import SQLAlchemyUnitOfWork
from src.tickets.infrastructure.models import CategoryAssignmentModel, CategoryFieldModel

from factories import HOSTEL_CATEGORY, PLUMBING_SUBCATEGORY, create_ticket

T0 = datetime(2029, 6, 1, tzinfo=timezone.utc)


class FakeDirectory(IAssignmentDirectory):
    def __init__(
        self,
        categories: Optional[Dict[int, CategoryInfo]] = None,
        field_owners: Optional[Dict[str, str]] = None,
        subcategory_owners: Optional[Dict[int, str]] = None,
        assignments: Optional[Dict[int, List[CategoryAssignment]]] = None,
        staff: Optional[List[StaffMember]] = None,
    ):
        self.categories = categories or {}
        self.field_owners = field_owners or {}
        self.subcategory_owners = subcategory_owners or {}
        self.assignments = assignments or {}
        self.staff = staff or []

    async def get_category(self, category_id):
        return self.categories.get(category_id)

    async def field_owner(self, category_id, field_slugs):
        for slug in field_slugs:
            if slug in self.field_owners:
                return self.field_owners[slug]
        return None

    async def subcategory_owner(self, subcategory_id):
        return self.subcategory_owners.get(subcategory_id)

    async def category_assignments(self, category_id):
        return list(self.assignments.get(category_id, []))

    async def staff_for_domain(self, domain, scope):
        return [
            s for s in self.staff
            if s.domain and s.domain.lower() == domain.lower()
            and (s.scope or None) == scope and s.role != "super_admin"
        ]

    async def super_admins(self):
        return [s for s in self.staff if s.role == "super_admin"]


HOSTEL_STAFF = [
    StaffMember(id="warden-b", role="admin", domain="Hostel", scope="Hostel B"),
    StaffMember(id="warden-z", role="admin", domain="Hostel"),
    StaffMember(id="warden-m", role="admin", domain="Hostel"),
    StaffMember(id="root", role="super_admin"),
]


def full_directory() -> FakeDirectory:
    return FakeDirectory(
        categories={1: CategoryInfo(1, "Hostel", "Hostel", default_admin_id="default-admin")},
        field_owners={"room_number": "field-owner"},
        subcategory_owners={10: "sub-owner"},
        assignments={1: [CategoryAssignment("listed", created_at=T0)]},
        staff=HOSTEL_STAFF,
    )


async def test_precedence_walks_down_the_tiers():
    directory = full_directory()
    resolver = AssignmentResolver(directory)
    context = AssignmentContext(
        category_id=1, domain="Hostel", subcategory_id=10, field_slugs=["room_number"], location="Hostel B"
    )

    decision = await resolver.resolve_with_source(context)
    assert (decision.staff_id, decision.source) == ("field-owner", "field")

    directory.field_owners.clear()
    assert await resolver.resolve(context) == "sub-owner"

    directory.subcategory_owners.clear()
    assert await resolver.resolve(context) == "listed"

    directory.assignments.clear()
    decision = await resolver.resolve_with_source(context)
    assert (decision.staff_id, decision.source) == ("default-admin", "category_default")

    directory.categories[1] = CategoryInfo(1, "Hostel", "Hostel")
    decision = await resolver.resolve_with_source(context)
    assert (decision.staff_id, decision.source) == ("warden-b", "domain_scope")


async def test_unknown_location_falls_back_to_unscoped_domain_staff():
    resolver = AssignmentResolver(FakeDirectory(staff=HOSTEL_STAFF))

    decision = await resolver.resolve_with_source(AssignmentContext(domain="hostel", location="Hostel Q"))

    # Lowest id among unscoped staff
    assert (decision.staff_id, decision.source) == ("warden-m", "domain")


async def test_location_ignored_outside_location_sensitive_domains():
    staff = [
        StaffMember(id="lib-east", role="admin", domain="Library", scope="East"),
        StaffMember(id="lib-main", role="admin", domain="Library"),
    ]
    resolver = AssignmentResolver(FakeDirectory(staff=staff))

    assert await resolver.resolve(AssignmentContext(domain="Library", location="East")) == "lib-main"


async def test_inactive_staff_are_skipped():
    staff = [
        StaffMember(id="a-retired", role="admin", domain="Hostel", is_active=False),
        StaffMember(id="b-current", role="admin", domain="Hostel"),
    ]
    resolver = AssignmentResolver(FakeDirectory(staff=staff))

    assert await resolver.resolve(AssignmentContext(domain="Hostel")) == "b-current"


async def test_super_admin_fallback_and_configured_default():
    with_super = AssignmentResolver(FakeDirectory(staff=HOSTEL_STAFF))
    decision = await with_super.resolve_with_source(AssignmentContext(domain="Transport"))
    assert (decision.staff_id, decision.source) == ("root", "super_admin")

    configured = AssignmentResolver(FakeDirectory(), super_admin_id="configured-root")
    assert await configured.resolve(AssignmentContext(domain="Transport")) == "configured-root"


async def test_no_party_at_all_returns_none():
    decision = await AssignmentResolver(FakeDirectory()).resolve_with_source(AssignmentContext())

    assert decision.staff_id is None
    assert decision.source is None


async def test_resolution_is_idempotent():
    resolver = AssignmentResolver(FakeDirectory(staff=HOSTEL_STAFF))
    context = AssignmentContext(domain="Hostel", location="Hostel B")

    assert await resolver.resolve(context) == await resolver.resolve(context) == "warden-b"


def test_category_assignments_ordering():
    ordered = order_category_assignments([
        CategoryAssignment("old-low", priority=1, created_at=T0),
        CategoryAssignment("new-high", priority=5, created_at=T0 + timedelta(days=2)),
        CategoryAssignment("old-high", priority=5, created_at=T0 + timedelta(days=1)),
        CategoryAssignment("primary", is_primary=True, priority=0, created_at=T0 + timedelta(days=9)),
    ])

    assert [a.staff_id for a in ordered] == ["primary", "old-high", "new-high", "old-low"]


# ========== Database-backed resolution ==========

async def test_ticket_creation_uses_hostel_scope(session_factory, seeded, clock):
    scoped = await create_ticket(session_factory, clock, location="hostel a")
    unscoped = await create_ticket(session_factory, clock, location="Hostel C")
    plumbing = await create_ticket(session_factory, clock, location="Hostel A",
                                   subcategory_id=PLUMBING_SUBCATEGORY)

    assert (scoped.ticket.assigned_to, scoped.assignment_source) == ("warden-a", "domain_scope")
    assert (unscoped.ticket.assigned_to, unscoped.assignment_source) == ("warden-any", "domain")
    assert (plumbing.ticket.assigned_to, plumbing.assignment_source) == ("plumber", "subcategory")


async def test_category_tiers_from_database(session_factory, seeded, clock):
    async with session_factory() as session:
        session.add_all([
            CategoryFieldModel(category_id=HOSTEL_CATEGORY, slug="room_number", assigned_admin_id="dean"),
            CategoryAssignmentModel(category_id=HOSTEL_CATEGORY, staff_id="warden-a", priority=1),
            CategoryAssignmentModel(category_id=HOSTEL_CATEGORY, staff_id="plumber", is_primary=True),
        ])

    with_field = await create_ticket(session_factory, clock, fields={"room_number": "B-204"})
    blank_field = await create_ticket(session_factory, clock, fields={"room_number": ""})

    assert with_field.ticket.assigned_to == "dean"
    assert blank_field.ticket.assigned_to == "plumber"
    assert blank_field.assignment_source == "category"


async def test_unknown_category_is_not_found(session_factory, seeded):
    with pytest.raises(ResourceNotFoundException):
        await create_ticket(session_factory, category_id=404)


async def test_super_admin_from_database(session_factory, seeded, clock):
    async with session_factory() as session:
        decision = await AssignmentResolver(SQLAlchemyUnitOfWork(session).directory).resolve_with_source(
            AssignmentContext(domain="Sports")
        )

    assert (decision.staff_id, decision.source) == ("super-1", "super_admin")
