import os

# Ensure settings never reach real services before importing app modules.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")
os.environ.setdefault("SLACK_BOT_TOKEN", "")
os.environ.setdefault("EMAIL_API_KEY", "")

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.infrastructure.database import Base
from src.tickets.infrastructure import seed_ticket_statuses, unit_of_work_scope
from src.tickets.infrastructure.models import (
    CategoryModel,
    EscalationRuleModel,
    StaffModel,
    SubcategoryModel,
    TicketGroupModel,
)

from factories import (
    ACADEMIC_CATEGORY,
    EMPTY_CATEGORY,
    HOSTEL_CATEGORY,
    PLUMBING_SUBCATEGORY,
    FrozenClock,
)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session_factory(session_maker):
    @asynccontextmanager
    async def factory():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest.fixture
def uow_scope(session_factory):
    return unit_of_work_scope(session_factory)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Statuses, staff, categories and one hostel escalation chain."""
    async with session_factory() as session:
        await seed_ticket_statuses(session)
        session.add_all([
            StaffModel(id="admin-1", full_name="Asha Admin", email="admin1@example.edu", role="admin",
                       domain="College"),
            StaffModel(id="warden-a", full_name="Warden A", email="warden.a@example.edu", role="admin",
                       domain="Hostel", scope="Hostel A"),
            StaffModel(id="warden-any", full_name="Chief Warden", email="chief.warden@example.edu",
                       role="admin", domain="Hostel"),
            StaffModel(id="plumber", full_name="Plumbing Lead", email="plumbing@example.edu", role="admin"),
            StaffModel(id="dean", full_name="Dean", email="dean@example.edu", role="admin"),
            StaffModel(id="super-1", full_name="Super Admin", email="super@example.edu", role="super_admin"),
        ])
        session.add_all([
            CategoryModel(id=HOSTEL_CATEGORY, name="Hostel Maintenance", domain="Hostel"),
            CategoryModel(id=ACADEMIC_CATEGORY, name="Academics", domain="College", default_admin_id="admin-1"),
            CategoryModel(id=EMPTY_CATEGORY, name="Other", domain=None),
        ])
        await session.flush()
        session.add(SubcategoryModel(id=PLUMBING_SUBCATEGORY, category_id=HOSTEL_CATEGORY, name="Plumbing",
                                     assigned_admin_id="plumber"))
        session.add_all([
            EscalationRuleModel(domain="Hostel", level=1, staff_id="warden-any", notify_channel="email"),
            EscalationRuleModel(domain="Hostel", scope="Hostel A", level=1, staff_id="warden-a",
                                notify_channel="both"),
            EscalationRuleModel(domain="Hostel", level=2, staff_id="dean", notify_channel="slack"),
        ])
        session.add(TicketGroupModel(id=1, name="Block B water outage", committee_id=7))
    return True

