import pytest
from sqlalchemy import update

from src.core import ConfigurationException, InvalidStatusException
from src.tickets.domain import (
    DEFAULT_STATUSES,
    StatusDefinition,
    StatusRegistry,
    canonicalize_status,
)
from src.tickets.infrastructure import SQLAlchemyStatusRepository
from src.tickets.infrastructure.models import TicketStatusModel


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("open", "open"),
        ("  IN_PROGRESS ", "in_progress"),
        ("In Progress", "in_progress"),
        ("awaiting-student", "awaiting_student"),
        ("AWAITING_STUDENT_RESPONSE", "awaiting_student"),
        ("closed", "resolved"),
        ("", None),
        (None, None),
    ],
)
def test_canonicalize_status(raw, expected):
    assert canonicalize_status(raw) == expected


def test_default_registry_has_single_final_status():
    registry = StatusRegistry.default()

    assert registry.final_status.code == "resolved"
    assert registry.final_codes == ["resolved"]
    assert len(registry) == len(DEFAULT_STATUSES)


def test_registry_rejects_zero_or_many_final_statuses():
    with pytest.raises(ConfigurationException):
        StatusRegistry([StatusDefinition("open", "Open", 0)])

    with pytest.raises(ConfigurationException):
        StatusRegistry([
            StatusDefinition("resolved", "Resolved", 100, is_final=True),
            StatusDefinition("cancelled", "Cancelled", 100, is_final=True),
        ])


def test_lookup_accepts_aliases():
    registry = StatusRegistry.default()

    assert registry.get("AWAITING_STUDENT_RESPONSE").code == "awaiting_student"
    assert "Closed" in registry
    assert registry.is_final("closed")
    assert not registry.is_final("open")


def test_transition_target_unknown_and_inactive():
    statuses = [s for s in DEFAULT_STATUSES if s.code != "forwarded"]
    statuses.append(StatusDefinition("forwarded", "Forwarded", 30, is_active=False))
    registry = StatusRegistry(statuses)

    with pytest.raises(InvalidStatusException) as unknown:
        registry.require_transition_target("on_hold")
    assert unknown.value.reason == "unknown"

    with pytest.raises(InvalidStatusException) as inactive:
        registry.require_transition_target("forwarded")
    assert inactive.value.reason == "inactive"


def test_describe_keeps_historic_codes_readable():
    placeholder = StatusRegistry.default().describe("LEGACY_PENDING")

    assert placeholder.code == "legacy_pending"
    assert placeholder.label == "Legacy Pending"
    assert not placeholder.is_active
    assert not placeholder.is_final


def test_active_statuses_follow_display_order():
    codes = [s.code for s in StatusRegistry.default().active()]

    assert codes[0] == "open"
    assert codes[-1] == "resolved"


def test_progress_percent_is_bounded():
    with pytest.raises(ValueError):
        StatusDefinition("open", "Open", 120)


async def test_repository_falls_back_to_defaults_when_table_empty(session_factory):
    async with session_factory() as session:
        registry = await SQLAlchemyStatusRepository(session).get_registry()

    assert registry.get("escalated") is not None
    assert registry.final_status.code == "resolved"


async def test_repository_reads_flags_from_table(session_factory, seeded):
    async with session_factory() as session:
        await session.execute(
            update(TicketStatusModel)
            .where(TicketStatusModel.value == "forwarded")
            .values(is_active=False, label="Forwarded (retired)")
        )

    async with session_factory() as session:
        registry = await SQLAlchemyStatusRepository(session).get_registry()

    forwarded = registry.get("forwarded")
    assert forwarded.label == "Forwarded (retired)"
    assert not forwarded.is_active
    assert "forwarded" not in [s.code for s in registry.active()]


def test_final_spellings_cover_historic_codes():
    statuses = [s for s in DEFAULT_STATUSES if s.code != "resolved"]
    statuses.append(StatusDefinition("RESOLVED", "Resolved", 100, is_final=True))
    registry = StatusRegistry(statuses)

    assert registry.final_codes == ["resolved"]
    assert set(registry.final_spellings) == {"resolved", "RESOLVED", "closed", "CLOSED"}
    assert "open" not in registry.final_spellings
