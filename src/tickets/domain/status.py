"""
Status Registry
===============

Reference data for ticket statuses: code -> label, progress, final and
active flags. The database table is authoritative; DEFAULT_STATUSES is the
seed set and the fallback for an empty table.

Legacy and alias names (``AWAITING_STUDENT_RESPONSE``, ``closed`` ...) are
accepted on input only and always canonicalized before lookup. Nothing in
the engine writes a non-canonical code back to storage.
"""

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set

from src.config import TicketStatus
from src.core import ConfigurationException, InvalidStatusException


STATUS_ALIASES: Dict[str, str] = {
    "awaiting_student_response": TicketStatus.AWAITING_STUDENT,
    "awaiting_requester": TicketStatus.AWAITING_STUDENT,
    "closed": TicketStatus.RESOLVED,
}


def canonicalize_status(value: Optional[str]) -> Optional[str]:
    """
    Normalize a status name to its canonical code.

    Strips, lower-cases, turns spaces and hyphens into underscores and maps
    known aliases. Returns None for empty input. Does not check existence.
    """
    if value is None:
        return None
    code = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if not code:
        return None
    return STATUS_ALIASES.get(code, code)


@dataclass(frozen=True)
class StatusDefinition:
    """One row of the status registry."""
    code: str
    label: str
    progress_percent: int
    is_final: bool = False
    is_active: bool = True
    description: str = ""
    badge_color: str = "default"
    display_order: int = 0

    def __post_init__(self):
        if not self.code:
            raise ValueError("status code cannot be empty")
        if not 0 <= self.progress_percent <= 100:
            raise ValueError("progress_percent must be between 0 and 100")


DEFAULT_STATUSES = (
    StatusDefinition(TicketStatus.OPEN, "Open", 0,
                     description="New ticket, awaiting assignment", display_order=1),
    StatusDefinition(TicketStatus.IN_PROGRESS, "In Progress", 40,
                     description="Admin is actively working on this ticket",
                     badge_color="outline", display_order=2),
    StatusDefinition(TicketStatus.AWAITING_STUDENT, "Awaiting Student", 50,
                     description="Waiting for student response",
                     badge_color="outline", display_order=3),
    StatusDefinition(TicketStatus.REOPENED, "Reopened", 10,
                     description="Student reopened a resolved ticket", display_order=4),
    StatusDefinition(TicketStatus.ESCALATED, "Escalated", 60,
                     description="Ticket escalated to higher authority",
                     badge_color="destructive", display_order=5),
    StatusDefinition(TicketStatus.FORWARDED, "Forwarded", 30,
                     description="Ticket forwarded to another admin",
                     badge_color="secondary", display_order=6),
    StatusDefinition(TicketStatus.RESOLVED, "Resolved", 100, is_final=True,
                     description="Ticket successfully resolved",
                     badge_color="secondary", display_order=7),
)


class StatusRegistry:
    """
    In-memory view of the ticket_statuses table.

    Exactly one status must be final; it represents "resolved" for SLA
    reporting and stops auto-escalation.
    """

    def __init__(self, statuses: Iterable[StatusDefinition]):
        self._statuses: Dict[str, StatusDefinition] = {}
        self._stored: Dict[str, Set[str]] = {}
        for status in statuses:
            code = canonicalize_status(status.code)
            self._stored.setdefault(code, set()).add(status.code)
            if code != status.code:
                status = replace(status, code=code)
            self._statuses[code] = status

        finals = [s for s in self._statuses.values() if s.is_final]
        if len(finals) != 1:
            raise ConfigurationException(
                "Status registry must contain exactly one final status",
                {"final_statuses": [s.code for s in finals]}
            )
        self._final = finals[0]

    @classmethod
    def default(cls) -> "StatusRegistry":
        return cls(DEFAULT_STATUSES)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and canonicalize_status(code) in self._statuses

    def __len__(self) -> int:
        return len(self._statuses)

    def get(self, value: Optional[str]) -> Optional[StatusDefinition]:
        """Lookup by any spelling, including inactive statuses."""
        code = canonicalize_status(value)
        if code is None:
            return None
        return self._statuses.get(code)

    def describe(self, value: Optional[str]) -> StatusDefinition:
        """
        Definition for a status found on a stored ticket.

        Unknown historic codes yield an inactive, non-final placeholder so
        existing tickets stay readable.
        """
        status = self.get(value)
        if status is not None:
            return status
        code = canonicalize_status(value) or "unknown"
        return StatusDefinition(code=code, label=code.replace("_", " ").title(),
                                progress_percent=0, is_active=False)

    def require_transition_target(self, value: Optional[str]) -> StatusDefinition:
        """
        Resolve a requested target status.

        Raises:
            InvalidStatusException: unknown after canonicalization, or inactive
        """
        status = self.get(value)
        if status is None:
            raise InvalidStatusException(value, "unknown")
        if not status.is_active:
            raise InvalidStatusException(value, "inactive")
        return status

    def is_final(self, value: Optional[str]) -> bool:
        status = self.get(value)
        return bool(status and status.is_final)

    @property
    def final_status(self) -> StatusDefinition:
        return self._final

    @property
    def final_codes(self) -> List[str]:
        return [s.code for s in self._statuses.values() if s.is_final]

    @property
    def final_spellings(self) -> List[str]:
        """
        Every stored spelling of the final status(es).

        Historic tickets may carry the table's raw code (``RESOLVED``), an
        upper-case variant or an alias such as ``closed``; SQL filters on
        the status column need all of them.
        """
        spellings: Set[str] = set()
        for code in self.final_codes:
            spellings.update(self._stored.get(code, ()))
            spellings.add(code)
        for alias, code in STATUS_ALIASES.items():
            if code in spellings:
                spellings.add(alias)
        spellings.update([s.upper() for s in spellings])
        return sorted(spellings)

    def active(self) -> List[StatusDefinition]:
        """Active statuses in display order."""
        return sorted(
            (s for s in self._statuses.values() if s.is_active),
            key=lambda s: (s.display_order, s.code),
        )
