"""
TAT due reminders: one tat.reminder outbox event per assignee listing the
tickets whose effective deadline falls on today's business date. Weekends
are skipped.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional

from src.config import OutboxEventType
from src.outbox.application import enqueue
from src.shared.infrastructure.logging import get_logger
from src.tickets.application.interfaces import UnitOfWorkScope
from src.tickets.domain import TATCalculator

logger = get_logger(__name__)


@dataclass
class ReminderResult:
    day: date
    skipped_weekend: bool = False
    tickets_due: int = 0
    reminders_queued: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "skipped_weekend": self.skipped_weekend,
            "tickets_due": self.tickets_due,
            "reminders_queued": self.reminders_queued,
        }


class TATReminderService:
    def __init__(
        self,
        uow_scope: UnitOfWorkScope,
        tz: tzinfo = timezone.utc,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._uow_scope = uow_scope
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self) -> ReminderResult:
        today = self._clock().astimezone(self._tz).date()
        result = ReminderResult(day=today)
        if today.weekday() >= 5:
            result.skipped_weekend = True
            logger.info("TAT reminders skipped on weekend", extra={"day": today.isoformat()})
            return result

        async with self._uow_scope() as uow:
            registry = await uow.statuses.get_registry()
            tickets = await uow.tickets.list_with_tat(registry.final_spellings)

            by_assignee: Dict[Optional[str], List[Dict[str, Any]]] = defaultdict(list)
            for ticket in tickets:
                if registry.is_final(ticket.status):
                    continue
                if ticket.state.is_tat_paused or not TATCalculator.is_due_on(ticket.state, today, self._tz):
                    continue
                by_assignee[ticket.assigned_to].append({
                    "ticket_id": ticket.id,
                    "description": ticket.description[:200],
                    "tat": ticket.state.tat,
                    "tat_date": TATCalculator.effective_deadline(ticket.state),
                    "domain": ticket.domain,
                })

            for assignee, due in by_assignee.items():
                await enqueue(uow.outbox, OutboxEventType.TAT_REMINDER, {
                    "assignee_id": assignee,
                    "due_date": today,
                    "ticket_ids": [item["ticket_id"] for item in due],
                    "tickets": due,
                })
                result.tickets_due += len(due)
                result.reminders_queued += 1

        logger.info("TAT reminders queued", extra=result.to_dict())
        return result
