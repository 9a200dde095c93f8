"""
Outbox Domain
=============

Outbox events are durable notification intents written in the same
transaction as the ticket change that caused them. A row with processed_at
set is terminal; a row with failed_at set exhausted its attempts and waits
for manual inspection.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional


@dataclass
class OutboxEvent:
    """Outbox row as seen by the dispatcher and handlers."""
    id: int
    event_type: str
    payload: Dict[str, Any]
    created_at: datetime
    attempts: int = 0
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    @property
    def is_dead(self) -> bool:
        return self.failed_at is not None


@dataclass
class DrainResult:
    """Counters returned by a drain cycle."""
    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    dead: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class TicketNotificationContext:
    """What a handler needs to know about a ticket to notify about it."""
    ticket_id: int
    status: str
    description: str = ""
    category_name: Optional[str] = None
    domain: Optional[str] = None
    location: Optional[str] = None
    creator_email: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_email: Optional[str] = None
    assignee_name: Optional[str] = None
    slack_channel: Optional[str] = None
    slack_thread_ts: Optional[str] = None
    email_thread_id: Optional[str] = None
    escalation_level: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


def retry_delay(attempts: int, max_backoff_minutes: int = 60) -> timedelta:
    """Exponential back-off in minutes: 2, 4, 8, ... capped."""
    exponent = min(max(attempts, 0), 16)
    return timedelta(minutes=min(max_backoff_minutes, 2 ** exponent))


def json_safe(value: Any) -> Any:
    """Convert a payload into JSON-storable primitives."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return value
