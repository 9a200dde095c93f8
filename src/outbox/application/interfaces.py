"""
Outbox Application Interfaces
=============================

Abstractions the dispatcher and handlers depend on (Dependency Inversion).
Concrete SQLAlchemy and HTTP implementations live in the infrastructure
layer.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.outbox.domain import OutboxEvent, TicketNotificationContext


# ========== Persistence ==========

class IOutboxWriter(ABC):
    """Insert-only view of the outbox, bound to the caller's transaction."""

    @abstractmethod
    async def enqueue(self, event_type: str, payload: Dict[str, Any]) -> int:
        """Insert an event row and return its id. Performs no I/O besides the insert."""


class IOutboxRepository(IOutboxWriter):
    """Full outbox access used by the dispatcher."""

    @abstractmethod
    async def claim_next(self, now: datetime, lease_until: datetime) -> Optional[OutboxEvent]:
        """Lock the oldest eligible row, bump attempts and lease it."""

    @abstractmethod
    async def claim_by_id(
        self, event_id: int, now: datetime, lease_until: datetime
    ) -> Optional[OutboxEvent]:
        """Claim one specific row if it is still eligible."""

    @abstractmethod
    async def mark_processed(self, event_id: int, processed_at: datetime) -> None:
        """Terminal success."""

    @abstractmethod
    async def mark_failed(
        self,
        event_id: int,
        error: str,
        next_retry_at: Optional[datetime],
        failed_at: Optional[datetime] = None,
    ) -> None:
        """Record a failed attempt; failed_at parks the row for inspection."""

    @abstractmethod
    async def get(self, event_id: int) -> Optional[OutboxEvent]:
        """Get an event by id."""

    @abstractmethod
    async def list_failed(self, limit: int = 100) -> List[OutboxEvent]:
        """Rows that exhausted their attempts."""

    @abstractmethod
    async def count_pending(self) -> int:
        """Unprocessed rows still eligible for delivery."""


class INotificationDirectory(ABC):
    """Ticket and staff lookups for notification handlers."""

    @abstractmethod
    async def get_ticket_context(self, ticket_id: int) -> Optional[TicketNotificationContext]:
        """Ticket details, recipients and thread references."""

    @abstractmethod
    async def get_staff_email(self, staff_id: str) -> Optional[str]:
        """Email address of a responsible party."""

    @abstractmethod
    async def save_slack_thread(self, ticket_id: int, channel: str, thread_ts: str) -> None:
        """Remember the root chat message of a ticket."""

    @abstractmethod
    async def save_email_thread(self, ticket_id: int, message_id: str) -> None:
        """Remember the first email Message-ID of a ticket."""


# ========== Notification Sinks ==========

class IChatSink(ABC):
    """Chat channel sink. Returns None from post() when disabled."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """False when delivery is switched off by configuration."""

    @abstractmethod
    async def post(
        self, channel: str, text: str, blocks: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[str]:
        """Post a root message and return its reference."""

    @abstractmethod
    async def reply(self, channel: str, message_ref: str, text: str) -> None:
        """Reply in the thread of an existing message."""


class IEmailSink(ABC):
    """Email sink. Returns None from send() when disabled."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """False when delivery is switched off by configuration."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
    ) -> Optional[str]:
        """Send a message and return its Message-ID."""
