"""
Outbox Domain Layer
===================

Outbox event value types and retry arithmetic.
"""

from src.outbox.domain.events import (
    DrainResult,
    OutboxEvent,
    TicketNotificationContext,
    json_safe,
    retry_delay,
)

__all__ = [
    "DrainResult",
    "OutboxEvent",
    "TicketNotificationContext",
    "json_safe",
    "retry_delay",
]
