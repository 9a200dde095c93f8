"""
Outbox Infrastructure Layer
===========================

- Models: outbox table
- Repositories: claim/mark persistence with row locking
- External: Slack and email sinks
"""

from src.outbox.infrastructure.models import OutboxModel
from src.outbox.infrastructure.repositories import (
    SQLAlchemyOutboxRepository,
    outbox_repository_scope,
)
from src.outbox.infrastructure.external import CircuitBreaker, EmailClient, SlackClient

__all__ = [
    "OutboxModel",
    "SQLAlchemyOutboxRepository",
    "outbox_repository_scope",
    "CircuitBreaker",
    "EmailClient",
    "SlackClient",
]
