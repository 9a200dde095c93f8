"""
Outbox Application Layer
========================

Contains:
- enqueue / OutboxDispatcher: transactional write and asynchronous drain
- NotificationHandlers: chat and email delivery per event type
- Interfaces: repository, directory and sink abstractions
"""

from src.outbox.application.dispatcher import (
    OutboxDispatcher,
    OutboxHandler,
    enqueue,
    resolve_handler,
)
from src.outbox.application.handlers import NotificationHandlers
from src.outbox.application.interfaces import (
    IChatSink,
    IEmailSink,
    INotificationDirectory,
    IOutboxRepository,
    IOutboxWriter,
)

__all__ = [
    "OutboxDispatcher",
    "OutboxHandler",
    "enqueue",
    "resolve_handler",
    "NotificationHandlers",
    "IChatSink",
    "IEmailSink",
    "INotificationDirectory",
    "IOutboxRepository",
    "IOutboxWriter",
]
