"""
Outbox Dispatcher
=================

Two halves of the transactional outbox:

- enqueue(): called inside the caller's transaction, insert only
- OutboxDispatcher.drain(): runs outside any domain transaction, claims
  rows one at a time, runs the handler for the event type and records the
  outcome

Delivery is at-least-once. A worker crashing between a successful send and
mark_processed() leaves the row leased; once the lease expires another drain
delivers it again.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Mapping, Optional

from src.core import DeliveryException, ValidationException
from src.outbox.application.interfaces import IOutboxRepository, IOutboxWriter
from src.outbox.domain import DrainResult, OutboxEvent, json_safe, retry_delay
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

OutboxHandler = Callable[[OutboxEvent], Awaitable[None]]
RepositoryScope = Callable[[], AsyncContextManager[IOutboxRepository]]


async def enqueue(writer: IOutboxWriter, event_type: str, payload: Dict[str, Any]) -> int:
    """
    Append a notification intent to the caller's transaction.

    Args:
        writer: Outbox writer bound to the open transaction
        event_type: Event type tag (see OutboxEventType)
        payload: JSON-serializable document; datetimes are converted

    Returns:
        Id of the inserted row
    """
    if not event_type or not event_type.strip():
        raise ValidationException("Outbox event type cannot be empty")
    event_id = await writer.enqueue(event_type, json_safe(payload or {}))
    logger.debug("Outbox event enqueued", extra={"event_type": event_type, "outbox_id": event_id})
    return event_id


def resolve_handler(handlers: Mapping[str, OutboxHandler], event_type: str) -> OutboxHandler:
    handler = handlers.get(event_type)
    if handler is None:
        raise DeliveryException("outbox", f"No handler registered for event type '{event_type}'")
    return handler


class OutboxDispatcher:
    """
    Drains the outbox table.

    Each claim, success mark and failure mark runs in its own short
    transaction opened by ``repository_scope``; handlers run with no
    transaction held.
    """

    def __init__(
        self,
        repository_scope: RepositoryScope,
        handlers: Mapping[str, OutboxHandler],
        batch_size: int = 10,
        max_attempts: int = 5,
        max_backoff_minutes: int = 60,
        claim_timeout_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repository_scope = repository_scope
        self._handlers = handlers
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._max_backoff_minutes = max_backoff_minutes
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def event_types(self) -> List[str]:
        return sorted(self._handlers)

    async def drain(self, batch_limit: Optional[int] = None) -> DrainResult:
        """
        Deliver up to ``batch_limit`` eligible rows, oldest first.

        Returns:
            DrainResult with claimed/delivered/failed/dead counters
        """
        limit = batch_limit or self._batch_size
        result = DrainResult()

        for _ in range(limit):
            now = self._clock()
            async with self._repository_scope() as repo:
                event = await repo.claim_next(now, now + self._claim_timeout)
            if event is None:
                break

            result.claimed += 1
            outcome = await self._process(event)
            if outcome == "delivered":
                result.delivered += 1
            elif outcome == "dead":
                result.failed += 1
                result.dead += 1
            else:
                result.failed += 1

        if result.claimed:
            logger.info("Outbox drain finished", extra=result.to_dict())
        return result

    async def dispatch(self, event_id: int) -> bool:
        """
        Best-effort immediate delivery of one freshly committed row.

        Returns False when the row is already claimed, processed or parked;
        the periodic drain remains responsible for it.
        """
        now = self._clock()
        async with self._repository_scope() as repo:
            event = await repo.claim_by_id(event_id, now, now + self._claim_timeout)
        if event is None:
            return False
        return await self._process(event) == "delivered"

    async def _process(self, event: OutboxEvent) -> str:
        try:
            handler = resolve_handler(self._handlers, event.event_type)
            await handler(event)
        except Exception as exc:
            return await self._record_failure(event, exc)

        async with self._repository_scope() as repo:
            await repo.mark_processed(event.id, self._clock())
        logger.info(
            "Outbox event delivered",
            extra={"outbox_id": event.id, "event_type": event.event_type, "attempts": event.attempts}
        )
        return "delivered"

    async def _record_failure(self, event: OutboxEvent, exc: Exception) -> str:
        now = self._clock()
        error = f"{type(exc).__name__}: {exc}"
        exhausted = event.attempts >= self._max_attempts
        next_retry_at = None if exhausted else now + retry_delay(event.attempts, self._max_backoff_minutes)

        async with self._repository_scope() as repo:
            await repo.mark_failed(
                event.id,
                error,
                next_retry_at,
                failed_at=now if exhausted else None,
            )

        log_extra = {
            "outbox_id": event.id,
            "event_type": event.event_type,
            "attempts": event.attempts,
            "error": error,
        }
        if exhausted:
            logger.error("Outbox event parked after max attempts", extra=log_extra)
            return "dead"
        logger.warning(
            "Outbox event delivery failed",
            extra={**log_extra, "next_retry_at": next_retry_at.isoformat()}
        )
        return "failed"
