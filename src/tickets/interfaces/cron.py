"""
Cron API
========

Endpoints an external scheduler calls when background jobs are not run
in-process (serverless deployments). Every endpoint requires
``Authorization: Bearer <CRON_SECRET>``.
"""

import hmac
from typing import List, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import Settings, get_settings
from src.infrastructure.database import get_session
from src.outbox.application import OutboxDispatcher
from src.outbox.infrastructure import SQLAlchemyOutboxRepository
from src.shared.infrastructure.logging import get_logger
from src.tickets.application import EscalationSweep, TATReminderService, UnitOfWorkScope
from src.tickets.application.dto import (
    DrainResponse,
    OutboxEventResponse,
    ReminderResponse,
    SweepResponse,
)
from src.tickets.domain import EscalationConfig
from src.tickets.interfaces.dependencies import get_dispatcher, get_escalation_config, get_uow_scope

logger = get_logger(__name__)


async def verify_cron_auth(
    authorization: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
) -> None:
    """
    Check the shared cron secret.

    Without a configured secret the endpoints are refused in production and
    left open elsewhere.
    """
    if not config.cron_secret:
        if config.is_production:
            logger.error("CRON_SECRET is not configured")
            raise HTTPException(status_code=500, detail="Cron secret not configured")
        logger.warning("CRON_SECRET not set, allowing unauthenticated cron call")
        return

    expected = f"Bearer {config.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_auth)])


@router.api_route(
    "/auto-escalate",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Run escalation sweep",
    description="Escalate every non-final ticket that meets a trigger and is not in cooldown.",
)
async def auto_escalate(
    uow_scope: UnitOfWorkScope = Depends(get_uow_scope),
    escalation: EscalationConfig = Depends(get_escalation_config),
    config: Settings = Depends(get_settings),
) -> SweepResponse:
    result = await EscalationSweep(uow_scope, escalation, super_admin_id=config.super_admin_id).run()
    return SweepResponse(**result.to_dict())


@router.api_route(
    "/process-outbox",
    methods=["GET", "POST"],
    response_model=DrainResponse,
    summary="Drain outbox",
    description="Deliver pending notification events, oldest first.",
)
async def process_outbox(
    batch_limit: Optional[int] = Query(None, ge=1, le=500, description="Rows to process"),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
) -> DrainResponse:
    result = await dispatcher.drain(batch_limit)
    return DrainResponse(**result.to_dict())


@router.api_route(
    "/tat-reminders",
    methods=["GET", "POST"],
    response_model=ReminderResponse,
    summary="Queue TAT reminders",
    description="Queue one digest per assignee for tickets whose TAT falls due today (weekdays only).",
)
async def tat_reminders(
    uow_scope: UnitOfWorkScope = Depends(get_uow_scope),
    config: Settings = Depends(get_settings),
) -> ReminderResponse:
    result = await TATReminderService(uow_scope, tz=ZoneInfo(config.business_timezone)).run()
    return ReminderResponse(**result.to_dict())


@router.get(
    "/outbox/failed",
    response_model=List[OutboxEventResponse],
    summary="List parked outbox events",
    description="Events that exhausted their delivery attempts and need manual inspection.",
)
async def list_failed_events(
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> List[OutboxEventResponse]:
    events = await SQLAlchemyOutboxRepository(session).list_failed(limit)
    return [
        OutboxEventResponse(
            id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            attempts=event.attempts,
            last_error=event.last_error,
            created_at=event.created_at,
            failed_at=event.failed_at,
        )
        for event in events
    ]
