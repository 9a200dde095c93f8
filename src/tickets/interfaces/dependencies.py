"""
Ticket API Dependencies
=======================

FastAPI dependency providers shared by the ticket and cron routers.

Services built at startup live on ``app.state``. When the app runs without
its lifespan (serverless), the dispatcher and escalation config are built
on first use and cached there.
"""

from typing import List, Optional, Tuple

from fastapi import BackgroundTasks, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import Settings, VALID_ROLES, get_settings
from src.infrastructure.database import get_session, get_session_context
from src.outbox.application import NotificationHandlers, OutboxDispatcher
from src.outbox.infrastructure import EmailClient, SlackClient, outbox_repository_scope
from src.shared.infrastructure.logging import get_logger
from src.tickets.application import UnitOfWorkScope
from src.tickets.domain import Actor, EscalationConfig
from src.tickets.infrastructure import (
    SQLAlchemyNotificationDirectory,
    SQLAlchemyUnitOfWork,
    unit_of_work_scope,
)
from src.tickets.infrastructure.external import escalation_defaults

logger = get_logger(__name__)


def build_dispatcher(config: Settings) -> Tuple[OutboxDispatcher, SlackClient, EmailClient]:
    """Wire the outbox dispatcher to the Slack and email sinks."""
    chat = SlackClient(config)
    email = EmailClient(config)
    handlers = NotificationHandlers(
        directory=SQLAlchemyNotificationDirectory(get_session_context),
        chat=chat,
        email=email,
        channel_for=chat.channel_for,
    )
    dispatcher = OutboxDispatcher(
        repository_scope=outbox_repository_scope(get_session_context),
        handlers=handlers.registry(),
        batch_size=config.outbox_batch_size,
        max_attempts=config.outbox_max_attempts,
        max_backoff_minutes=config.outbox_max_backoff_minutes,
        claim_timeout_seconds=config.outbox_claim_timeout_seconds,
    )
    return dispatcher, chat, email


# ========== Actor ==========

def _parse_committees(raw: Optional[str]) -> List[int]:
    if not raw:
        return []
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Actor-Committees must be comma-separated integers")


async def get_actor(
    x_actor_id: Optional[str] = Header(None, description="Authenticated user id"),
    x_actor_role: Optional[str] = Header(None, description="student, committee, admin or super_admin"),
    x_actor_committees: Optional[str] = Header(None, description="Comma-separated committee ids"),
) -> Actor:
    """
    Actor resolved by the upstream authentication layer.

    Identity arrives in trusted headers set by the gateway in front of this
    service.
    """
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    role = (x_actor_role or "").strip().lower()
    if role not in VALID_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid actor role '{x_actor_role}'")
    return Actor(id=x_actor_id, role=role, committee_ids=frozenset(_parse_committees(x_actor_committees)))


# ========== Persistence ==========

async def get_uow(session: AsyncSession = Depends(get_session)) -> SQLAlchemyUnitOfWork:
    """Unit of work bound to the request transaction."""
    return SQLAlchemyUnitOfWork(session)


def get_uow_scope() -> UnitOfWorkScope:
    """Per-transaction scope used by the sweep and reminder jobs."""
    return unit_of_work_scope(get_session_context)


# ========== Services ==========

def get_escalation_config(request: Request, config: Settings = Depends(get_settings)) -> EscalationConfig:
    manager = getattr(request.app.state, "escalation_config", None)
    if manager is not None:
        return manager.config
    return EscalationConfig(**escalation_defaults(config))


def get_dispatcher(request: Request, config: Settings = Depends(get_settings)) -> OutboxDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher, chat, email = build_dispatcher(config)
        request.app.state.dispatcher = dispatcher
        request.app.state.sinks = [chat, email]
        logger.info("Outbox dispatcher created on first use")
    return dispatcher


async def _dispatch_quietly(dispatcher: OutboxDispatcher, event_id: int) -> None:
    try:
        await dispatcher.dispatch(event_id)
    except Exception as e:
        logger.warning(
            "Immediate outbox dispatch failed, left for the drain",
            extra={"outbox_id": event_id, "error": str(e)}
        )


def schedule_dispatch(
    background_tasks: BackgroundTasks,
    dispatcher: OutboxDispatcher,
    event_id: int,
    config: Settings,
) -> None:
    """Queue best-effort delivery of a committed outbox row after the response."""
    if config.outbox_immediate_dispatch:
        background_tasks.add_task(_dispatch_quietly, dispatcher, event_id)
