"""
Ticket API Controllers
======================

FastAPI routes for ticket lifecycle operations.

Each handler runs the whole mutation, including its outbox row, in the
request transaction, commits, and then schedules immediate delivery of the
committed row.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status

from src.config import Settings, get_settings
from src.outbox.application import OutboxDispatcher
from src.tickets.application import (
    EscalationSweep,
    StatusTransitionService,
    TATService,
    TicketService,
    UnitOfWorkScope,
)
from src.tickets.application.dto import (
    CreateTicketRequest,
    CreateTicketResponse,
    EscalateRequest,
    EscalationResponse,
    SetTATRequest,
    StatusUpdateRequest,
    TATInfoResponse,
    TATUpdateResponse,
    TicketResponse,
    TransitionResponse,
)
from src.tickets.domain import Actor, EscalationConfig
from src.tickets.infrastructure import SQLAlchemyUnitOfWork
from src.tickets.interfaces.dependencies import (
    get_actor,
    get_dispatcher,
    get_escalation_config,
    get_uow,
    get_uow_scope,
    schedule_dispatch,
)

router = APIRouter(prefix="/tickets", tags=["Tickets"])


# ========== Example payloads ==========

CREATE_TICKET_EXAMPLE = {
    "category_id": 3,
    "subcategory_id": 12,
    "description": "Water leaking from the ceiling near the study table",
    "location": "Hostel A",
    "requester_email": "student@example.edu",
    "fields": {"room-number": "A-214"},
}

SET_TAT_EXAMPLE = {"tat": "2 days", "mark_in_progress": True}


# ========== Dependencies ==========

def get_ticket_service(config: Settings = Depends(get_settings)) -> TicketService:
    return TicketService(
        default_resolution_hours=config.default_resolution_hours,
        super_admin_id=config.super_admin_id,
    )


def get_transition_service() -> StatusTransitionService:
    return StatusTransitionService()


def get_tat_service(escalation: EscalationConfig = Depends(get_escalation_config)) -> TATService:
    return TATService(escalation)


def get_escalation_service(
    uow_scope: UnitOfWorkScope = Depends(get_uow_scope),
    escalation: EscalationConfig = Depends(get_escalation_config),
    config: Settings = Depends(get_settings),
) -> EscalationSweep:
    return EscalationSweep(uow_scope, escalation, super_admin_id=config.super_admin_id)


# ========== Routes ==========

@router.post(
    "",
    response_model=CreateTicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create ticket",
    description="Create a ticket in status 'open' and resolve its responsible party.",
    responses={201: {"description": "Ticket created"}, 404: {"description": "Unknown category"}},
    openapi_extra={"requestBody": {"content": {"application/json": {"example": CREATE_TICKET_EXAMPLE}}}},
)
async def create_ticket(
    request: CreateTicketRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
    service: TicketService = Depends(get_ticket_service),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
    config: Settings = Depends(get_settings),
) -> CreateTicketResponse:
    result = await service.create_ticket(uow, actor, **request.model_dump())
    await uow.commit()
    schedule_dispatch(background_tasks, dispatcher, result.outbox_event_id, config)

    return CreateTicketResponse(
        ticket=TicketResponse.from_entity(result.ticket),
        assignment_source=result.assignment_source,
    )


@router.post(
    "/{ticket_id}/status",
    response_model=TransitionResponse,
    summary="Change ticket status",
    description="""
    Move a ticket to another status.

    Students may only close their own active tickets or reopen resolved
    ones; committee members act within their committees; administrators
    may use any active status. Requesting 'open' on a closed ticket
    reopens it.
    """,
    responses={
        400: {"description": "Unknown, inactive or unchanged status"},
        403: {"description": "Transition not allowed for this actor"},
        404: {"description": "Ticket not found"},
        409: {"description": "Ticket changed concurrently"},
    },
)
async def update_status(
    ticket_id: int,
    request: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
    service: StatusTransitionService = Depends(get_transition_service),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
    config: Settings = Depends(get_settings),
) -> TransitionResponse:
    result = await service.transition(uow, ticket_id, request.status, actor)
    await uow.commit()
    schedule_dispatch(background_tasks, dispatcher, result.outbox_event_id, config)

    return TransitionResponse(
        ticket=TicketResponse.from_entity(result.ticket),
        old_status=result.old_status,
        new_status=result.new_status,
        group_archived=result.group_archived,
    )


@router.post(
    "/{ticket_id}/tat",
    response_model=TATUpdateResponse,
    summary="Set or extend TAT",
    description="Administrators set the turnaround time; a second call on the same ticket is an extension.",
    responses={
        400: {"description": "TAT could not be parsed or is in the past"},
        403: {"description": "Actor is not an administrator"},
        409: {"description": "Ticket is closed or changed concurrently"},
    },
    openapi_extra={"requestBody": {"content": {"application/json": {"example": SET_TAT_EXAMPLE}}}},
)
async def set_tat(
    ticket_id: int,
    request: SetTATRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_actor),
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
    service: TATService = Depends(get_tat_service),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
    config: Settings = Depends(get_settings),
) -> TATUpdateResponse:
    result = await service.set_tat(uow, ticket_id, request.tat, request.mark_in_progress, actor)
    await uow.commit()
    schedule_dispatch(background_tasks, dispatcher, result.outbox_event_id, config)

    return TATUpdateResponse(
        ticket=TicketResponse.from_entity(result.ticket),
        kind=result.kind,
        previous_tat=result.previous_tat,
    )


@router.get(
    "/{ticket_id}/tat",
    response_model=TATInfoResponse,
    summary="Get TAT details",
    description="Deadline, pause state, extension history and breach status of a ticket.",
)
async def get_tat(
    ticket_id: int,
    actor: Actor = Depends(get_actor),
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
    service: TATService = Depends(get_tat_service),
) -> TATInfoResponse:
    info = await service.get_tat_info(uow, ticket_id, actor)
    return TATInfoResponse.from_info(info)


@router.post(
    "/{ticket_id}/escalate",
    response_model=EscalationResponse,
    summary="Escalate ticket",
    description="Raise the escalation level of a ticket by one and hand it to the next tier.",
    responses={409: {"description": "Ticket is closed or was escalated recently"}},
)
async def escalate_ticket(
    ticket_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[EscalateRequest] = None,
    actor: Actor = Depends(get_actor),
    uow: SQLAlchemyUnitOfWork = Depends(get_uow),
    service: EscalationSweep = Depends(get_escalation_service),
    dispatcher: OutboxDispatcher = Depends(get_dispatcher),
    config: Settings = Depends(get_settings),
) -> EscalationResponse:
    outcome = await service.escalate(uow, ticket_id, actor, request.note if request else None)
    await uow.commit()
    schedule_dispatch(background_tasks, dispatcher, outcome.outbox_event_id, config)

    return EscalationResponse(
        ticket=TicketResponse.from_entity(outcome.ticket),
        reason=outcome.trigger.reason,
        previous_level=outcome.previous_level,
        escalation_level=outcome.ticket.escalation_level,
        escalated_to=outcome.escalated_to,
        assigned_to=outcome.assigned_to,
    )
