"""
Ticket Application DTOs
=======================

Pydantic request and response models for the ticket and cron API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from src.tickets.application.tat import TATInfo
from src.tickets.domain import Ticket


# ========== Request DTOs ==========

class CreateTicketRequest(BaseModel):
    """Request model for ticket creation."""
    category_id: int = Field(..., description="Category reference")
    subcategory_id: Optional[int] = Field(None, description="Subcategory reference")
    sub_subcategory_id: Optional[int] = Field(None, description="Sub-subcategory reference")
    description: str = Field(..., min_length=1, max_length=10000, description="Problem description")
    location: Optional[str] = Field(None, max_length=255, description="Location, e.g. hostel name")
    requester_email: Optional[str] = Field(None, max_length=255, description="Address for requester notifications")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Dynamic field values by slug")
    group_id: Optional[int] = Field(None, description="Ticket group")
    committee_ids: List[int] = Field(default_factory=list, description="Committees the ticket is tagged to")

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description cannot be blank")
        return v.strip()


class StatusUpdateRequest(BaseModel):
    """Request model for a status change."""
    status: str = Field(..., min_length=1, description="Target status code or alias")


class SetTATRequest(BaseModel):
    """Request model for setting or extending TAT."""
    tat: Union[int, float, str] = Field(..., description="Duration ('2 days'), hours, 'today', 'tomorrow' or ISO date")
    mark_in_progress: bool = Field(default=False, description="Also move the ticket to in_progress")


class EscalateRequest(BaseModel):
    """Request model for manual escalation."""
    note: Optional[str] = Field(None, max_length=2000, description="Reason given by the actor")


# ========== Response DTOs ==========

class TicketResponse(BaseModel):
    """Response model for a ticket."""
    id: int
    status: str
    created_by: str
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    description: str
    location: Optional[str] = None
    assigned_to: Optional[str] = None
    escalated_to: Optional[str] = None
    escalation_level: int = 0
    reopen_count: int = 0
    tat_extension_count: int = 0
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    sla_breached_at: Optional[datetime] = None
    tat: Optional[str] = None
    tat_date: Optional[datetime] = None

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            status=ticket.status,
            created_by=ticket.created_by,
            category_id=ticket.category_id,
            subcategory_id=ticket.subcategory_id,
            description=ticket.description,
            location=ticket.location,
            assigned_to=ticket.assigned_to,
            escalated_to=ticket.escalated_to,
            escalation_level=ticket.escalation_level,
            reopen_count=ticket.reopen_count,
            tat_extension_count=ticket.tat_extension_count,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            resolved_at=ticket.resolved_at,
            reopened_at=ticket.reopened_at,
            due_at=ticket.due_at,
            sla_breached_at=ticket.sla_breached_at,
            tat=ticket.state.tat,
            tat_date=ticket.state.tat_date,
        )


class CreateTicketResponse(BaseModel):
    ticket: TicketResponse
    assignment_source: Optional[str] = None


class TransitionResponse(BaseModel):
    ticket: TicketResponse
    old_status: str
    new_status: str
    group_archived: bool = False


class TATUpdateResponse(BaseModel):
    ticket: TicketResponse
    kind: str = Field(..., description="extended, set_in_progress or updated")
    previous_tat: Optional[str] = None


class TATInfoResponse(BaseModel):
    """Response model for TAT details of a ticket."""
    ticket_id: int
    tat: Optional[str] = None
    tat_date: Optional[datetime] = None
    effective_deadline: Optional[datetime] = None
    due_at: Optional[datetime] = None
    is_paused: bool = False
    paused_seconds: float = 0.0
    extension_count: int = 0
    extension_limit_reached: bool = False
    is_breached: bool = False
    hours_overdue: float = 0.0
    extensions: List[Dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_info(cls, info: TATInfo) -> "TATInfoResponse":
        return cls(**info.__dict__)


class EscalationResponse(BaseModel):
    ticket: TicketResponse
    reason: str
    previous_level: int
    escalation_level: int
    escalated_to: str
    assigned_to: Optional[str] = None


class SweepResponse(BaseModel):
    """Response model for the escalation sweep."""
    scanned: int
    escalated: int
    skipped_cooldown: int
    skipped: int
    failed: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class DrainResponse(BaseModel):
    """Response model for an outbox drain."""
    claimed: int
    delivered: int
    failed: int
    dead: int


class ReminderResponse(BaseModel):
    day: str
    skipped_weekend: bool
    tickets_due: int
    reminders_queued: int


class OutboxEventResponse(BaseModel):
    """Response model for a parked outbox event."""
    id: int
    event_type: str
    payload: Dict[str, Any]
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    failed_at: Optional[datetime] = None
