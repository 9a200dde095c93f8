"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="ticket-lifecycle-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")
    business_timezone: str = Field(
        default="UTC",
        description="IANA timezone used to decide what 'today' means for TAT reminders"
    )

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/tickets",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to escalation thresholds YAML file"
    )
    auto_escalation_days: int = Field(
        default=7,
        description="Days without an update before a ticket is escalated",
        ge=1
    )
    escalation_cooldown_days: int = Field(
        default=2,
        description="Days after an escalation during which a ticket is not escalated again",
        ge=0
    )
    max_tat_extensions: int = Field(
        default=3,
        description="TAT extensions after which a ticket is escalated",
        ge=1
    )
    lifecycle_days: int = Field(
        default=30,
        description="Ticket age in days after which an open ticket is escalated",
        ge=1
    )
    max_reopens: int = Field(
        default=3,
        description="Reopen count after which a ticket is escalated",
        ge=1
    )
    escalation_sweep_interval_minutes: int = Field(
        default=240,
        description="Minutes between background escalation sweeps",
        ge=1
    )
    super_admin_id: Optional[str] = Field(
        default=None,
        description="Responsible party used when no super admin exists in the staff table"
    )

    # ========== TAT ==========
    default_resolution_hours: int = Field(
        default=48,
        description="Expected resolution window applied at ticket creation",
        ge=1
    )
    enable_tat_reminders: bool = Field(default=True, description="Send daily TAT due reminders")
    tat_reminder_hour: int = Field(
        default=9,
        description="Hour of day (business timezone) for TAT reminders",
        ge=0,
        le=23
    )

    # ========== Outbox ==========
    outbox_batch_size: int = Field(default=10, description="Rows processed per drain", ge=1, le=500)
    outbox_max_attempts: int = Field(
        default=5,
        description="Delivery attempts before an outbox row is parked for inspection",
        ge=1
    )
    outbox_max_backoff_minutes: int = Field(
        default=60,
        description="Upper bound for retry back-off",
        ge=1
    )
    outbox_claim_timeout_seconds: int = Field(
        default=300,
        description="Lease held on a claimed outbox row before another worker may retry it",
        ge=10
    )
    outbox_drain_interval_seconds: int = Field(
        default=60,
        description="Seconds between background outbox drains",
        ge=5
    )
    outbox_immediate_dispatch: bool = Field(
        default=True,
        description="Deliver a freshly committed outbox row right after the request"
    )

    # ========== Background Jobs / Cron ==========
    enable_background_jobs: bool = Field(
        default=True,
        description="Run escalation, outbox and reminder jobs in-process"
    )
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared bearer secret for /cron endpoints"
    )

    # ========== Slack Integration ==========
    enable_slack_notifications: bool = Field(default=True, description="Slack delivery switch")
    slack_bot_token: Optional[str] = Field(
        default=None,
        description="Slack bot token (chat.postMessage)"
    )
    slack_api_url: str = Field(
        default="https://slack.com/api",
        description="Slack Web API base URL"
    )
    slack_default_channel: str = Field(
        default="#tickets",
        description="Channel used when a domain has no dedicated channel"
    )
    slack_channels: Dict[str, str] = Field(
        default={
            "hostel": "#tickets-hostel",
            "college": "#tickets-college",
            "committee": "#tickets-committee",
        },
        description="Domain name (lower case) to Slack channel"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== Email Integration ==========
    enable_email_notifications: bool = Field(default=True, description="Email delivery switch")
    email_api_key: Optional[str] = Field(default=None, description="Transactional email API key")
    email_api_url: str = Field(
        default="https://api.resend.com/emails",
        description="Transactional email send endpoint"
    )
    email_from: str = Field(
        default="Support Desk <support@example.com>",
        description="From address for notifications"
    )
    email_message_domain: str = Field(
        default="tickets.example.com",
        description="Domain part of generated Message-ID headers"
    )
    email_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for email API calls",
        ge=0.1,
        le=60
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("slack_channels")
    @classmethod
    def normalize_slack_channels(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Channel keys are matched against lower-cased domain names."""
        return {key.strip().lower(): channel for key, channel in v.items()}

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TicketStatus(str):
    """Canonical ticket status codes (seeded into ticket_statuses)."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    AWAITING_STUDENT = "awaiting_student"
    REOPENED = "reopened"
    ESCALATED = "escalated"
    FORWARDED = "forwarded"
    RESOLVED = "resolved"


class ActorRole(str):
    """Roles an authenticated actor can carry."""
    STUDENT = "student"
    COMMITTEE = "committee"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class EscalationTarget(str):
    """Sentinels recorded in escalated_to when no rule matches."""
    SUPER_ADMIN = "super_admin"
    SUPER_ADMIN_URGENT = "super_admin_urgent"


class EscalationReason(str):
    """Escalation triggers, listed in priority order."""
    INACTIVITY = "inactivity"
    TAT_VIOLATION = "tat_violation"
    EXTENSION_LIMIT = "extension_limit"
    LIFECYCLE = "lifecycle"
    REOPEN_LIMIT = "reopen_limit"
    STALLED = "stalled_in_progress"
    MANUAL = "manual"


class AssignmentSource(str):
    """Tier of the assignment hierarchy that produced a responsible party."""
    FIELD = "field"
    SUBCATEGORY = "subcategory"
    CATEGORY = "category"
    CATEGORY_DEFAULT = "category_default"
    DOMAIN_SCOPE = "domain_scope"
    DOMAIN = "domain"
    SUPER_ADMIN = "super_admin"


class OutboxEventType(str):
    """Outbox event type tags."""
    TICKET_CREATED = "ticket.created"
    TICKET_STATUS_UPDATED = "ticket.status.updated"
    TICKET_TAT_UPDATED = "ticket.tat.updated"
    TICKET_ESCALATED = "ticket.escalated"
    TAT_REMINDER = "tat.reminder"


class NotificationChannel(str):
    """Delivery channels an escalation rule can request."""
    SLACK = "slack"
    EMAIL = "email"
    BOTH = "both"


# ========== Lists for validation ==========

VALID_STATUSES = [
    TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.AWAITING_STUDENT,
    TicketStatus.REOPENED, TicketStatus.ESCALATED, TicketStatus.FORWARDED,
    TicketStatus.RESOLVED
]
VALID_ROLES = [ActorRole.STUDENT, ActorRole.COMMITTEE, ActorRole.ADMIN, ActorRole.SUPER_ADMIN]
ADMIN_ROLES = [ActorRole.ADMIN, ActorRole.SUPER_ADMIN]
STAFF_ROLES = [ActorRole.COMMITTEE, ActorRole.ADMIN, ActorRole.SUPER_ADMIN]
REQUESTER_ACTIVE_STATUSES = [
    TicketStatus.OPEN, TicketStatus.IN_PROGRESS,
    TicketStatus.AWAITING_STUDENT, TicketStatus.REOPENED
]
ESCALATION_REASONS = [
    EscalationReason.INACTIVITY, EscalationReason.TAT_VIOLATION,
    EscalationReason.EXTENSION_LIMIT, EscalationReason.LIFECYCLE,
    EscalationReason.REOPEN_LIMIT, EscalationReason.STALLED
]
VALID_EVENT_TYPES = [
    OutboxEventType.TICKET_CREATED, OutboxEventType.TICKET_STATUS_UPDATED,
    OutboxEventType.TICKET_TAT_UPDATED, OutboxEventType.TICKET_ESCALATED,
    OutboxEventType.TAT_REMINDER
]
VALID_NOTIFICATION_CHANNELS = [
    NotificationChannel.SLACK, NotificationChannel.EMAIL, NotificationChannel.BOTH
]
LOCATION_SENSITIVE_DOMAINS = ["hostel"]
