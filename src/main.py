"""
Ticket Lifecycle Engine - Main Application
==========================================

Support-ticket lifecycle and escalation service.

Modules:
- Tickets: status state machine, TAT, assignment and escalation
- Outbox: transactional notification delivery to Slack and email

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, notification sinks, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
)
from src.outbox.infrastructure import outbox_repository_scope

# Ticket Module
from src.tickets.application import EscalationSweep, TATReminderService
from src.tickets.infrastructure import (
    EscalationConfigManager,
    LifecycleScheduler,
    seed_ticket_statuses,
    unit_of_work_scope,
)
from src.tickets.interfaces import cron_router, ticket_router
from src.tickets.interfaces.dependencies import build_dispatcher

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import get_context_logger, get_logger, log_latency, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database, create tables and seed built-in statuses
    3. Load escalation configuration and watch the file
    4. Build notification sinks and the outbox dispatcher
    5. Start background jobs (sweep, drain, reminders)

    SHUTDOWN:
    1. Stop background jobs
    2. Stop config watcher
    3. Close notification sinks
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Ticket Lifecycle Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # If the database is not reachable the server still starts;
    # database-dependent endpoints fail until it is.
    try:
        await create_tables()
        async with get_session_context() as session:
            await seed_ticket_statuses(session)
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading escalation configuration")
    config_manager = EscalationConfigManager(settings)
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    dispatcher, chat, email = build_dispatcher(settings)

    app.state.settings = settings
    app.state.escalation_config = config_manager
    app.state.dispatcher = dispatcher
    app.state.sinks = [chat, email]

    scheduler = None
    if settings.enable_background_jobs:
        async def escalation_sweep_job():
            job_logger = get_context_logger(__name__, job="escalation_sweep")
            with log_latency(job_logger, "escalation_sweep"):
                sweep = EscalationSweep(
                    unit_of_work_scope(get_session_context),
                    config_manager.config,
                    super_admin_id=settings.super_admin_id,
                )
                await sweep.run()

        async def outbox_drain_job():
            await dispatcher.drain()

        async def tat_reminder_job():
            job_logger = get_context_logger(__name__, job="tat_reminders")
            with log_latency(job_logger, "tat_reminders"):
                await TATReminderService(
                    unit_of_work_scope(get_session_context),
                    tz=ZoneInfo(settings.business_timezone),
                ).run()

        scheduler = LifecycleScheduler(settings)
        await scheduler.start(escalation_sweep_job, outbox_drain_job, tat_reminder_job)
    else:
        logger.info("Background jobs disabled, expecting /cron calls")
    app.state.scheduler = scheduler

    logger.info("Ticket Lifecycle Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Ticket Lifecycle Engine")

    if scheduler:
        await scheduler.stop()

    config_manager.stop_watching()

    for sink in app.state.sinks:
        await sink.close()

    await close_database()

    logger.info("Ticket Lifecycle Engine shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Ticket Lifecycle Engine API",
    description="""
    ## Support Ticket Lifecycle and Escalation

    ### 🎫 Tickets

    - `POST /tickets` - Create a ticket and resolve its responsible party
    - `POST /tickets/{id}/status` - Change status (role-based rules)
    - `POST /tickets/{id}/tat` - Set or extend the turnaround time
    - `GET /tickets/{id}/tat` - Deadline, pause and breach details
    - `POST /tickets/{id}/escalate` - Manual escalation

    ### ⏰ Cron

    - `/cron/auto-escalate` - Escalation sweep
    - `/cron/process-outbox` - Deliver pending notifications
    - `/cron/tat-reminders` - Daily TAT due reminders
    - `GET /cron/outbox/failed` - Parked notification events

    Cron endpoints require `Authorization: Bearer <CRON_SECRET>`.

    ### 🔧 Escalation triggers

    | Trigger | Default |
    |---------|---------|
    | No update | 7 days |
    | TAT passed | any overdue |
    | TAT extensions | 3 |
    | Ticket age | 30 days |
    | Reopens | 3 |

    Escalations of the same ticket are at least 2 days apart.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(ticket_router)
app.include_router(cron_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "escalation_config": "loaded",
                        "scheduler": "running",
                        "outbox_pending": 0
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - Escalation configuration status
    - Scheduler state
    - Outbox backlog
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    checks = {
        "database": "connected",
        "escalation_config": "loaded" if getattr(request.app.state, "escalation_config", None) else "defaults",
        "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "outbox_pending": None,
    }

    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
        async with outbox_repository_scope(get_session_context)() as repo:
            checks["outbox_pending"] = await repo.count_pending()
    except Exception as e:
        checks["database"] = f"error: {e}"

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Ticket Lifecycle Engine",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "tickets": {
                "prefix": "/tickets",
                "endpoints": [
                    "POST /tickets - Create ticket",
                    "POST /tickets/{id}/status - Change status",
                    "POST /tickets/{id}/tat - Set or extend TAT",
                    "GET /tickets/{id}/tat - Get TAT details",
                    "POST /tickets/{id}/escalate - Escalate ticket"
                ]
            },
            "cron": {
                "prefix": "/cron",
                "endpoints": [
                    "/cron/auto-escalate - Escalation sweep",
                    "/cron/process-outbox - Outbox drain",
                    "/cron/tat-reminders - TAT reminders",
                    "GET /cron/outbox/failed - Parked outbox events"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
