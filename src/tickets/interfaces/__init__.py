"""
Ticket Interfaces Layer
=======================

FastAPI routers for the ticket lifecycle and the cron-triggered jobs.
"""

from src.tickets.interfaces.controllers import router as ticket_router
from src.tickets.interfaces.cron import router as cron_router

__all__ = ["ticket_router", "cron_router"]
