"""
Ticket Lifecycle Module
=======================

Bounded Context for ticket status, turnaround time and escalation.

Responsibilities:
- Database-driven status registry and role-based transitions
- TAT deadlines with pause while awaiting the requester
- Responsible-party resolution at creation
- Periodic and manual escalation with cooldown
- Daily TAT reminders
- HTTP and cron endpoints
"""

__version__ = "1.0.0"
