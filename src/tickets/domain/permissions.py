"""
Transition permissions.

A single capability check used by the status state machine.
scope_membership means "the actor belongs to this ticket's scope": the
ticket creator for a student, a tagged committee for a committee reviewer.
Administrators ignore it.
"""

from src.config import ActorRole, ADMIN_ROLES, REQUESTER_ACTIVE_STATUSES, TicketStatus
from src.tickets.domain.status import StatusDefinition


def can_transition(
    role: str,
    scope_membership: bool,
    current_status: StatusDefinition,
    target_status: StatusDefinition,
) -> bool:
    """Return True when an actor with ``role`` may move current -> target."""
    if not target_status.is_active:
        return False

    if role in ADMIN_ROLES:
        return True

    if role == ActorRole.COMMITTEE:
        return scope_membership

    if role == ActorRole.STUDENT:
        if not scope_membership:
            return False
        # Self-close
        if current_status.code in REQUESTER_ACTIVE_STATUSES and target_status.is_final:
            return True
        # Reopen
        if current_status.is_final and target_status.code == TicketStatus.REOPENED:
            return True
        return False

    return False
