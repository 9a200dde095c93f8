"""
Outbox Event Handlers
=====================

One handler per outbox event type. Handlers may run more than once for the
same row, so each one tolerates a duplicate chat message or email. Root chat
posts and first emails record their references on the ticket; later events
reply in those threads.

A disabled sink is a successful no-op. A failing sink raises
DeliveryException, which the dispatcher records on the outbox row.
"""

import html
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional

from src.config import EscalationReason, EscalationTarget, NotificationChannel, OutboxEventType
from src.core import DeliveryException
from src.outbox.application.dispatcher import OutboxHandler
from src.outbox.application.interfaces import IChatSink, IEmailSink, INotificationDirectory
from src.outbox.domain import OutboxEvent, TicketNotificationContext
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _label(status: Optional[str]) -> str:
    return (status or "unknown").replace("_", " ").title()


def _escalation_reason_text(payload: Dict[str, Any]) -> str:
    reason = payload.get("reason")
    detail = payload.get("detail") or {}
    if reason == EscalationReason.INACTIVITY:
        return f"No activity for {detail.get('days_inactive', '?')} days"
    if reason == EscalationReason.TAT_VIOLATION:
        return f"TAT violated, {detail.get('hours_overdue', '?')} hours overdue"
    if reason == EscalationReason.EXTENSION_LIMIT:
        return f"TAT extended {detail.get('extension_count', '?')} times"
    if reason == EscalationReason.LIFECYCLE:
        return f"Open for {detail.get('age_days', '?')} days"
    if reason == EscalationReason.REOPEN_LIMIT:
        return f"Reopened {detail.get('reopen_count', '?')} times"
    if reason == EscalationReason.STALLED:
        return f"In progress without activity for {detail.get('hours_stalled', '?')} hours"
    if reason == EscalationReason.MANUAL:
        return f"Escalated manually by {payload.get('escalated_by', 'unknown')}"
    return str(reason)


class NotificationHandlers:
    """
    Chat and email notifications for ticket events.

    Args:
        directory: Ticket/staff lookups and thread reference storage
        chat: Chat sink
        email: Email sink
        channel_for: Maps a ticket domain to a chat channel
    """

    def __init__(
        self,
        directory: INotificationDirectory,
        chat: IChatSink,
        email: IEmailSink,
        channel_for: Callable[[Optional[str]], str],
    ):
        self._directory = directory
        self._chat = chat
        self._email = email
        self._channel_for = channel_for

    def registry(self) -> Mapping[str, OutboxHandler]:
        return {
            OutboxEventType.TICKET_CREATED: self.on_ticket_created,
            OutboxEventType.TICKET_STATUS_UPDATED: self.on_status_updated,
            OutboxEventType.TICKET_TAT_UPDATED: self.on_tat_updated,
            OutboxEventType.TICKET_ESCALATED: self.on_escalated,
            OutboxEventType.TAT_REMINDER: self.on_tat_reminder,
        }

    # ========== Handlers ==========

    async def on_ticket_created(self, event: OutboxEvent) -> None:
        ctx = await self._context(event)
        description = ctx.description[:300]
        lines = [f"🆕 *New ticket #{ctx.ticket_id}* ({ctx.category_name or 'Uncategorized'})", description]
        if ctx.location:
            lines.append(f"Location: {ctx.location}")
        if ctx.assignee_name or ctx.assignee_id:
            lines.append(f"Assigned to: {ctx.assignee_name or ctx.assignee_id}")
        await self._post_to_thread(ctx, "\n".join(lines))

        await self._send_email(
            ctx,
            ctx.creator_email,
            f"Ticket #{ctx.ticket_id} received",
            f"<p>Your ticket <b>#{ctx.ticket_id}</b> has been created.</p>"
            f"<p>{html.escape(description)}</p>",
        )

    async def on_status_updated(self, event: OutboxEvent) -> None:
        ctx = await self._context(event)
        payload = event.payload
        old, new = _label(payload.get("old_status")), _label(payload.get("new_status"))
        await self._post_to_thread(
            ctx,
            f"🔄 Ticket #{ctx.ticket_id}: *{old}* → *{new}* (by {payload.get('updated_by', 'system')})",
        )
        await self._send_email(
            ctx,
            ctx.creator_email,
            f"Ticket #{ctx.ticket_id} is now {new}",
            f"<p>The status of ticket <b>#{ctx.ticket_id}</b> changed from "
            f"{html.escape(old)} to <b>{html.escape(new)}</b>.</p>",
        )

    async def on_tat_updated(self, event: OutboxEvent) -> None:
        ctx = await self._context(event)
        payload = event.payload
        kind = payload.get("kind")
        tat, due = payload.get("tat"), payload.get("tat_date")
        if kind == "extended":
            header = "⏱️ *TAT Extended*"
            body = f"{payload.get('previous_tat')} → {tat} (extension #{payload.get('extension_count')})"
        elif kind == "set_in_progress":
            header = "✅ *TAT Set & In Progress*"
            body = f"TAT: {tat}"
        else:
            header = "⏱️ *TAT Updated*"
            body = f"TAT: {tat}"
        await self._post_to_thread(ctx, f"{header} for ticket #{ctx.ticket_id}\n{body}\nDue: {due}")
        await self._send_email(
            ctx,
            ctx.creator_email,
            f"Ticket #{ctx.ticket_id}: expected resolution {tat}",
            f"<p>{html.escape(body)}</p><p>Expected by: {html.escape(str(due))}</p>",
        )

    async def on_escalated(self, event: OutboxEvent) -> None:
        ctx = await self._context(event)
        payload = event.payload
        level = payload.get("escalation_level", ctx.escalation_level)
        reason_text = _escalation_reason_text(payload)
        escalated_to = payload.get("escalated_to")
        prefix = "ESCALATION" if payload.get("reason") == EscalationReason.MANUAL else "AUTO-ESCALATION"
        urgent = " (URGENT)" if escalated_to == EscalationTarget.SUPER_ADMIN_URGENT else ""
        text = (
            f"🚨 *{prefix} #{level}*{urgent}\n"
            f"Ticket #{ctx.ticket_id} escalated: {reason_text}\n"
            f"Assigned to: {payload.get('assigned_to') or 'unassigned'}"
        )

        channel = payload.get("notify_channel") or NotificationChannel.BOTH
        if channel in (NotificationChannel.SLACK, NotificationChannel.BOTH):
            await self._post_to_thread(ctx, text)
        if channel in (NotificationChannel.EMAIL, NotificationChannel.BOTH):
            assignee = payload.get("assigned_to")
            to = await self._directory.get_staff_email(assignee) if assignee else None
            await self._send_email(
                ctx,
                to,
                f"Escalation #{level}: ticket #{ctx.ticket_id}",
                f"<p>Ticket <b>#{ctx.ticket_id}</b> has been escalated to you.</p>"
                f"<p>{html.escape(reason_text)}</p>",
            )

    async def on_tat_reminder(self, event: OutboxEvent) -> None:
        payload = event.payload
        tickets: List[Dict[str, Any]] = payload.get("tickets") or []
        if not tickets:
            return

        assignee = payload.get("assignee_id")
        to = await self._directory.get_staff_email(assignee) if assignee else None
        if to and self._email.enabled:
            rows = "".join(
                f"<li>#{t['ticket_id']} {html.escape(str(t.get('description', ''))[:120])} "
                f"(due {html.escape(str(t.get('tat_date')))})</li>"
                for t in tickets
            )
            await self._email.send(
                to,
                f"⏰ TAT Reminder: {len(tickets)} ticket(s) due today",
                f"<p>The following tickets are due today:</p><ul>{rows}</ul>",
            )

        if not self._chat.enabled:
            return
        by_channel: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for ticket in tickets:
            by_channel[self._channel_for(ticket.get("domain"))].append(ticket)
        for channel, channel_tickets in by_channel.items():
            lines = [f"⏰ *TAT due today* for {assignee or 'unassigned'}"]
            lines.extend(f"• #{t['ticket_id']} due {t.get('tat_date')}" for t in channel_tickets)
            await self._chat.post(channel, "\n".join(lines))

    # ========== Helpers ==========

    async def _context(self, event: OutboxEvent) -> TicketNotificationContext:
        ticket_id = event.payload.get("ticket_id")
        if ticket_id is None:
            raise DeliveryException("outbox", f"Event {event.id} has no ticket_id")
        ctx = await self._directory.get_ticket_context(int(ticket_id))
        if ctx is None:
            raise DeliveryException("outbox", f"Ticket {ticket_id} not found for event {event.id}")
        return ctx

    async def _post_to_thread(self, ctx: TicketNotificationContext, text: str) -> None:
        if not self._chat.enabled:
            return
        channel = ctx.slack_channel or self._channel_for(ctx.domain)
        if ctx.slack_thread_ts:
            await self._chat.reply(channel, ctx.slack_thread_ts, text)
            return
        message_ref = await self._chat.post(channel, text)
        if message_ref:
            await self._directory.save_slack_thread(ctx.ticket_id, channel, message_ref)

    async def _send_email(
        self,
        ctx: TicketNotificationContext,
        to: Optional[str],
        subject: str,
        body: str,
    ) -> None:
        if not self._email.enabled:
            return
        if not to:
            logger.debug("No email recipient", extra={"ticket_id": ctx.ticket_id, "subject": subject})
            return
        message_id = await self._email.send(
            to,
            subject,
            body,
            in_reply_to=ctx.email_thread_id,
            references=ctx.email_thread_id,
        )
        if message_id and not ctx.email_thread_id:
            await self._directory.save_email_thread(ctx.ticket_id, message_id)
