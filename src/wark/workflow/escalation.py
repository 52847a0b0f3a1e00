"""Moves tickets to ``human`` and back, with the inbox message that explains why."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from wark.domain.errors import TicketError
from wark.domain.models import (
    ActivityAction,
    ActorType,
    ClaimStatus,
    FlagReason,
    InboxMessage,
    MessageType,
    Ticket,
    TicketStatus,
)
from wark.workflow.context import WorkflowContext
from wark.workflow.resolver import Resolver
from wark.workflow.state_machine import TransitionKind, apply_transition, can_transition

_SUMMARY_PREVIEW = 80


@dataclass(frozen=True, slots=True)
class Escalation:
    ticket: Ticket
    message: InboxMessage
    previous_status: TicketStatus
    claim_released: bool


@dataclass(frozen=True, slots=True)
class Response:
    message: InboxMessage
    ticket: Ticket
    ticket_updated: bool
    previous_status: TicketStatus


@dataclass(frozen=True, slots=True)
class Delivery:
    message: InboxMessage
    ticket: Ticket
    escalated: bool
    claim_released: bool


class InboxBridge:
    """Escalation to a human and the response path back to work.

    Claims are ended through the claim repository directly; the lease manager
    depends on this bridge, not the other way round.
    """

    def __init__(self, ctx: WorkflowContext, resolver: Resolver) -> None:
        self._ctx = ctx
        self._resolver = resolver

    def flag(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        reason: str | FlagReason,
        message: str,
        *,
        actor_type: ActorType = ActorType.AGENT,
        actor_id: str | None = None,
    ) -> Escalation:
        if not message or not message.strip():
            raise TicketError.invalid_reason(
                "a message explaining the flag is required", ticket=ticket.key
            )
        try:
            flag_reason = FlagReason.parse(reason)
        except ValueError as exc:
            raise TicketError.invalid_reason(str(exc), ticket=ticket.key) from exc
        if flag_reason is FlagReason.MAX_RETRIES_EXCEEDED:
            raise TicketError.invalid_reason(
                "max_retries_exceeded is set by the retry rule and cannot be flagged by hand",
                ticket=ticket.key,
                reason=flag_reason.value,
            )
        return self._escalate(
            conn,
            ticket,
            flag_reason,
            flag_reason.message_type,
            message.strip(),
            actor_type=actor_type,
            actor_id=actor_id,
            summary=f"Flagged for human: {flag_reason.value}",
        )

    def escalate_retries(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        *,
        previous_status: TicketStatus,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
        cause: str | None = None,
    ) -> InboxMessage:
        """Record the inbox message for a ticket the retry rule already moved to ``human``."""
        content = (
            f"{ticket.key} failed {ticket.retry_count} of {ticket.max_retries} attempts "
            "and needs a human decision."
        )
        if cause:
            content += f" Last failure: {cause}"
        inbox_message = self._ctx.inbox.add(
            ticket.id,
            MessageType.ESCALATION,
            content,
            from_agent=actor_id,
            now=self._ctx.now(),
            conn=conn,
        )
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.ESCALATED,
            f"Escalated after {ticket.retry_count} failed attempts",
            actor_type=actor_type,
            actor_id=actor_id,
            details={
                "previous_status": previous_status.value,
                "reason": FlagReason.MAX_RETRIES_EXCEEDED.value,
                "message_type": MessageType.ESCALATION.value,
                "inbox_message_id": inbox_message.id,
                "retry_count": ticket.retry_count,
                "max_retries": ticket.max_retries,
            },
        )
        self._ctx.logger.warning(
            "ticket_escalated",
            ticket_key=ticket.key,
            reason=FlagReason.MAX_RETRIES_EXCEEDED.value,
            retry_count=ticket.retry_count,
        )
        return inbox_message

    def respond(
        self,
        conn: sqlite3.Connection,
        message_id: int,
        response: str,
        *,
        actor_id: str | None = None,
    ) -> Response:
        if not response or not response.strip():
            raise TicketError.invalid_argument("response text is required", message_id=message_id)
        inbox = self._ctx.inbox
        message = inbox.get(message_id, conn=conn)
        if message is None:
            raise TicketError.not_found("inbox message", message_id)
        answered = inbox.respond(message, response.strip(), now=self._ctx.now(), conn=conn)
        if answered is None:
            raise TicketError.invalid_state(
                f"inbox message {message_id} has already been answered",
                message_id=message_id,
            )

        ticket = self._ctx.require_ticket_id(conn, message.ticket_id)
        previous = ticket.status
        updated = False
        if ticket.status is TicketStatus.HUMAN:
            decision = can_transition(ticket, TicketStatus.READY, TransitionKind.MANUAL)
            decision.raise_if_denied(ticket.key)
            after = apply_transition(ticket, decision, now=self._ctx.now())
            ticket = self._ctx.save_ticket(conn, ticket, after, operation="respond")
            ticket = self._resolver.vet(conn, ticket)
            updated = True

        preview = response.strip()
        if len(preview) > _SUMMARY_PREVIEW:
            preview = preview[: _SUMMARY_PREVIEW - 3] + "..."
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.HUMAN_RESPONDED,
            f"Human responded: {preview}",
            actor_type=ActorType.HUMAN,
            actor_id=actor_id,
            details={
                "inbox_message_id": message_id,
                "previous_status": previous.value,
                "new_status": ticket.status.value,
            },
        )
        return Response(
            message=answered, ticket=ticket, ticket_updated=updated, previous_status=previous
        )

    def send(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        message_type: str | MessageType,
        content: str,
        *,
        actor_id: str | None = None,
    ) -> Delivery:
        if not content or not content.strip():
            raise TicketError.invalid_argument("message content is required", ticket=ticket.key)
        raw = message_type.strip().lower() if isinstance(message_type, str) else message_type
        try:
            kind = MessageType(raw)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in MessageType)
            raise TicketError.invalid_argument(
                f"invalid message type {message_type!r}; expected one of: {allowed}",
                ticket=ticket.key,
            ) from exc

        if kind.requires_response and ticket.status not in (
            TicketStatus.HUMAN,
            TicketStatus.CLOSED,
        ):
            reason = FlagReason.DECISION_NEEDED if kind is MessageType.DECISION else FlagReason.OTHER
            escalation = self._escalate(
                conn,
                ticket,
                reason,
                kind,
                content.strip(),
                actor_type=ActorType.AGENT,
                actor_id=actor_id,
                summary=f"Sent {kind.value} message; waiting on human",
            )
            return Delivery(
                message=escalation.message,
                ticket=escalation.ticket,
                escalated=True,
                claim_released=escalation.claim_released,
            )

        inbox_message = self._ctx.inbox.add(
            ticket.id, kind, content.strip(), from_agent=actor_id, now=self._ctx.now(), conn=conn
        )
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.ESCALATED,
            f"Sent {kind.value} message",
            actor_type=ActorType.AGENT,
            actor_id=actor_id,
            details={"message_type": kind.value, "inbox_message_id": inbox_message.id},
        )
        return Delivery(message=inbox_message, ticket=ticket, escalated=False, claim_released=False)

    def _escalate(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        reason: FlagReason,
        message_type: MessageType,
        content: str,
        *,
        actor_type: ActorType,
        actor_id: str | None,
        summary: str,
    ) -> Escalation:
        decision = can_transition(ticket, TicketStatus.HUMAN, TransitionKind.MANUAL, reason=reason)
        decision.raise_if_denied(ticket.key)

        released = False
        claim = self._ctx.claims.get_active(ticket.id, conn=conn)
        if claim is not None:
            released = (
                self._ctx.claims.finish(
                    claim, ClaimStatus.RELEASED, now=self._ctx.now(), conn=conn
                )
                is not None
            )

        after = apply_transition(ticket, decision, now=self._ctx.now())
        saved = self._ctx.save_ticket(conn, ticket, after, operation="escalate")
        inbox_message = self._ctx.inbox.add(
            ticket.id,
            message_type,
            content,
            from_agent=actor_id,
            now=self._ctx.now(),
            conn=conn,
        )
        self._ctx.activity.record(
            conn,
            saved,
            ActivityAction.ESCALATED,
            summary,
            actor_type=actor_type,
            actor_id=actor_id,
            details={
                "previous_status": ticket.status.value,
                "reason": reason.value,
                "message_type": message_type.value,
                "inbox_message_id": inbox_message.id,
                "claim_released": released,
            },
        )
        self._ctx.logger.warning(
            "ticket_escalated",
            ticket_key=ticket.key,
            reason=reason.value,
            previous_status=ticket.status.value,
        )
        return Escalation(
            ticket=saved,
            message=inbox_message,
            previous_status=ticket.status,
            claim_released=released,
        )


__all__ = ["Delivery", "Escalation", "InboxBridge", "Response"]
