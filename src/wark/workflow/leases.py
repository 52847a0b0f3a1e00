"""
wark — claim/lease manager

File: src/wark/workflow/leases.py

Purpose
- Grant, extend, release, and expire time-boxed exclusive claims on tickets.

Functional requirements
- A claim on a ready ticket moves it to working; a claim on a review ticket is
  a review claim and leaves the status alone.
- The partial unique index on active claims is the mutex; the pre-check only
  exists to produce a better error.
- Release, reject, and expiry share one retry rule: the retry count goes up,
  and the ticket returns to ready until ``max_retries`` is reached, at which
  point it is escalated to a human.
- Expiry is idempotent: a claim that already left ``active`` is skipped.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from wark.domain import keys as domain_keys
from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ActivityAction,
    ActorType,
    Claim,
    ClaimStatus,
    InboxMessage,
    Ticket,
    TicketStatus,
    to_iso8601z,
)
from wark.workflow.context import WorkflowContext
from wark.workflow.escalation import InboxBridge
from wark.workflow.resolver import Resolver
from wark.workflow.state_machine import (
    TransitionKind,
    apply_transition,
    can_transition,
    failure_decision,
)

_CLAIM_STATUS_FOR_KIND: dict[TransitionKind, ClaimStatus] = {
    TransitionKind.MANUAL: ClaimStatus.RELEASED,
    TransitionKind.EXPIRE: ClaimStatus.EXPIRED,
    TransitionKind.AUTO: ClaimStatus.RELEASED,
}


@dataclass(frozen=True, slots=True)
class Grant:
    ticket: Ticket
    claim: Claim
    review_claim: bool = False


@dataclass(frozen=True, slots=True)
class Failure:
    """Outcome of the retry rule."""

    ticket: Ticket
    claim: Claim | None
    escalated: bool
    inbox_message: InboxMessage | None = None


@dataclass(frozen=True, slots=True)
class ExpiredClaim:
    ticket_key: str
    claim_id: str
    worker_id: str
    new_status: TicketStatus | None
    retry_count: int
    max_retries: int
    escalated: bool = False
    skipped: bool = False
    note: str | None = None


@dataclass(frozen=True, slots=True)
class ExpireResult:
    processed: int = 0
    expired: int = 0
    escalated: int = 0
    skipped: int = 0
    items: tuple[ExpiredClaim, ...] = field(default_factory=tuple)
    dry_run: bool = False


class LeaseManager:
    def __init__(self, ctx: WorkflowContext, resolver: Resolver, bridge: InboxBridge) -> None:
        self._ctx = ctx
        self._resolver = resolver
        self._bridge = bridge

    def grant(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        worker_id: str,
        duration_minutes: int | None = None,
    ) -> Grant:
        worker = self._require_worker(worker_id)
        duration = self._duration(duration_minutes)

        # A working ticket always holds a claim, so a losing racer sees ALREADY_CLAIMED.
        self._ensure_unclaimed(conn, ticket)
        if ticket.status is TicketStatus.BLOCKED:
            self._resolver.raise_unresolved(conn, ticket)
        if ticket.status not in (TicketStatus.READY, TicketStatus.REVIEW):
            raise TicketError.invalid_state(
                f"{ticket.key} cannot be claimed while {ticket.status.value}",
                ticket=ticket.key,
                current_status=ticket.status.value,
            )
        if ticket.status is TicketStatus.READY:
            self._resolver.require_resolved(conn, ticket)

        review_claim = ticket.status is TicketStatus.REVIEW
        claim = self._insert_claim(conn, ticket, worker, duration)
        saved = ticket
        if not review_claim:
            decision = can_transition(ticket, TicketStatus.WORKING, TransitionKind.MANUAL)
            decision.raise_if_denied(ticket.key)
            after = self._with_branch(apply_transition(ticket, decision, now=claim.claimed_at))
            saved = self._ctx.save_ticket(conn, ticket, after, operation="claim")

        label = "Review claimed" if review_claim else "Claimed"
        self._record_claim(
            conn,
            saved,
            claim,
            duration,
            summary=f"{label} by {worker} for {duration}m",
            review_claim=review_claim,
        )
        return Grant(ticket=saved, claim=claim, review_claim=review_claim)

    def resume(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        worker_id: str,
        duration_minutes: int | None = None,
    ) -> Grant:
        """Pick a ``human`` ticket back up: new claim, retry count reset, flag cleared."""
        worker = self._require_worker(worker_id)
        duration = self._duration(duration_minutes)
        decision = can_transition(ticket, TicketStatus.WORKING, TransitionKind.MANUAL)
        decision.raise_if_denied(ticket.key)
        self._ensure_unclaimed(conn, ticket)

        claim = self._insert_claim(conn, ticket, worker, duration)
        after = self._with_branch(apply_transition(ticket, decision, now=claim.claimed_at))
        saved = self._ctx.save_ticket(conn, ticket, after, operation="resume")
        self._record_claim(
            conn,
            saved,
            claim,
            duration,
            summary=f"Resumed by {worker} for {duration}m",
            review_claim=False,
            extra={
                "resumed_from": ticket.human_flag_reason.value
                if ticket.human_flag_reason
                else None
            },
        )
        return Grant(ticket=saved, claim=claim)

    def extend(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        duration_minutes: int,
        *,
        actor_id: str | None = None,
    ) -> Grant:
        duration = self._duration(duration_minutes)
        claim = self._ctx.claims.get_active(ticket.id, conn=conn)
        if claim is None:
            raise TicketError.invalid_state(
                f"{ticket.key} has no active claim to extend", ticket=ticket.key
            )
        now = self._ctx.now()
        if claim.is_expired(now):
            raise TicketError.invalid_state(
                f"claim {claim.claim_id} on {ticket.key} has already expired",
                ticket=ticket.key,
                claim_id=claim.claim_id,
                expires_at=to_iso8601z(claim.expires_at),
            )
        new_expiry = claim.expires_at + timedelta(minutes=duration)
        limit = now + timedelta(minutes=self._ctx.policy.max_claim_minutes)
        if new_expiry > limit:
            raise TicketError.invalid_argument(
                f"a lease may not run more than {self._ctx.policy.max_claim_minutes} "
                "minutes past now",
                ticket=ticket.key,
                requested_expires_at=to_iso8601z(new_expiry),
            )
        extended = self._ctx.claims.extend(claim, new_expiry, conn=conn)
        if extended is None:
            raise TicketError.invalid_state(
                f"claim {claim.claim_id} is no longer active", ticket=ticket.key
            )
        self._ctx.activity.field_changed(
            conn,
            ticket,
            "expires_at",
            to_iso8601z(claim.expires_at),
            to_iso8601z(new_expiry),
            actor_type=ActorType.AGENT,
            actor_id=actor_id or claim.worker_id,
        )
        return Grant(ticket=ticket, claim=extended, review_claim=ticket.status is TicketStatus.REVIEW)

    def release(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        reason: str | None = None,
        *,
        actor_type: ActorType = ActorType.AGENT,
        actor_id: str | None = None,
    ) -> Failure:
        if ticket.status is not TicketStatus.WORKING:
            raise TicketError.invalid_state(
                f"only working tickets can be released; {ticket.key} is {ticket.status.value}",
                ticket=ticket.key,
                current_status=ticket.status.value,
            )
        claim = self._ctx.claims.get_active(ticket.id, conn=conn)
        if claim is None:
            raise TicketError.invalid_state(
                f"{ticket.key} has no active claim to release", ticket=ticket.key
            )
        summary = f"Released by {claim.worker_id}"
        if reason:
            summary += f": {reason}"
        return self.fail_attempt(
            conn,
            ticket,
            TransitionKind.MANUAL,
            reason=reason,
            action=ActivityAction.RELEASED,
            summary=summary,
            actor_type=actor_type,
            actor_id=actor_id or claim.worker_id,
            details={"worker_id": claim.worker_id, "claim_id": claim.claim_id, "reason": reason},
        )

    def fail_attempt(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        kind: TransitionKind,
        *,
        reason: str | None,
        action: ActivityAction,
        summary: str,
        actor_type: ActorType,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Failure:
        """Apply the retry rule shared by release, reject, and expiry."""
        decision = failure_decision(ticket, kind, reason=reason)
        decision.raise_if_denied(ticket.key)

        now = self._ctx.now()
        finished: Claim | None = None
        active = self._ctx.claims.get_active(ticket.id, conn=conn)
        if active is not None:
            finished = self._ctx.claims.finish(
                active, _CLAIM_STATUS_FOR_KIND[kind], now=now, conn=conn
            )

        after = apply_transition(ticket, decision, now=now)
        saved = self._ctx.save_ticket(conn, ticket, after, operation=action.value)
        escalated = saved.status is TicketStatus.HUMAN
        payload = dict(details or {})
        payload.update(
            retry_count=saved.retry_count,
            max_retries=saved.max_retries,
            escalated=escalated,
        )
        self._ctx.activity.record(
            conn, saved, action, summary, actor_type=actor_type, actor_id=actor_id, details=payload
        )

        inbox_message: InboxMessage | None = None
        if escalated:
            inbox_message = self._bridge.escalate_retries(
                conn,
                saved,
                previous_status=ticket.status,
                actor_type=ActorType.SYSTEM,
                cause=reason,
            )
        else:
            saved = self._resolver.vet(conn, saved)
        return Failure(ticket=saved, claim=finished, escalated=escalated, inbox_message=inbox_message)

    def expire_due(
        self,
        conn: sqlite3.Connection,
        now: datetime | None = None,
        *,
        dry_run: bool = False,
    ) -> ExpireResult:
        moment = now or self._ctx.now()
        items = [
            self._expire_claim(conn, claim, moment, dry_run=dry_run)
            for claim in self._ctx.claims.list_expired(moment, conn=conn)
        ]
        result = ExpireResult(
            processed=len(items),
            expired=sum(1 for item in items if not item.skipped),
            escalated=sum(1 for item in items if item.escalated),
            skipped=sum(1 for item in items if item.skipped),
            items=tuple(items),
            dry_run=dry_run,
        )
        self._ctx.logger.info(
            "claims_expired",
            processed=result.processed,
            expired=result.expired,
            escalated=result.escalated,
            skipped=result.skipped,
            dry_run=dry_run,
        )
        return result

    def expire_ticket(
        self, conn: sqlite3.Connection, ticket: Ticket, *, dry_run: bool = False
    ) -> ExpiredClaim:
        """Expire the active claim on one ticket, whether or not its lease ran out."""
        claim = self._ctx.claims.get_active(ticket.id, conn=conn)
        if claim is None:
            raise TicketError.invalid_state(
                f"{ticket.key} has no active claim to expire", ticket=ticket.key
            )
        return self._expire_claim(conn, claim, self._ctx.now(), dry_run=dry_run)

    def _expire_claim(
        self, conn: sqlite3.Connection, claim: Claim, now: datetime, *, dry_run: bool
    ) -> ExpiredClaim:
        ticket = self._ctx.require_ticket_id(conn, claim.ticket_id)
        base = {
            "ticket_key": ticket.key,
            "claim_id": claim.claim_id,
            "worker_id": claim.worker_id,
            "max_retries": ticket.max_retries,
        }
        if ticket.status is not TicketStatus.WORKING:
            # A lapsed review claim only frees the review slot.
            if not dry_run:
                self._ctx.claims.finish(claim, ClaimStatus.EXPIRED, now=now, conn=conn)
                self._ctx.activity.record(
                    conn,
                    ticket,
                    ActivityAction.EXPIRED,
                    f"Review claim by {claim.worker_id} expired",
                    actor_type=ActorType.SYSTEM,
                    details={"worker_id": claim.worker_id, "claim_id": claim.claim_id},
                )
            return ExpiredClaim(
                **base,
                new_status=None,
                retry_count=ticket.retry_count,
                skipped=True,
                note=f"ticket is {ticket.status.value}, not working",
            )

        retry_count = ticket.retry_count + 1
        would_escalate = retry_count >= ticket.max_retries
        if dry_run:
            return ExpiredClaim(
                **base,
                new_status=TicketStatus.HUMAN if would_escalate else TicketStatus.READY,
                retry_count=retry_count,
                escalated=would_escalate,
            )

        if would_escalate:
            summary = (
                f"Claim expired; escalated to human (retry {retry_count}/{ticket.max_retries})"
            )
        else:
            summary = "Claim expired"
        outcome = self.fail_attempt(
            conn,
            ticket,
            TransitionKind.EXPIRE,
            reason=f"claim held by {claim.worker_id} expired",
            action=ActivityAction.EXPIRED,
            summary=summary,
            actor_type=ActorType.SYSTEM,
            details={"worker_id": claim.worker_id, "claim_id": claim.claim_id},
        )
        return ExpiredClaim(
            **base,
            new_status=outcome.ticket.status,
            retry_count=outcome.ticket.retry_count,
            escalated=outcome.escalated,
        )

    # Helpers.

    def _insert_claim(
        self, conn: sqlite3.Connection, ticket: Ticket, worker: str, duration: int
    ) -> Claim:
        now = self._ctx.now()
        claim = self._ctx.claims.add(
            ticket,
            worker,
            claimed_at=now,
            expires_at=now + timedelta(minutes=duration),
            conn=conn,
        )
        self._ctx.logger.info(
            "claim_granted",
            ticket_key=ticket.key,
            worker_id=worker,
            claim_id=claim.claim_id,
            duration_mins=duration,
        )
        return claim

    def _record_claim(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        claim: Claim,
        duration: int,
        *,
        summary: str,
        review_claim: bool,
        extra: dict[str, Any] | None = None,
    ) -> None:
        details: dict[str, Any] = {
            "worker_id": claim.worker_id,
            "claim_id": claim.claim_id,
            "duration_mins": duration,
            "expires_at": to_iso8601z(claim.expires_at),
            "review_claim": review_claim,
        }
        details.update(extra or {})
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.CLAIMED,
            summary,
            actor_type=ActorType.AGENT,
            actor_id=claim.worker_id,
            details=details,
        )

    def _ensure_unclaimed(self, conn: sqlite3.Connection, ticket: Ticket) -> None:
        holder = self._ctx.claims.get_active(ticket.id, conn=conn)
        if holder is None:
            return
        raise TicketError(
            ErrorCode.ALREADY_CLAIMED,
            f"{ticket.key} is already claimed by {holder.worker_id}",
            {
                "ticket": ticket.key,
                "worker_id": holder.worker_id,
                "expires_at": to_iso8601z(holder.expires_at),
            },
        )

    def _duration(self, duration_minutes: int | None) -> int:
        policy = self._ctx.policy
        duration = policy.default_claim_minutes if duration_minutes is None else duration_minutes
        if isinstance(duration, bool) or not isinstance(duration, int):
            raise TicketError.invalid_argument("claim duration must be an integer number of minutes")
        if duration < 1 or duration > policy.max_claim_minutes:
            raise TicketError.invalid_argument(
                f"claim duration must be between 1 and {policy.max_claim_minutes} minutes",
                duration_minutes=duration,
            )
        return duration

    @staticmethod
    def _require_worker(worker_id: str) -> str:
        worker = (worker_id or "").strip()
        if not worker:
            raise TicketError.invalid_argument("worker id is required")
        return worker

    @staticmethod
    def _with_branch(ticket: Ticket) -> Ticket:
        if ticket.branch_name:
            return ticket
        return replace(ticket, branch_name=domain_keys.branch_name(ticket.key, ticket.title))


__all__ = ["ExpireResult", "ExpiredClaim", "Failure", "Grant", "LeaseManager"]
