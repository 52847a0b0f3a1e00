"""
wark — ticket service

File: src/wark/service/tickets.py

Purpose
- The only entry point callers use to change tickets. Each public method is
  one store transaction: read, validate through the state machine, write the
  ticket, claim, dependency fallout, and activity rows, then commit.

Functional requirements
- Every method returns a frozen result object or raises ``TicketError``.
- Dependency resolution runs inside the same transaction as the change that
  triggered it.
- Read-only helpers (show, list, history, inbox, integrity) never write.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Final

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ActivityAction,
    ActivityEntry,
    ActorType,
    Claim,
    ClaimStatus,
    Complexity,
    FieldChange,
    FlagReason,
    InboxMessage,
    JSONValue,
    MessageType,
    Priority,
    Resolution,
    Ticket,
    TicketStatus,
    TicketTask,
    to_iso8601z,
)
from wark.planning.dependency_graph import CycleError
from wark.service.base import ServiceBase, parse_choice, require_text
from wark.workflow.leases import ExpireResult
from wark.workflow.resolver import ResolutionResult, build_graph
from wark.workflow.state_machine import TransitionKind, apply_transition, can_transition

_EDITABLE_FIELDS: Final[frozenset[str]] = frozenset(
    {"title", "description", "priority", "complexity", "max_retries", "milestone", "aggregate_only"}
)
_GATED: Final[frozenset[TicketStatus]] = frozenset({TicketStatus.BLOCKED, TicketStatus.READY})
_NEXT_CANDIDATES: Final[int] = 100


# Results.


@dataclass(frozen=True, slots=True)
class CreateResult:
    ticket: Ticket
    blocked_by: tuple[str, ...] = ()
    tasks: tuple[TicketTask, ...] = ()


@dataclass(frozen=True, slots=True)
class DependencyResult:
    ticket: Ticket
    status_changed: bool


@dataclass(frozen=True, slots=True)
class VetResult:
    ticket: Ticket
    changed: bool
    blocked_by: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ClaimResult:
    ticket: Ticket
    claim: Claim
    branch: str | None
    next_task: TicketTask | None = None
    tasks_total: int = 0
    review_claim: bool = False


@dataclass(frozen=True, slots=True)
class ReleaseResult:
    ticket: Ticket
    claim: Claim | None
    escalated: bool
    inbox_message: InboxMessage | None = None


@dataclass(frozen=True, slots=True)
class CompleteResult:
    ticket: Ticket
    auto_accepted: bool
    resolution: ResolutionResult = field(default_factory=ResolutionResult)


@dataclass(frozen=True, slots=True)
class AcceptResult:
    ticket: Ticket
    resolution: ResolutionResult = field(default_factory=ResolutionResult)


@dataclass(frozen=True, slots=True)
class RejectResult:
    ticket: Ticket
    escalated: bool
    inbox_message: InboxMessage | None = None


@dataclass(frozen=True, slots=True)
class FlagResult:
    ticket: Ticket
    inbox_message: InboxMessage
    previous_status: TicketStatus
    claim_released: bool = False


@dataclass(frozen=True, slots=True)
class CloseResult:
    ticket: Ticket
    resolution: ResolutionResult = field(default_factory=ResolutionResult)
    claim_released: bool = False


@dataclass(frozen=True, slots=True)
class ReopenResult:
    ticket: Ticket
    resolution: ResolutionResult = field(default_factory=ResolutionResult)


@dataclass(frozen=True, slots=True)
class RespondResult:
    message: InboxMessage
    ticket: Ticket
    ticket_updated: bool
    previous_status: TicketStatus


@dataclass(frozen=True, slots=True)
class SendResult:
    message: InboxMessage
    ticket: Ticket
    escalated: bool
    claim_released: bool


@dataclass(frozen=True, slots=True)
class UpdateResult:
    ticket: Ticket
    changes: tuple[FieldChange, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskResult:
    ticket: Ticket
    task: TicketTask
    tasks_total: int
    tasks_remaining: int
    changed: bool = True


@dataclass(frozen=True, slots=True)
class TaskList:
    ticket: Ticket
    tasks: tuple[TicketTask, ...]

    @property
    def next_task(self) -> TicketTask | None:
        return next((task for task in self.tasks if not task.complete), None)

    @property
    def complete_count(self) -> int:
        return sum(1 for task in self.tasks if task.complete)


@dataclass(frozen=True, slots=True)
class DecomposeResult:
    parent: Ticket
    children: tuple[Ticket, ...]


@dataclass(frozen=True, slots=True)
class TicketDetails:
    """Everything ``ticket show`` displays, read in one snapshot."""

    ticket: Ticket
    dependencies: tuple[Ticket, ...] = ()
    dependents: tuple[Ticket, ...] = ()
    children: tuple[Ticket, ...] = ()
    tasks: tuple[TicketTask, ...] = ()
    active_claim: Claim | None = None
    pending_messages: tuple[InboxMessage, ...] = ()
    milestone_key: str | None = None
    parent_key: str | None = None

    @property
    def blocked_by(self) -> tuple[str, ...]:
        return tuple(dep.key for dep in self.dependencies if not dep.is_terminal)


@dataclass(frozen=True, slots=True)
class ClaimView:
    """A claim joined with its ticket, as seen at ``as_of``."""

    claim: Claim
    ticket_key: str
    ticket_title: str
    as_of: datetime

    @property
    def expired(self) -> bool:
        return self.claim.is_active and self.claim.is_expired(self.as_of)

    @property
    def minutes_remaining(self) -> int:
        if not self.claim.is_active:
            return 0
        return int(self.claim.time_remaining(self.as_of).total_seconds() // 60)


@dataclass(frozen=True, slots=True)
class NextResult:
    """Outcome of ``claim_next``; ``ticket`` is None when nothing is workable."""

    ticket: Ticket | None
    claim: ClaimResult | None = None
    dry_run: bool = False
    skipped: int = 0


@dataclass(frozen=True, slots=True)
class TicketFilter:
    project_key: str | None = None
    statuses: tuple[TicketStatus, ...] = ()
    milestone_key: str | None = None
    parent_key: str | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True, slots=True)
class HistoryResult:
    ticket: Ticket
    entries: tuple[ActivityEntry, ...]


@dataclass(frozen=True, slots=True)
class TicketGraph:
    ticket_key: str
    dependencies: tuple[str, ...]
    dependents: tuple[str, ...]
    order: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class IntegrityIssue:
    check: str
    subject: str
    message: str


@dataclass(frozen=True, slots=True)
class IntegrityReport:
    tickets_checked: int
    edges_checked: int
    issues: tuple[IntegrityIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues


class TicketService(ServiceBase):
    """Ticket lifecycle operations over one store."""

    # Creation and structure.

    def create_ticket(
        self,
        project_key: str | None,
        title: str,
        *,
        description: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        complexity: Complexity | str = Complexity.MEDIUM,
        max_retries: int | None = None,
        depends_on: Sequence[str] = (),
        parent_key: str | None = None,
        milestone_key: str | None = None,
        aggregate_only: bool = False,
        tasks: Sequence[str] = (),
        actor_id: str | None = None,
    ) -> CreateResult:
        title_text = require_text(title, "title")
        prio = parse_choice(Priority, priority, "priority")
        size = parse_choice(Complexity, complexity, "complexity")
        retries = self.policy.default_max_retries if max_retries is None else max_retries
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 1:
            raise TicketError.invalid_argument("max_retries must be an integer >= 1")
        task_texts = [require_text(text, "task description") for text in tasks]

        with self._unit_of_work("create_ticket") as conn:
            ctx = self._ctx
            project = self._require_project(conn, project_key)
            parent: Ticket | None = None
            if parent_key:
                parent = ctx.require_ticket(conn, parent_key)
                if parent.project_id != project.id:
                    raise TicketError.invalid_argument(
                        f"parent {parent.key} belongs to another project", parent=parent.key
                    )
            milestone = (
                self._require_milestone(conn, project, milestone_key) if milestone_key else None
            )
            dependencies = [ctx.require_ticket(conn, key) for key in dict.fromkeys(depends_on)]
            blocked_by = tuple(dep.key for dep in dependencies if not dep.is_terminal)

            ticket = ctx.tickets.add(
                project,
                title=title_text,
                status=TicketStatus.BLOCKED if blocked_by else TicketStatus.READY,
                description=description,
                priority=prio,
                complexity=size,
                max_retries=retries,
                parent_ticket_id=parent.id if parent else None,
                milestone_id=milestone.id if milestone else None,
                aggregate_only=aggregate_only,
                now=ctx.now(),
                conn=conn,
            )
            ctx.activity.record(
                conn,
                ticket,
                ActivityAction.CREATED,
                f"Created: {title_text}",
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={
                    "priority": prio.value,
                    "complexity": size.value,
                    "parent_key": parent.key if parent else None,
                    "milestone_key": milestone.key if milestone else None,
                    "depends_on": [dep.key for dep in dependencies],
                },
            )
            # A new ticket has no dependents, so none of these edges can close a cycle.
            for dep in dependencies:
                ctx.dependencies.add(ticket.id, dep.id, now=ctx.now(), conn=conn)
                ctx.activity.record(
                    conn,
                    ticket,
                    ActivityAction.DEPENDENCY_ADDED,
                    f"Added dependency on {dep.key}",
                    actor_type=ActorType.HUMAN,
                    actor_id=actor_id,
                    details={"depends_on_key": dep.key},
                )
            created_tasks = tuple(
                ctx.tasks.add(ticket.id, text, now=ctx.now(), conn=conn) for text in task_texts
            )
            self._logger.info(
                "ticket_created",
                ticket_key=ticket.key,
                status=ticket.status.value,
                blocked_by=list(blocked_by),
            )
            return CreateResult(ticket=ticket, blocked_by=blocked_by, tasks=created_tasks)

    def add_dependency(
        self, key: str, depends_on_key: str, *, actor_id: str | None = None
    ) -> DependencyResult:
        with self._unit_of_work("add_dependency", ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            depends_on = self._ctx.require_ticket(conn, depends_on_key)
            saved = self._resolver.add_dependency(conn, ticket, depends_on, actor_id=actor_id)
            return DependencyResult(ticket=saved, status_changed=saved.status is not ticket.status)

    def remove_dependency(
        self, key: str, depends_on_key: str, *, actor_id: str | None = None
    ) -> DependencyResult:
        with self._unit_of_work("remove_dependency", ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            depends_on = self._ctx.require_ticket(conn, depends_on_key)
            saved = self._resolver.remove_dependency(conn, ticket, depends_on, actor_id=actor_id)
            return DependencyResult(ticket=saved, status_changed=saved.status is not ticket.status)

    def vet(self, key: str) -> VetResult:
        with self._unit_of_work("vet", ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            saved = self._resolver.vet(conn, ticket)
            return VetResult(
                ticket=saved,
                changed=saved.status is not ticket.status,
                blocked_by=tuple(self._resolver.blocking_keys(conn, saved)),
            )

    def vet_all(self) -> ResolutionResult:
        with self._unit_of_work("vet_all") as conn:
            return self._resolver.resolve_all(conn)

    def decompose(
        self,
        key: str,
        titles: Sequence[str],
        *,
        complexity: Complexity | str = Complexity.SMALL,
        aggregate_only: bool | None = None,
        actor_id: str | None = None,
    ) -> DecomposeResult:
        """Split a ticket into subtasks the parent then depends on."""
        child_titles = [require_text(title, "subtask title") for title in titles]
        if not child_titles:
            raise TicketError.invalid_argument("at least one subtask title is required")
        size = parse_choice(Complexity, complexity, "complexity")

        with self._unit_of_work("decompose", ticket_key=key) as conn:
            ctx = self._ctx
            parent = ctx.require_ticket(conn, key)
            if parent.status not in _GATED:
                raise TicketError.invalid_state(
                    f"only blocked or ready tickets can be decomposed; "
                    f"{parent.key} is {parent.status.value}",
                    ticket=parent.key,
                    current_status=parent.status.value,
                )
            project = ctx.projects.get(parent.project_id, conn=conn)
            if project is None:
                raise TicketError.not_found("project", parent.project_id)

            children: list[Ticket] = []
            for title in child_titles:
                child = ctx.tickets.add(
                    project,
                    title=title,
                    status=TicketStatus.READY,
                    priority=parent.priority,
                    complexity=size,
                    max_retries=parent.max_retries,
                    parent_ticket_id=parent.id,
                    milestone_id=parent.milestone_id,
                    now=ctx.now(),
                    conn=conn,
                )
                ctx.activity.record(
                    conn,
                    child,
                    ActivityAction.CREATED,
                    f"Created as subtask of {parent.key}",
                    actor_type=ActorType.HUMAN,
                    actor_id=actor_id,
                    details={"parent_key": parent.key},
                )
                ctx.dependencies.add(parent.id, child.id, now=ctx.now(), conn=conn)
                ctx.activity.record(
                    conn,
                    parent,
                    ActivityAction.CHILD_CREATED,
                    f"Created subtask {child.key}: {title}",
                    actor_type=ActorType.HUMAN,
                    actor_id=actor_id,
                    details={"child_key": child.key},
                )
                children.append(child)

            current = parent
            if aggregate_only is not None and aggregate_only != parent.aggregate_only:
                current = ctx.save_ticket(
                    conn,
                    parent,
                    replace(parent, aggregate_only=aggregate_only),
                    operation="decompose",
                )
                ctx.activity.field_changed(
                    conn,
                    current,
                    "aggregate_only",
                    parent.aggregate_only,
                    aggregate_only,
                    actor_id=actor_id,
                )
            current = self._resolver.vet(conn, current)
            ctx.activity.record(
                conn,
                current,
                ActivityAction.DECOMPOSED,
                f"Decomposed into {len(children)} subtasks",
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={"children": [child.key for child in children]},
            )
            return DecomposeResult(parent=current, children=tuple(children))

    # Claims.

    def claim(
        self, key: str, worker_id: str | None = None, duration_minutes: int | None = None
    ) -> ClaimResult:
        worker = self._worker(worker_id)
        with self._unit_of_work("claim", ticket_key=key, worker_id=worker) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            grant = self._leases.grant(conn, ticket, worker, duration_minutes)
            return self._claim_result(conn, grant.ticket, grant.claim, grant.review_claim)

    def claim_next(
        self,
        project_key: str | None = None,
        worker_id: str | None = None,
        *,
        max_complexity: Complexity | str = Complexity.LARGE,
        dry_run: bool = False,
        duration_minutes: int | None = None,
    ) -> NextResult:
        """Pick the best workable ticket and claim it in the same transaction.

        Candidates come from the workable queue (priority, then age). Tickets
        above ``max_complexity`` or out of retries are passed over. With
        ``dry_run`` nothing is written and no worker id is needed.
        """
        cap = parse_choice(Complexity, max_complexity, "complexity")
        worker = None if dry_run else self._worker(worker_id)
        with self._unit_of_work("claim_next", write=not dry_run, worker_id=worker) as conn:
            ctx = self._ctx
            project = self._optional_project(conn, project_key)
            candidates = ctx.tickets.list_workable(
                project_id=project.id if project else None, limit=_NEXT_CANDIDATES, conn=conn
            )
            eligible = [
                ticket
                for ticket in candidates
                if ticket.complexity.ordinal <= cap.ordinal
                and ticket.retry_count < ticket.max_retries
            ]
            skipped = len(candidates) - len(eligible)
            if not eligible:
                return NextResult(ticket=None, dry_run=dry_run, skipped=skipped)
            chosen = eligible[0]
            if worker is None:
                return NextResult(ticket=chosen, dry_run=True, skipped=skipped)
            grant = self._leases.grant(conn, chosen, worker, duration_minutes)
            self._logger.info(
                "claimed_next", ticket_key=chosen.key, worker_id=worker, skipped=skipped
            )
            return NextResult(
                ticket=grant.ticket,
                claim=self._claim_result(conn, grant.ticket, grant.claim, False),
                skipped=skipped,
            )

    def extend_claim(
        self, key: str, duration_minutes: int, *, worker_id: str | None = None
    ) -> ClaimResult:
        with self._unit_of_work("extend_claim", ticket_key=key, worker_id=worker_id) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            grant = self._leases.extend(conn, ticket, duration_minutes, actor_id=worker_id)
            return self._claim_result(conn, grant.ticket, grant.claim, grant.review_claim)

    def resume(
        self, key: str, worker_id: str | None = None, duration_minutes: int | None = None
    ) -> ClaimResult:
        worker = self._worker(worker_id)
        with self._unit_of_work("resume", ticket_key=key, worker_id=worker) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            grant = self._leases.resume(conn, ticket, worker, duration_minutes)
            return self._claim_result(conn, grant.ticket, grant.claim, False)

    def release(
        self, key: str, reason: str | None = None, *, worker_id: str | None = None
    ) -> ReleaseResult:
        with self._unit_of_work("release", ticket_key=key, worker_id=worker_id) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            outcome = self._leases.release(
                conn, ticket, (reason or "").strip() or None, actor_id=worker_id
            )
            return ReleaseResult(
                ticket=outcome.ticket,
                claim=outcome.claim,
                escalated=outcome.escalated,
                inbox_message=outcome.inbox_message,
            )

    def expire_claims(self, *, dry_run: bool = False) -> ExpireResult:
        with self._unit_of_work("expire_claims") as conn:
            return self._leases.expire_due(conn, dry_run=dry_run)

    # Completion and review.

    def complete(
        self,
        key: str,
        summary: str | None = None,
        auto_accept: bool | None = None,
        *,
        worker_id: str | None = None,
    ) -> CompleteResult:
        with self._unit_of_work("complete", ticket_key=key, worker_id=worker_id) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            if ticket.status is not TicketStatus.WORKING:
                raise TicketError.invalid_state(
                    f"{ticket.key} must be working to complete; it is {ticket.status.value}",
                    ticket=ticket.key,
                    current_status=ticket.status.value,
                )
            self._resolver.require_resolved(conn, ticket)
            tasks = ctx.tasks.list(ticket.id, conn=conn)
            incomplete = [task for task in tasks if not task.complete]
            if incomplete:
                raise TicketError(
                    ErrorCode.INCOMPLETE_TASKS,
                    f"{ticket.key} has {len(incomplete)} incomplete task(s)",
                    {
                        "ticket": ticket.key,
                        "incomplete_count": len(incomplete),
                        "incomplete_tasks": [
                            {"position": task.position, "description": task.description}
                            for task in incomplete
                        ],
                    },
                )

            accept_now = ctx.policy.auto_accept if auto_accept is None else auto_accept
            if accept_now:
                decision = can_transition(
                    ticket,
                    TicketStatus.CLOSED,
                    TransitionKind.MANUAL,
                    resolution=Resolution.COMPLETED,
                )
            else:
                decision = can_transition(ticket, TicketStatus.REVIEW, TransitionKind.MANUAL)
            decision.raise_if_denied(ticket.key)

            claim = ctx.claims.get_active(ticket.id, conn=conn)
            worker = worker_id or (claim.worker_id if claim else None)
            if claim is not None:
                ctx.claims.finish(claim, ClaimStatus.COMPLETED, now=ctx.now(), conn=conn)

            after = apply_transition(ticket, decision, now=ctx.now())
            saved = ctx.save_ticket(conn, ticket, after, operation="complete")
            note = (summary or "").strip() or None
            text = note or "Work completed"
            if tasks:
                text = f"All {len(tasks)} tasks completed" + (f" - {note}" if note else "")
            ctx.activity.record(
                conn,
                saved,
                ActivityAction.COMPLETED,
                text,
                actor_type=ActorType.AGENT,
                actor_id=worker,
                details={"summary": note, "auto_accept": accept_now, "tasks_total": len(tasks)},
            )

            resolution = ResolutionResult()
            if accept_now:
                ctx.activity.record(
                    conn,
                    saved,
                    ActivityAction.ACCEPTED,
                    "Auto-accepted",
                    actor_type=ActorType.SYSTEM,
                )
                resolution = self._resolver.on_ticket_reached_terminal(conn, saved)
            return CompleteResult(ticket=saved, auto_accepted=accept_now, resolution=resolution)

    def accept(self, key: str, *, actor_id: str | None = None) -> AcceptResult:
        with self._unit_of_work("accept", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            if ticket.status is not TicketStatus.REVIEW:
                raise TicketError.invalid_state(
                    f"{ticket.key} must be in review to accept; it is {ticket.status.value}",
                    ticket=ticket.key,
                    current_status=ticket.status.value,
                )
            self._resolver.require_resolved(conn, ticket)
            decision = can_transition(
                ticket, TicketStatus.CLOSED, TransitionKind.MANUAL, resolution=Resolution.COMPLETED
            )
            decision.raise_if_denied(ticket.key)
            claim = ctx.claims.get_active(ticket.id, conn=conn)
            if claim is not None:
                ctx.claims.finish(claim, ClaimStatus.COMPLETED, now=ctx.now(), conn=conn)
            saved = ctx.save_ticket(
                conn, ticket, apply_transition(ticket, decision, now=ctx.now()), operation="accept"
            )
            ctx.activity.record(
                conn,
                saved,
                ActivityAction.ACCEPTED,
                "Accepted",
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={"resolution": Resolution.COMPLETED.value},
            )
            resolution = self._resolver.on_ticket_reached_terminal(conn, saved)
            return AcceptResult(ticket=saved, resolution=resolution)

    def reject(self, key: str, reason: str, *, actor_id: str | None = None) -> RejectResult:
        with self._unit_of_work("reject", ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            if ticket.status is not TicketStatus.REVIEW:
                raise TicketError.invalid_state(
                    f"{ticket.key} must be in review to reject; it is {ticket.status.value}",
                    ticket=ticket.key,
                    current_status=ticket.status.value,
                )
            text = (reason or "").strip()
            if not text:
                raise TicketError.invalid_reason(
                    "a reason is required to reject", ticket=ticket.key
                )
            outcome = self._leases.fail_attempt(
                conn,
                ticket,
                TransitionKind.MANUAL,
                reason=text,
                action=ActivityAction.REJECTED,
                summary=f"Rejected: {text}",
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={"reason": text},
            )
            return RejectResult(
                ticket=outcome.ticket,
                escalated=outcome.escalated,
                inbox_message=outcome.inbox_message,
            )

    def close(
        self,
        key: str,
        resolution: Resolution | str,
        reason: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> CloseResult:
        with self._unit_of_work("close", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            decision = can_transition(
                ticket, TicketStatus.CLOSED, TransitionKind.MANUAL, resolution=resolution
            )
            decision.raise_if_denied(ticket.key)
            released = False
            claim = ctx.claims.get_active(ticket.id, conn=conn)
            if claim is not None:
                released = (
                    ctx.claims.finish(claim, ClaimStatus.RELEASED, now=ctx.now(), conn=conn)
                    is not None
                )
            saved = ctx.save_ticket(
                conn, ticket, apply_transition(ticket, decision, now=ctx.now()), operation="close"
            )
            note = (reason or "").strip() or None
            resolved_as = decision.resolution.value if decision.resolution else ""
            ctx.activity.record(
                conn,
                saved,
                ActivityAction.CLOSED,
                f"Closed as {resolved_as}" + (f": {note}" if note else ""),
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={
                    "resolution": resolved_as,
                    "reason": note,
                    "previous_status": ticket.status.value,
                    "claim_released": released,
                },
            )
            result = self._resolver.on_ticket_reached_terminal(conn, saved)
            return CloseResult(ticket=saved, resolution=result, claim_released=released)

    def reopen(self, key: str, *, actor_id: str | None = None) -> ReopenResult:
        with self._unit_of_work("reopen", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            if ticket.status is not TicketStatus.CLOSED:
                raise TicketError.invalid_state(
                    f"only closed tickets can be reopened; {ticket.key} is {ticket.status.value}",
                    ticket=ticket.key,
                    current_status=ticket.status.value,
                )
            blocked = self._resolver.is_blocked(conn, ticket)
            target = TicketStatus.BLOCKED if blocked else TicketStatus.READY
            decision = can_transition(ticket, target, TransitionKind.MANUAL)
            decision.raise_if_denied(ticket.key)
            saved = ctx.save_ticket(
                conn, ticket, apply_transition(ticket, decision, now=ctx.now()), operation="reopen"
            )
            ctx.activity.record(
                conn,
                saved,
                ActivityAction.REOPENED,
                f"Reopened as {target.value}",
                actor_type=ActorType.HUMAN,
                actor_id=actor_id,
                details={
                    "previous_resolution": ticket.resolution.value if ticket.resolution else None,
                    "status": target.value,
                },
            )
            result = self._resolver.on_ticket_reopened(conn, saved)
            return ReopenResult(ticket=saved, resolution=result)

    # Human in the loop.

    def flag(
        self,
        key: str,
        reason: FlagReason | str,
        message: str,
        worker_id: str | None = None,
    ) -> FlagResult:
        with self._unit_of_work("flag", ticket_key=key, worker_id=worker_id) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            escalation = self._bridge.flag(conn, ticket, reason, message, actor_id=worker_id)
            return FlagResult(
                ticket=escalation.ticket,
                inbox_message=escalation.message,
                previous_status=escalation.previous_status,
                claim_released=escalation.claim_released,
            )

    def respond(
        self, message_id: int, response: str, *, actor_id: str | None = None
    ) -> RespondResult:
        with self._unit_of_work("respond") as conn:
            outcome = self._bridge.respond(conn, message_id, response, actor_id=actor_id)
            return RespondResult(
                message=outcome.message,
                ticket=outcome.ticket,
                ticket_updated=outcome.ticket_updated,
                previous_status=outcome.previous_status,
            )

    def send(
        self,
        key: str,
        message_type: MessageType | str,
        content: str,
        worker_id: str | None = None,
    ) -> SendResult:
        with self._unit_of_work("send", ticket_key=key, worker_id=worker_id) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            delivery = self._bridge.send(conn, ticket, message_type, content, actor_id=worker_id)
            return SendResult(
                message=delivery.message,
                ticket=delivery.ticket,
                escalated=delivery.escalated,
                claim_released=delivery.claim_released,
            )

    # Edits, comments, tasks.

    def update_ticket(
        self,
        key: str,
        *,
        expected_updated_at: str | None = None,
        actor_id: str | None = None,
        **fields: Any,
    ) -> UpdateResult:
        """Edit descriptive fields; status never changes here.

        ``milestone`` takes a milestone key (or ``None`` to unlink). Each
        changed field gets its own ``field_changed`` history entry.
        """
        unknown = sorted(set(fields) - _EDITABLE_FIELDS)
        if unknown:
            raise TicketError.invalid_argument(
                f"cannot edit field(s): {', '.join(unknown)}",
                allowed=sorted(_EDITABLE_FIELDS),
            )
        with self._unit_of_work("update_ticket", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            if expected_updated_at is not None and expected_updated_at != to_iso8601z(
                ticket.updated_at
            ):
                raise TicketError(
                    ErrorCode.CONCURRENT_MODIFICATION,
                    f"ticket {ticket.key} was modified concurrently; re-read and retry",
                    {
                        "ticket": ticket.key,
                        "expected_updated_at": expected_updated_at,
                        "actual_updated_at": to_iso8601z(ticket.updated_at),
                    },
                )

            changes: list[FieldChange] = []
            updated = ticket
            for name in sorted(fields):
                value = fields[name]
                updated, change = self._apply_edit(conn, updated, name, value)
                if change is not None:
                    changes.append(change)
            if not changes:
                return UpdateResult(ticket=ticket)

            saved = ctx.save_ticket(conn, ticket, updated, operation="update")
            for change in changes:
                ctx.activity.field_changed(
                    conn, saved, change.field, change.old, change.new, actor_id=actor_id
                )
            return UpdateResult(ticket=saved, changes=tuple(changes))

    def comment(
        self,
        key: str,
        text: str,
        *,
        actor_type: ActorType | str = ActorType.HUMAN,
        actor_id: str | None = None,
    ) -> ActivityEntry:
        body = require_text(text, "comment")
        actor = parse_choice(ActorType, actor_type, "actor type")
        with self._unit_of_work("comment", ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            return self._ctx.activity.record(
                conn,
                ticket,
                ActivityAction.COMMENT,
                body,
                actor_type=actor,
                actor_id=actor_id,
            )

    def add_task(self, key: str, description: str, *, actor_id: str | None = None) -> TaskResult:
        text = require_text(description, "task description")
        with self._unit_of_work("add_task", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = self._open_for_tasks(conn, key)
            before = ctx.tasks.list(ticket.id, conn=conn)
            task = ctx.tasks.add(ticket.id, text, now=ctx.now(), conn=conn)
            ctx.activity.field_changed(
                conn, ticket, "tasks", len(before), len(before) + 1, actor_id=actor_id
            )
            remaining = sum(1 for item in before if not item.complete) + 1
            return TaskResult(
                ticket=ticket, task=task, tasks_total=len(before) + 1, tasks_remaining=remaining
            )

    def complete_task(
        self, key: str, position: int, *, worker_id: str | None = None
    ) -> TaskResult:
        with self._unit_of_work("complete_task", ticket_key=key, worker_id=worker_id) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            task = self._require_task(conn, ticket, position)
            if task.complete:
                raise TicketError.invalid_state(
                    f"task {position} of {ticket.key} is already complete",
                    ticket=ticket.key,
                    position=position,
                )
            done = ctx.tasks.set_complete(task, True, now=ctx.now(), conn=conn)
            tasks = ctx.tasks.list(ticket.id, conn=conn)
            remaining = sum(1 for item in tasks if not item.complete)
            ctx.activity.record(
                conn,
                ticket,
                ActivityAction.TASK_COMPLETED,
                f"Completed task {position + 1}/{len(tasks)}: {_truncate(task.description, 50)}",
                actor_type=ActorType.AGENT if worker_id else ActorType.HUMAN,
                actor_id=worker_id,
                details={"task_id": task.id, "task_position": position, "remaining": remaining},
            )
            return TaskResult(
                ticket=ticket, task=done, tasks_total=len(tasks), tasks_remaining=remaining
            )

    def list_tasks(self, key: str) -> TaskList:
        with self._unit_of_work("list_tasks", write=False, ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            return TaskList(ticket=ticket, tasks=tuple(self._ctx.tasks.list(ticket.id, conn=conn)))

    def uncomplete_task(
        self, key: str, position: int, *, actor_id: str | None = None
    ) -> TaskResult:
        """Mark a task incomplete again; a task that is already open is left alone."""
        with self._unit_of_work("uncomplete_task", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = self._open_for_tasks(conn, key)
            task = self._require_task(conn, ticket, position)
            before = ctx.tasks.list(ticket.id, conn=conn)
            remaining = sum(1 for item in before if not item.complete)
            if not task.complete:
                return TaskResult(
                    ticket=ticket,
                    task=task,
                    tasks_total=len(before),
                    tasks_remaining=remaining,
                    changed=False,
                )
            cleared = ctx.tasks.set_complete(task, False, now=ctx.now(), conn=conn)
            ctx.activity.field_changed(
                conn, ticket, "tasks_remaining", remaining, remaining + 1, actor_id=actor_id
            )
            return TaskResult(
                ticket=ticket, task=cleared, tasks_total=len(before), tasks_remaining=remaining + 1
            )

    def remove_task(self, key: str, position: int, *, actor_id: str | None = None) -> TaskResult:
        """Delete a task; later tasks move up one position."""
        with self._unit_of_work("remove_task", ticket_key=key) as conn:
            ctx = self._ctx
            ticket = self._open_for_tasks(conn, key)
            task = self._require_task(conn, ticket, position)
            total_before = len(ctx.tasks.list(ticket.id, conn=conn))
            left = ctx.tasks.remove(task, now=ctx.now(), conn=conn)
            ctx.activity.field_changed(conn, ticket, "tasks", total_before, left, actor_id=actor_id)
            remaining = sum(1 for item in ctx.tasks.list(ticket.id, conn=conn) if not item.complete)
            return TaskResult(ticket=ticket, task=task, tasks_total=left, tasks_remaining=remaining)

    # Reads.

    def get_ticket(self, key: str) -> TicketDetails:
        with self._unit_of_work("get_ticket", write=False, ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            milestone_key = None
            if ticket.milestone_id is not None:
                milestone = ctx.milestones.get(ticket.milestone_id, conn=conn)
                milestone_key = milestone.key if milestone else None
            parent_key = None
            if ticket.parent_ticket_id is not None:
                parent = ctx.tickets.get(ticket.parent_ticket_id, conn=conn)
                parent_key = parent.key if parent else None
            return TicketDetails(
                ticket=ticket,
                dependencies=tuple(ctx.dependencies.dependencies(ticket.id, conn=conn)),
                dependents=tuple(ctx.dependencies.dependents(ticket.id, conn=conn)),
                children=tuple(ctx.tickets.list_children(ticket.id, conn=conn)),
                tasks=tuple(ctx.tasks.list(ticket.id, conn=conn)),
                active_claim=ctx.claims.get_active(ticket.id, conn=conn),
                pending_messages=tuple(
                    ctx.inbox.list(pending_only=True, ticket_id=ticket.id, conn=conn)
                ),
                milestone_key=milestone_key,
                parent_key=parent_key,
            )

    def list_tickets(self, filters: TicketFilter | None = None) -> tuple[Ticket, ...]:
        criteria = filters or TicketFilter()
        with self._unit_of_work("list_tickets", write=False) as conn:
            ctx = self._ctx
            project = self._optional_project(conn, criteria.project_key)
            milestone_id = None
            if criteria.milestone_key:
                if project is None:
                    raise TicketError.invalid_argument("filtering by milestone needs a project")
                milestone_id = self._require_milestone(conn, project, criteria.milestone_key).id
            parent_id = None
            if criteria.parent_key:
                parent_id = ctx.require_ticket(conn, criteria.parent_key).id
            return tuple(
                ctx.tickets.list(
                    project_id=project.id if project else None,
                    statuses=criteria.statuses or None,
                    parent_ticket_id=parent_id,
                    milestone_id=milestone_id,
                    limit=criteria.limit,
                    offset=criteria.offset,
                    conn=conn,
                )
            )

    def get_history(
        self,
        key: str,
        *,
        action: ActivityAction | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> HistoryResult:
        wanted = parse_choice(ActivityAction, action, "action") if action else None
        with self._unit_of_work("get_history", write=False, ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            entries = self._ctx.activity.history(
                ticket, action=wanted, limit=limit, offset=offset, conn=conn
            )
            return HistoryResult(ticket=ticket, entries=tuple(entries))

    def list_inbox(
        self,
        *,
        pending_only: bool = True,
        project_key: str | None = None,
        ticket_key: str | None = None,
        limit: int = 100,
    ) -> tuple[InboxMessage, ...]:
        with self._unit_of_work("list_inbox", write=False) as conn:
            project = self._optional_project(conn, project_key)
            ticket = self._ctx.require_ticket(conn, ticket_key) if ticket_key else None
            return tuple(
                self._ctx.inbox.list(
                    pending_only=pending_only,
                    project_id=project.id if project else None,
                    ticket_id=ticket.id if ticket else None,
                    limit=limit,
                    conn=conn,
                )
            )

    def get_message(self, message_id: int) -> InboxMessage:
        with self._unit_of_work("get_message", write=False) as conn:
            message = self._ctx.inbox.get(message_id, conn=conn)
            if message is None:
                raise TicketError.not_found("inbox message", str(message_id))
            return message

    def list_claims(
        self,
        *,
        project_key: str | None = None,
        include_finished: bool = False,
        expired_only: bool = False,
        limit: int = 100,
    ) -> tuple[ClaimView, ...]:
        """Active claims by default; ``expired_only`` keeps the ones past their lease."""
        if include_finished and expired_only:
            raise TicketError.invalid_argument("choose either all claims or expired claims")
        with self._unit_of_work("list_claims", write=False) as conn:
            ctx = self._ctx
            now = ctx.now()
            project = self._optional_project(conn, project_key)
            if expired_only:
                claims = ctx.claims.list_expired(now, conn=conn)
            elif include_finished:
                claims = ctx.claims.list_recent(limit=limit, conn=conn)
            else:
                claims = ctx.claims.list_active(conn=conn)
            views: list[ClaimView] = []
            for claim in claims:
                ticket = ctx.require_ticket_id(conn, claim.ticket_id)
                if project is not None and ticket.project_id != project.id:
                    continue
                views.append(ClaimView(claim, ticket.key, ticket.title, now))
                if len(views) >= limit:
                    break
            return tuple(views)

    def get_claim(self, key: str) -> ClaimView | None:
        """The active claim on a ticket, else its most recent one."""
        with self._unit_of_work("get_claim", write=False, ticket_key=key) as conn:
            ctx = self._ctx
            ticket = ctx.require_ticket(conn, key)
            claim = ctx.claims.get_active(ticket.id, conn=conn)
            if claim is None:
                history = ctx.claims.list_for_ticket(ticket.id, conn=conn)
                claim = max(history, key=lambda item: (item.claimed_at, item.id), default=None)
            if claim is None:
                return None
            return ClaimView(claim, ticket.key, ticket.title, ctx.now())

    def get_ticket_graph(self, key: str) -> TicketGraph:
        with self._unit_of_work("get_ticket_graph", write=False, ticket_key=key) as conn:
            ticket = self._ctx.require_ticket(conn, key)
            graph = build_graph(self._ctx, conn)
        upstream = graph.get_dependencies(ticket.key, transitive=True)
        downstream = graph.get_dependents(ticket.key, transitive=True)
        related = {ticket.key, *upstream, *downstream}
        try:
            order = tuple(node for node in graph.topological_order() if node in related)
        except CycleError as exc:
            raise TicketError(
                ErrorCode.DEPENDENCY_CYCLE,
                str(exc),
                {"cycles": [list(cycle) for cycle in exc.cycles]},
            ) from exc
        return TicketGraph(
            ticket_key=ticket.key, dependencies=upstream, dependents=downstream, order=order
        )

    def check_integrity(self) -> IntegrityReport:
        """Audit the invariants the schema cannot express on its own."""
        issues: list[IntegrityIssue] = []
        with self._unit_of_work("check_integrity", write=False) as conn:
            ctx = self._ctx
            tickets = ctx.tickets.list_all(conn=conn)
            graph = build_graph(ctx, conn)
            for cycle in graph.detect_cycles():
                issues.append(
                    IntegrityIssue("acyclic", cycle[0], "dependency cycle: " + " -> ".join(cycle))
                )
            for row in self._db.query_all(_BROKEN_STATUS_SQL, conn=conn):
                issues.append(
                    IntegrityIssue(
                        "status_fields",
                        f"{row['project_key']}-{row['number']}",
                        f"status {row['status']} with resolution={row['resolution']} "
                        f"flag={row['human_flag_reason']}",
                    )
                )
            active_by_ticket = {
                claim.ticket_id: claim for claim in ctx.claims.list_active(conn=conn)
            }
            for ticket in tickets:
                issues.extend(self._ticket_issues(conn, ticket, active_by_ticket.get(ticket.id)))
            edges_checked = len(graph.edges)

        for message in (*self._db.integrity_check(), *self._db.foreign_key_check()):
            issues.append(IntegrityIssue("sqlite", str(self._db.path), message))
        report = IntegrityReport(
            tickets_checked=len(tickets), edges_checked=edges_checked, issues=tuple(issues)
        )
        self._logger.info("integrity_checked", ok=report.ok, issues=len(report.issues))
        return report

    # Helpers.

    def _claim_result(
        self, conn: sqlite3.Connection, ticket: Ticket, claim: Claim, review_claim: bool
    ) -> ClaimResult:
        tasks = self._ctx.tasks.list(ticket.id, conn=conn)
        next_task = next((task for task in tasks if not task.complete), None)
        return ClaimResult(
            ticket=ticket,
            claim=claim,
            branch=ticket.branch_name,
            next_task=next_task,
            tasks_total=len(tasks),
            review_claim=review_claim,
        )

    def _open_for_tasks(self, conn: sqlite3.Connection, key: str) -> Ticket:
        ticket = self._ctx.require_ticket(conn, key)
        if ticket.is_terminal:
            raise TicketError.invalid_state(
                f"cannot change tasks of closed ticket {ticket.key}", ticket=ticket.key
            )
        return ticket

    def _require_task(
        self, conn: sqlite3.Connection, ticket: Ticket, position: int
    ) -> TicketTask:
        task = self._ctx.tasks.get(ticket.id, position, conn=conn)
        if task is None:
            raise TicketError.not_found("task", f"{ticket.key}#{position}")
        return task

    def _ticket_issues(
        self, conn: sqlite3.Connection, ticket: Ticket, claim: Claim | None
    ) -> list[IntegrityIssue]:
        issues: list[IntegrityIssue] = []
        if ticket.status in _GATED:
            blocked = self._resolver.is_blocked(conn, ticket)
            expected = TicketStatus.BLOCKED if blocked else TicketStatus.READY
            if expected is not ticket.status:
                issues.append(
                    IntegrityIssue(
                        "dependency_status",
                        ticket.key,
                        f"status is {ticket.status.value} but dependencies say {expected.value}",
                    )
                )
        elif ticket.status is TicketStatus.REVIEW and self._resolver.is_blocked(conn, ticket):
            blocking = ", ".join(self._resolver.blocking_keys(conn, ticket))
            issues.append(
                IntegrityIssue(
                    "dependency_status",
                    ticket.key,
                    f"in review with unresolved dependencies: {blocking}",
                )
            )
        if ticket.status is TicketStatus.WORKING and claim is None:
            issues.append(IntegrityIssue("claims", ticket.key, "working without an active claim"))
        if claim is not None and ticket.status not in (TicketStatus.WORKING, TicketStatus.REVIEW):
            issues.append(
                IntegrityIssue(
                    "claims",
                    ticket.key,
                    f"active claim {claim.claim_id} on a {ticket.status.value} ticket",
                )
            )
        return issues

    def _apply_edit(
        self, conn: sqlite3.Connection, ticket: Ticket, name: str, value: Any
    ) -> tuple[Ticket, FieldChange | None]:
        old: JSONValue
        new: JSONValue
        if name == "milestone":
            old = None
            if ticket.milestone_id is not None:
                current = self._ctx.milestones.get(ticket.milestone_id, conn=conn)
                old = current.key if current else None
            milestone_id = None
            new = None
            if value:
                project = self._ctx.projects.get(ticket.project_id, conn=conn)
                if project is None:
                    raise TicketError.not_found("project", ticket.project_id)
                milestone = self._require_milestone(conn, project, str(value))
                milestone_id, new = milestone.id, milestone.key
            if old == new:
                return ticket, None
            return replace(ticket, milestone_id=milestone_id), FieldChange("milestone", old, new)

        converted: Any = value
        if name == "priority":
            converted = parse_choice(Priority, value, "priority")
        elif name == "complexity":
            converted = parse_choice(Complexity, value, "complexity")
        elif name == "title":
            converted = require_text(value, "title")
        elif name == "description":
            converted = (value or "").strip() or None
        elif name == "aggregate_only":
            converted = bool(value)
        current_value = getattr(ticket, name)
        if current_value == converted:
            return ticket, None
        updated = replace(ticket, **{name: converted})
        return updated, FieldChange(name, _plain(current_value), _plain(converted))


_BROKEN_STATUS_SQL: Final[str] = """
SELECT t.number, t.status, t.resolution, t.human_flag_reason, p.key AS project_key
FROM tickets t
JOIN projects p ON p.id = t.project_id
WHERE (t.status = 'closed') <> (t.resolution IS NOT NULL)
   OR (t.status = 'human') <> (t.human_flag_reason IS NOT NULL)
"""


def _plain(value: object) -> JSONValue:
    if isinstance(value, (Priority, Complexity)):
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    return str(value)


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def ticket_payload(ticket: Ticket, **extra: JSONValue) -> dict[str, JSONValue]:
    """Ticket dict with the computed key, plus any extra fields."""
    payload = ticket.to_dict()
    payload.update(extra)
    return payload


def changes_payload(changes: Sequence[FieldChange]) -> list[Mapping[str, JSONValue]]:
    return [{"field": change.field, "old": change.old, "new": change.new} for change in changes]


__all__ = [
    "AcceptResult",
    "ClaimResult",
    "CloseResult",
    "CompleteResult",
    "CreateResult",
    "DecomposeResult",
    "DependencyResult",
    "FlagResult",
    "HistoryResult",
    "IntegrityIssue",
    "IntegrityReport",
    "RejectResult",
    "ReleaseResult",
    "ReopenResult",
    "RespondResult",
    "SendResult",
    "TaskResult",
    "TicketDetails",
    "TicketFilter",
    "TicketGraph",
    "TicketService",
    "UpdateResult",
    "VetResult",
    "changes_payload",
    "ticket_payload",
]
