"""
wark — dependency resolver

File: src/wark/workflow/resolver.py

Purpose
- Keep every ticket's blocked/ready status a pure function of its dependency
  edges, and roll finished children up into their parent.

Functional requirements
- Edges are only added while the ticket is blocked or ready; cycles are
  rejected with the offending path.
- When a ticket closes, dependents whose last unresolved dependency it was
  become ready, and its parent moves on once every child is closed.
- When a ticket reopens, ready and review dependents fall back to blocked.

Non-functional requirements
- Runs inside the caller's transaction; never opens its own.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ActivityAction,
    ActorType,
    ClaimStatus,
    Ticket,
    TicketStatus,
)
from wark.planning.dependency_graph import DependencyGraph
from wark.workflow.context import WorkflowContext
from wark.workflow.state_machine import TransitionKind, apply_transition, can_transition

_GATED: frozenset[TicketStatus] = frozenset({TicketStatus.BLOCKED, TicketStatus.READY})


@dataclass(frozen=True, slots=True)
class ResolutionItem:
    ticket_key: str
    from_status: TicketStatus
    to_status: TicketStatus
    cause: str


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    unblocked: int = 0
    parents_updated: int = 0
    items: tuple[ResolutionItem, ...] = field(default_factory=tuple)

    def merge(self, other: ResolutionResult) -> ResolutionResult:
        return ResolutionResult(
            unblocked=self.unblocked + other.unblocked,
            parents_updated=self.parents_updated + other.parents_updated,
            items=self.items + other.items,
        )


def build_graph(ctx: WorkflowContext, conn: sqlite3.Connection | None = None) -> DependencyGraph:
    """Load every ticket and edge into an in-memory graph keyed by ticket key."""
    tickets = ctx.tickets.list_all(conn=conn)
    keys = {ticket.id: ticket.key for ticket in tickets}
    edges = [(keys[a], keys[b]) for a, b in ctx.dependencies.edges(conn=conn)]
    return DependencyGraph(nodes=keys.values(), edges=edges)


class Resolver:
    def __init__(self, ctx: WorkflowContext) -> None:
        self._ctx = ctx

    # Reads.

    def is_blocked(self, conn: sqlite3.Connection | None, ticket: Ticket) -> bool:
        return bool(self._ctx.dependencies.unresolved(ticket.id, conn=conn))

    def blocking_keys(self, conn: sqlite3.Connection | None, ticket: Ticket) -> list[str]:
        return [dep.key for dep in self._ctx.dependencies.unresolved(ticket.id, conn=conn)]

    def raise_unresolved(self, conn: sqlite3.Connection | None, ticket: Ticket) -> None:
        blocking = self.blocking_keys(conn, ticket)
        raise TicketError(
            ErrorCode.UNRESOLVED_DEPS,
            f"{ticket.key} has unresolved dependencies: {', '.join(blocking) or 'unknown'}",
            {"ticket": ticket.key, "blocked_by": blocking},
        )

    def require_resolved(self, conn: sqlite3.Connection | None, ticket: Ticket) -> None:
        if self.is_blocked(conn, ticket):
            self.raise_unresolved(conn, ticket)

    # Edges.

    def add_dependency(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        depends_on: Ticket,
        *,
        actor_type: ActorType = ActorType.HUMAN,
        actor_id: str | None = None,
    ) -> Ticket:
        if ticket.id == depends_on.id:
            raise TicketError.invalid_argument(
                f"{ticket.key} cannot depend on itself", ticket=ticket.key
            )
        if ticket.status not in _GATED:
            raise TicketError.invalid_state(
                f"dependencies can only be added to blocked or ready tickets; "
                f"{ticket.key} is {ticket.status.value}",
                ticket=ticket.key,
                current_status=ticket.status.value,
            )
        deps = self._ctx.dependencies
        if deps.exists(ticket.id, depends_on.id, conn=conn):
            raise TicketError.invalid_argument(
                f"{ticket.key} already depends on {depends_on.key}",
                ticket=ticket.key,
                depends_on=depends_on.key,
            )
        if deps.reaches(depends_on.id, ticket.id, conn=conn):
            path = build_graph(self._ctx, conn).cycle_if_added(ticket.key, depends_on.key)
            cycle = list(path or (ticket.key, depends_on.key, ticket.key))
            raise TicketError(
                ErrorCode.DEPENDENCY_CYCLE,
                f"adding {ticket.key} -> {depends_on.key} would create a cycle: "
                + " -> ".join(cycle),
                {"ticket": ticket.key, "depends_on": depends_on.key, "cycle": cycle},
            )

        deps.add(ticket.id, depends_on.id, now=self._ctx.now(), conn=conn)
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.DEPENDENCY_ADDED,
            f"Added dependency on {depends_on.key}",
            actor_type=actor_type,
            actor_id=actor_id,
            details={"depends_on_key": depends_on.key},
        )
        return self.vet(conn, self._ctx.require_ticket_id(conn, ticket.id))

    def remove_dependency(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        depends_on: Ticket,
        *,
        actor_type: ActorType = ActorType.HUMAN,
        actor_id: str | None = None,
    ) -> Ticket:
        if ticket.status not in _GATED:
            raise TicketError.invalid_state(
                f"dependencies can only be removed from blocked or ready tickets; "
                f"{ticket.key} is {ticket.status.value}",
                ticket=ticket.key,
                current_status=ticket.status.value,
            )
        if not self._ctx.dependencies.remove(ticket.id, depends_on.id, conn=conn):
            raise TicketError.not_found("dependency", f"{ticket.key} -> {depends_on.key}")
        self._ctx.activity.record(
            conn,
            ticket,
            ActivityAction.DEPENDENCY_REMOVED,
            f"Removed dependency on {depends_on.key}",
            actor_type=actor_type,
            actor_id=actor_id,
            details={"depends_on_key": depends_on.key},
        )
        return self.vet(conn, self._ctx.require_ticket_id(conn, ticket.id))

    # Status recomputation.

    def vet(self, conn: sqlite3.Connection, ticket: Ticket) -> Ticket:
        """Recompute blocked/ready for one ticket; other statuses are left alone."""
        if ticket.status not in _GATED:
            return ticket
        target = TicketStatus.BLOCKED if self.is_blocked(conn, ticket) else TicketStatus.READY
        if target is ticket.status:
            return ticket
        if target is TicketStatus.BLOCKED:
            summary = "Blocked by unresolved dependencies"
            action = ActivityAction.BLOCKED
            details = {"blocked_by": self.blocking_keys(conn, ticket)}
        else:
            summary = "All dependencies resolved"
            action = ActivityAction.UNBLOCKED
            details = {}
        return self._auto_move(conn, ticket, target, action, summary, details)

    def on_ticket_reached_terminal(
        self, conn: sqlite3.Connection, ticket: Ticket
    ) -> ResolutionResult:
        items: list[ResolutionItem] = []
        unblocked = 0
        for dependent in self._ctx.dependencies.dependents(ticket.id, conn=conn):
            # The parent is handled by the roll-up below.
            if dependent.id == ticket.parent_ticket_id:
                continue
            if dependent.status is not TicketStatus.BLOCKED or self.is_blocked(conn, dependent):
                continue
            self._auto_move(
                conn,
                dependent,
                TicketStatus.READY,
                ActivityAction.UNBLOCKED,
                f"Unblocked: {ticket.key} resolved",
                {"resolved_dependency_key": ticket.key},
            )
            unblocked += 1
            items.append(
                ResolutionItem(
                    dependent.key, TicketStatus.BLOCKED, TicketStatus.READY, "dependency_resolved"
                )
            )

        parents_updated = 0
        rollup = self._roll_up(conn, ticket)
        if rollup is not None:
            parents_updated = 1
            items.append(rollup)
        return ResolutionResult(unblocked=unblocked, parents_updated=parents_updated, items=tuple(items))

    def on_ticket_reopened(self, conn: sqlite3.Connection, ticket: Ticket) -> ResolutionResult:
        items: list[ResolutionItem] = []
        for dependent in self._ctx.dependencies.dependents(ticket.id, conn=conn):
            if dependent.status not in (TicketStatus.READY, TicketStatus.REVIEW):
                continue
            if dependent.status is TicketStatus.REVIEW:
                # Review needs every dependency closed; its review claim lapses.
                claim = self._ctx.claims.get_active(dependent.id, conn=conn)
                if claim is not None:
                    self._ctx.claims.finish(
                        claim, ClaimStatus.RELEASED, now=self._ctx.now(), conn=conn
                    )
            self._auto_move(
                conn,
                dependent,
                TicketStatus.BLOCKED,
                ActivityAction.BLOCKED,
                f"Blocked: {ticket.key} reopened",
                {"reopened_dependency_key": ticket.key},
            )
            items.append(
                ResolutionItem(
                    dependent.key, dependent.status, TicketStatus.BLOCKED, "dependency_reopened"
                )
            )
        return ResolutionResult(items=tuple(items))

    def resolve_all(self, conn: sqlite3.Connection) -> ResolutionResult:
        """Re-vet every blocked or ready ticket; repairs drift after manual edits."""
        items: list[ResolutionItem] = []
        unblocked = 0
        for ticket in self._ctx.tickets.list_all(conn=conn):
            if ticket.status not in _GATED:
                continue
            updated = self.vet(conn, ticket)
            if updated.status is ticket.status:
                continue
            if updated.status is TicketStatus.READY:
                unblocked += 1
            items.append(ResolutionItem(ticket.key, ticket.status, updated.status, "vet"))
        self._ctx.logger.info("dependencies_resolved", changed=len(items), unblocked=unblocked)
        return ResolutionResult(unblocked=unblocked, items=tuple(items))

    def _roll_up(self, conn: sqlite3.Connection, child: Ticket) -> ResolutionItem | None:
        if child.parent_ticket_id is None:
            return None
        parent = self._ctx.tickets.get(child.parent_ticket_id, conn=conn)
        if parent is None or parent.status not in _GATED:
            return None
        children = self._ctx.tickets.list_children(parent.id, conn=conn)
        done = sum(1 for item in children if item.status.is_terminal)
        if done < len(children) or self.is_blocked(conn, parent):
            return None

        target = TicketStatus.REVIEW if parent.aggregate_only else TicketStatus.READY
        if target is parent.status:
            return None
        details = {"children_done": done, "children_total": len(children)}
        if target is TicketStatus.REVIEW:
            self._auto_move(
                conn,
                parent,
                target,
                ActivityAction.COMPLETED,
                f"All {len(children)} subtasks closed; ready for review",
                details,
            )
        else:
            self._auto_move(
                conn,
                parent,
                target,
                ActivityAction.UNBLOCKED,
                f"All {len(children)} subtasks closed",
                details,
            )
        return ResolutionItem(parent.key, parent.status, target, "children_done")

    def _auto_move(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        target: TicketStatus,
        action: ActivityAction,
        summary: str,
        details: dict[str, object],
    ) -> Ticket:
        decision = can_transition(ticket, target, TransitionKind.AUTO)
        decision.raise_if_denied(ticket.key)
        after = apply_transition(ticket, decision, now=self._ctx.now())
        saved = self._ctx.save_ticket(conn, ticket, after, operation="resolve")
        self._ctx.activity.record(
            conn,
            saved,
            action,
            summary,
            actor_type=ActorType.SYSTEM,
            details={"from_status": ticket.status.value, "to_status": target.value, **details},
        )
        return saved


__all__ = ["ResolutionItem", "ResolutionResult", "Resolver", "build_graph"]
