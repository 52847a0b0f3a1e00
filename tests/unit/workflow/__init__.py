"""Shared deterministic fixtures and builders for workflow tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from wark.domain.models import Project, Ticket, TicketStatus
from wark.persistence.state_db import StateDB
from wark.workflow.context import WorkflowContext, WorkflowPolicy
from wark.workflow.escalation import InboxBridge
from wark.workflow.leases import LeaseManager
from wark.workflow.resolver import Resolver

if TYPE_CHECKING:
    from pathlib import Path

_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = _BASE_TS) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, *, minutes: int = 0, seconds: int = 0) -> datetime:
        self.current += timedelta(minutes=minutes, seconds=seconds)
        return self.current


@dataclass(slots=True)
class Stack:
    db: StateDB
    clock: FakeClock
    ctx: WorkflowContext
    resolver: Resolver
    bridge: InboxBridge
    leases: LeaseManager
    project: Project

    def ticket(
        self,
        title: str = "Ticket",
        *,
        status: TicketStatus = TicketStatus.READY,
        max_retries: int = 3,
        parent: Ticket | None = None,
        aggregate_only: bool = False,
    ) -> Ticket:
        return self.ctx.tickets.add(
            self.project,
            title=title,
            status=status,
            max_retries=max_retries,
            parent_ticket_id=parent.id if parent is not None else None,
            aggregate_only=aggregate_only,
            now=self.clock(),
        )

    def reload(self, ticket: Ticket) -> Ticket:
        return self.ctx.require_ticket_id(None, ticket.id)


def build_stack(tmp_path: Path, *, policy: WorkflowPolicy | None = None) -> Stack:
    db = StateDB(tmp_path / "state" / "wark.sqlite3")
    db.migrate()
    clock = FakeClock()
    ctx = WorkflowContext(db, policy=policy, clock=clock)
    resolver = Resolver(ctx)
    bridge = InboxBridge(ctx, resolver)
    leases = LeaseManager(ctx, resolver, bridge)
    project = ctx.projects.add("PROJ", "Project", now=clock())
    return Stack(db, clock, ctx, resolver, bridge, leases, project)


__all__ = ["FakeClock", "Stack", "build_stack"]
