"""Read-only dashboard queries: counts, expiring claims, recent activity, workable queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from wark.constants import EXPIRING_SOON_MINUTES, RECENT_ACTIVITY_LIMIT
from wark.domain.models import ActivityEntry, Claim, Ticket, TicketStatus
from wark.service.base import ServiceBase


@dataclass(frozen=True, slots=True)
class StatusCounts:
    workable: int = 0
    working: int = 0
    review: int = 0
    blocked_deps: int = 0
    blocked_human: int = 0
    pending_inbox: int = 0
    closed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "workable": self.workable,
            "working": self.working,
            "review": self.review,
            "blocked_deps": self.blocked_deps,
            "blocked_human": self.blocked_human,
            "pending_inbox": self.pending_inbox,
            "closed": self.closed,
        }


@dataclass(frozen=True, slots=True)
class ExpiringClaim:
    ticket_key: str
    ticket_title: str
    worker_id: str
    claim_id: str
    expires_at: datetime
    minutes_remaining: int


@dataclass(frozen=True, slots=True)
class RecentActivity:
    entry: ActivityEntry
    age: str


@dataclass(frozen=True, slots=True)
class StatusSummary:
    project_key: str | None
    counts: StatusCounts
    expiring_soon: tuple[ExpiringClaim, ...] = field(default_factory=tuple)
    recent: tuple[RecentActivity, ...] = field(default_factory=tuple)
    generated_at: datetime | None = None


def format_age(then: datetime, now: datetime) -> str:
    """Coarse relative age used by the dashboard."""
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


class StatusService(ServiceBase):
    def get_summary(self, project_key: str | None = None) -> StatusSummary:
        now = self._ctx.now()
        with self._unit_of_work("status", write=False) as conn:
            ctx = self._ctx
            project = self._optional_project(conn, project_key)
            project_id = project.id if project else None

            by_status = ctx.projects.status_counts(project_id, conn=conn)
            workable = len(
                ctx.tickets.list_workable(project_id=project_id, limit=1000, conn=conn)
            )
            counts = StatusCounts(
                workable=workable,
                working=by_status[TicketStatus.WORKING],
                review=by_status[TicketStatus.REVIEW],
                blocked_deps=by_status[TicketStatus.BLOCKED],
                blocked_human=by_status[TicketStatus.HUMAN],
                pending_inbox=ctx.inbox.count_pending(project_id=project_id, conn=conn),
                closed=by_status[TicketStatus.CLOSED],
            )

            horizon = now + timedelta(minutes=EXPIRING_SOON_MINUTES)
            expiring: list[ExpiringClaim] = []
            for claim in ctx.claims.list_active(conn=conn):
                if claim.expires_at > horizon:
                    break
                ticket = ctx.require_ticket_id(conn, claim.ticket_id)
                if project_id is not None and ticket.project_id != project_id:
                    continue
                expiring.append(_expiring(claim, ticket, now))

            recent = tuple(
                RecentActivity(entry=entry, age=format_age(entry.created_at, now))
                for entry in ctx.activity_repo.recent(
                    project_id=project_id, limit=RECENT_ACTIVITY_LIMIT, conn=conn
                )
            )
            return StatusSummary(
                project_key=project.key if project else None,
                counts=counts,
                expiring_soon=tuple(expiring),
                recent=recent,
                generated_at=now,
            )

    def list_workable(
        self, project_key: str | None = None, limit: int = 20
    ) -> tuple[Ticket, ...]:
        """Ready tickets with no unresolved dependency and no active claim, best first."""
        with self._unit_of_work("workable", write=False) as conn:
            project = self._optional_project(conn, project_key)
            return tuple(
                self._ctx.tickets.list_workable(
                    project_id=project.id if project else None, limit=limit, conn=conn
                )
            )


def _expiring(claim: Claim, ticket: Ticket, now: datetime) -> ExpiringClaim:
    remaining = claim.time_remaining(now)
    return ExpiringClaim(
        ticket_key=ticket.key,
        ticket_title=ticket.title,
        worker_id=claim.worker_id,
        claim_id=claim.claim_id,
        expires_at=claim.expires_at,
        minutes_remaining=max(0, int(remaining.total_seconds() // 60)),
    )


__all__ = [
    "ExpiringClaim",
    "RecentActivity",
    "StatusCounts",
    "StatusService",
    "StatusSummary",
    "format_age",
]
