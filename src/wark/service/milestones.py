"""Milestones group tickets inside one project toward a target date."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any

from wark.domain import keys as domain_keys
from wark.domain.errors import TicketError
from wark.domain.models import Milestone, MilestoneStatus, Ticket, TicketStatus
from wark.service.base import ServiceBase, parse_choice, require_text

_MILESTONE_FIELDS = frozenset({"name", "goal", "target_date", "status"})


@dataclass(frozen=True, slots=True)
class MilestoneProgress:
    milestone: Milestone
    by_status: dict[TicketStatus, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.by_status.values())

    @property
    def closed(self) -> int:
        return self.by_status.get(TicketStatus.CLOSED, 0)

    @property
    def percent_complete(self) -> int:
        if not self.total:
            return 0
        return int(round(100 * self.closed / self.total))


def _parse_date(value: date | str | None) -> date | None:
    if value is None or isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise TicketError.invalid_argument(
            f"invalid target date {value!r}; expected YYYY-MM-DD", field="target_date"
        ) from exc


class MilestoneService(ServiceBase):
    def create(
        self,
        project_key: str | None,
        key: str,
        name: str,
        *,
        goal: str | None = None,
        target_date: date | str | None = None,
    ) -> Milestone:
        label = require_text(name, "milestone name")
        when = _parse_date(target_date)
        with self._unit_of_work("create_milestone") as conn:
            project = self._require_project(conn, project_key)
            try:
                normalized = domain_keys.normalize_milestone_key(key)
            except ValueError as exc:
                raise TicketError.invalid_argument(str(exc), milestone=key) from exc
            if self._ctx.milestones.get_by_key(project.id, normalized, conn=conn) is not None:
                raise TicketError.invalid_argument(
                    f"milestone {project.key}/{normalized} already exists",
                    milestone=f"{project.key}/{normalized}",
                )
            try:
                milestone = self._ctx.milestones.add(
                    project,
                    normalized,
                    label,
                    goal=(goal or "").strip() or None,
                    target_date=when,
                    now=self._ctx.now(),
                    conn=conn,
                )
            except sqlite3.IntegrityError as exc:
                raise TicketError.invalid_argument(
                    f"milestone {project.key}/{normalized} already exists"
                ) from exc
            self._logger.info("milestone_created", milestone=milestone.qualified_key)
            return milestone

    def get(self, project_key: str | None, key: str) -> MilestoneProgress:
        with self._unit_of_work("get_milestone", write=False) as conn:
            project = self._require_project(conn, project_key)
            milestone = self._require_milestone(conn, project, key)
            return MilestoneProgress(milestone=milestone, by_status=self._counts(conn, milestone))

    def list(
        self,
        project_key: str | None = None,
        *,
        status: MilestoneStatus | str | None = None,
    ) -> tuple[MilestoneProgress, ...]:
        wanted = parse_choice(MilestoneStatus, status, "milestone status") if status else None
        with self._unit_of_work("list_milestones", write=False) as conn:
            project = self._optional_project(conn, project_key)
            milestones = self._ctx.milestones.list(
                project_id=project.id if project else None, status=wanted, conn=conn
            )
            return tuple(
                MilestoneProgress(milestone=item, by_status=self._counts(conn, item))
                for item in milestones
            )

    def update(self, project_key: str | None, key: str, **fields: Any) -> Milestone:
        unknown = sorted(set(fields) - _MILESTONE_FIELDS)
        if unknown:
            raise TicketError.invalid_argument(
                f"cannot edit milestone field(s): {', '.join(unknown)}",
                allowed=sorted(_MILESTONE_FIELDS),
            )
        changes: dict[str, Any] = {}
        if "name" in fields:
            changes["name"] = require_text(fields["name"], "milestone name")
        if "goal" in fields:
            changes["goal"] = (fields["goal"] or "").strip() or None
        if "target_date" in fields:
            changes["target_date"] = _parse_date(fields["target_date"])
        if "status" in fields:
            changes["status"] = parse_choice(MilestoneStatus, fields["status"], "milestone status")

        with self._unit_of_work("update_milestone") as conn:
            project = self._require_project(conn, project_key)
            milestone = self._require_milestone(conn, project, key)
            if not changes:
                return milestone
            return self._ctx.milestones.update(
                replace(milestone, **changes), now=self._ctx.now(), conn=conn
            )

    def delete(self, project_key: str | None, key: str) -> Milestone:
        """Delete a milestone; linked tickets are unlinked, not deleted."""
        with self._unit_of_work("delete_milestone") as conn:
            project = self._require_project(conn, project_key)
            milestone = self._require_milestone(conn, project, key)
            self._ctx.milestones.delete(milestone.id, conn=conn)
            return milestone

    def get_linked_tickets(
        self, project_key: str | None, key: str, *, limit: int = 100
    ) -> tuple[Ticket, ...]:
        with self._unit_of_work("milestone_tickets", write=False) as conn:
            project = self._require_project(conn, project_key)
            milestone = self._require_milestone(conn, project, key)
            return tuple(
                self._ctx.tickets.list(
                    project_id=project.id, milestone_id=milestone.id, limit=limit, conn=conn
                )
            )

    def _counts(self, conn: sqlite3.Connection, milestone: Milestone) -> dict[TicketStatus, int]:
        rows = self._db.query_all(
            "SELECT status, COUNT(*) AS n FROM tickets WHERE milestone_id = ? GROUP BY status",
            (milestone.id,),
            conn=conn,
        )
        counts = {status: 0 for status in TicketStatus}
        for row in rows:
            counts[TicketStatus(str(row["status"]))] = int(row["n"])
        return counts


__all__ = ["MilestoneProgress", "MilestoneService"]
