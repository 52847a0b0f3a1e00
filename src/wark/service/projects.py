"""Project administration: create, list, show, delete, stats."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from wark.domain.errors import TicketError
from wark.domain.models import Project, TicketStatus
from wark.service.base import ServiceBase, require_text


@dataclass(frozen=True, slots=True)
class ProjectStats:
    project: Project
    by_status: dict[TicketStatus, int] = field(default_factory=dict)
    total: int = 0
    workable: int = 0
    pending_inbox: int = 0
    milestones: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "project": self.project.key,
            "total": self.total,
            "workable": self.workable,
            "pending_inbox": self.pending_inbox,
            "milestones": self.milestones,
            "by_status": {status.value: count for status, count in self.by_status.items()},
        }


class ProjectService(ServiceBase):
    def create(
        self, key: str, name: str, *, description: str | None = None
    ) -> Project:
        label = require_text(name, "project name")
        normalized = self._project_key(require_text(key, "project key"))
        with self._unit_of_work("create_project") as conn:
            if self._ctx.projects.get_by_key(normalized, conn=conn) is not None:
                raise TicketError.invalid_argument(
                    f"project {normalized} already exists", project=normalized
                )
            try:
                project = self._ctx.projects.add(
                    normalized,
                    label,
                    description=(description or "").strip() or None,
                    now=self._ctx.now(),
                    conn=conn,
                )
            except sqlite3.IntegrityError as exc:
                raise TicketError.invalid_argument(
                    f"project {normalized} already exists", project=normalized
                ) from exc
            self._logger.info("project_created", project=project.key)
            return project

    def list(self) -> tuple[Project, ...]:
        with self._unit_of_work("list_projects", write=False) as conn:
            return tuple(self._ctx.projects.list(conn=conn))

    def get(self, key: str) -> Project:
        with self._unit_of_work("get_project", write=False) as conn:
            return self._require_project(conn, key)

    def delete(self, key: str, *, force: bool = False) -> Project:
        """Delete a project; refuses when it still has tickets unless ``force``."""
        with self._unit_of_work("delete_project") as conn:
            project = self._require_project(conn, key)
            total = sum(self._ctx.projects.status_counts(project.id, conn=conn).values())
            if total and not force:
                raise TicketError.invalid_state(
                    f"project {project.key} still has {total} ticket(s); use --force to delete",
                    project=project.key,
                    tickets=total,
                )
            self._ctx.projects.delete(project.id, conn=conn)
            self._logger.warning("project_deleted", project=project.key, tickets=total)
            return project

    def stats(self, key: str) -> ProjectStats:
        with self._unit_of_work("project_stats", write=False) as conn:
            ctx = self._ctx
            project = self._require_project(conn, key)
            by_status = ctx.projects.status_counts(project.id, conn=conn)
            return ProjectStats(
                project=project,
                by_status=by_status,
                total=sum(by_status.values()),
                workable=len(
                    ctx.tickets.list_workable(project_id=project.id, limit=1000, conn=conn)
                ),
                pending_inbox=ctx.inbox.count_pending(project_id=project.id, conn=conn),
                milestones=len(ctx.milestones.list(project_id=project.id, conn=conn)),
            )


__all__ = ["ProjectService", "ProjectStats"]
