"""Shared deterministic fixtures and builders for service tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from wark.persistence.state_db import StateDB
from wark.service import MilestoneService, ProjectService, StatusService, TicketService

if TYPE_CHECKING:
    from pathlib import Path

    from wark.config.schema import WarkSettings

_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = _BASE_TS) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, *, minutes: int = 0, seconds: int = 0) -> datetime:
        self.current += timedelta(minutes=minutes, seconds=seconds)
        return self.current


@dataclass(slots=True)
class Services:
    db: StateDB
    clock: FakeClock
    tickets: TicketService
    projects: ProjectService
    milestones: MilestoneService
    status: StatusService


def open_services(
    tmp_path: Path,
    *,
    settings: WarkSettings | None = None,
    project: str | None = "PROJ",
) -> Services:
    db = StateDB(tmp_path / "state" / "wark.sqlite3")
    db.migrate()
    clock = FakeClock()
    services = Services(
        db=db,
        clock=clock,
        tickets=TicketService(db, settings=settings, clock=clock),
        projects=ProjectService(db, settings=settings, clock=clock),
        milestones=MilestoneService(db, settings=settings, clock=clock),
        status=StatusService(db, settings=settings, clock=clock),
    )
    if project is not None:
        services.projects.create(project, f"{project} project")
    return services


__all__ = ["FakeClock", "Services", "open_services"]
