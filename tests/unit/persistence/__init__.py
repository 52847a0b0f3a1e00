"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Final

from wark.domain.models import Project, Ticket, TicketStatus
from wark.persistence.repositories import ProjectRepo, TicketRepo
from wark.persistence.state_db import StateDB

if TYPE_CHECKING:
    from pathlib import Path

_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


def fixed_now(seconds: int = 0) -> datetime:
    return _BASE_TS + timedelta(seconds=seconds)


def open_db(tmp_path: Path, name: str = "wark.sqlite3") -> StateDB:
    db = StateDB(tmp_path / "state" / name)
    db.migrate()
    return db


def make_project(db: StateDB, key: str = "PROJ") -> Project:
    return ProjectRepo(db).add(key, f"{key} project", now=fixed_now())


def make_ticket(
    db: StateDB,
    project: Project,
    title: str = "Ticket",
    *,
    status: TicketStatus = TicketStatus.READY,
    seconds: int = 0,
) -> Ticket:
    return TicketRepo(db).add(project, title=title, status=status, now=fixed_now(seconds))


__all__ = ["fixed_now", "make_project", "make_ticket", "open_db"]
