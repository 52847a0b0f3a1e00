"""Append-only activity logging for every ticket mutation."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import structlog

from wark.domain.models import (
    ActivityAction,
    ActivityEntry,
    ActorType,
    JSONValue,
    Ticket,
)
from wark.persistence.repositories import ActivityRepo

_EMPTY = "(none)"


class ActivityLogger:
    """Writes activity rows inside the caller's transaction.

    It depends on nothing but the activity table, so every other workflow
    component can use it.
    """

    def __init__(
        self,
        repo: ActivityRepo,
        *,
        clock: Callable[[], datetime],
        logger: Any | None = None,
    ) -> None:
        self._repo = repo
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def record(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        action: ActivityAction,
        summary: str,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> ActivityEntry:
        entry = self._repo.add(
            ticket.id,
            action,
            actor_type=actor_type,
            actor_id=actor_id,
            summary=summary,
            details=details,
            now=self._clock(),
            conn=conn,
        )
        self._logger.debug(
            "activity_recorded",
            ticket_key=ticket.key,
            action=action.value,
            actor_type=actor_type.value,
            actor_id=actor_id,
            activity_id=entry.id,
        )
        return entry

    def field_changed(
        self,
        conn: sqlite3.Connection,
        ticket: Ticket,
        field: str,
        old: JSONValue,
        new: JSONValue,
        *,
        actor_type: ActorType = ActorType.HUMAN,
        actor_id: str | None = None,
    ) -> ActivityEntry:
        label = field.replace("_", " ").capitalize()
        summary = f"{label}: {_display(old)} → {_display(new)}"
        return self.record(
            conn,
            ticket,
            ActivityAction.FIELD_CHANGED,
            summary,
            actor_type=actor_type,
            actor_id=actor_id,
            details={"field": field, "old": old, "new": new},
        )

    def history(
        self,
        ticket: Ticket,
        *,
        action: ActivityAction | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[ActivityEntry]:
        return self._repo.list_for_ticket(
            ticket.id, action=action, limit=limit, offset=offset, conn=conn
        )


def _display(value: JSONValue) -> str:
    if value is None or value == "":
        return _EMPTY
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


__all__ = ["ActivityLogger"]
