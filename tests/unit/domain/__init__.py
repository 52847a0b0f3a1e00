"""Shared deterministic builders for domain tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Final

from wark.domain.models import Ticket, TicketStatus

_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


def fixed_now(seconds: int = 0) -> datetime:
    return _BASE_TS + timedelta(seconds=seconds)


def make_ticket(
    number: int = 1,
    *,
    status: TicketStatus = TicketStatus.READY,
    **overrides: Any,
) -> Ticket:
    fields: dict[str, Any] = {
        "id": number,
        "project_id": 1,
        "project_key": "PROJ",
        "number": number,
        "title": f"Ticket {number}",
        "status": status,
        "created_at": fixed_now(),
        "updated_at": fixed_now(),
    }
    fields.update(overrides)
    return Ticket(**fields)
