"""Dashboard summary and workable queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from wark.domain.models import ActivityAction
from wark.service import format_age

from . import open_services

if TYPE_CHECKING:
    from pathlib import Path

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    ("delta", "expected"),
    [
        (timedelta(seconds=59), "just now"),
        (timedelta(minutes=5), "5m ago"),
        (timedelta(hours=3, minutes=59), "3h ago"),
        (timedelta(days=2, hours=1), "2d ago"),
        (timedelta(seconds=-30), "just now"),
    ],
)
def test_format_age_buckets(delta: timedelta, expected: str) -> None:
    assert format_age(_NOW - delta, _NOW) == expected


def test_summary_counts_and_expiring_claims(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    short = svc.create_ticket("PROJ", "short lease").ticket
    long = svc.create_ticket("PROJ", "long lease").ticket
    svc.create_ticket("PROJ", "waiting", depends_on=[short.key])
    svc.create_ticket("PROJ", "free", priority="high")
    svc.claim(short.key, "agent-1", 20)
    svc.claim(long.key, "agent-2", 120)

    summary = services.status.get_summary("PROJ")

    counts = summary.counts.to_dict()
    assert counts == {
        "workable": 1,
        "working": 2,
        "review": 0,
        "blocked_deps": 1,
        "blocked_human": 0,
        "pending_inbox": 0,
        "closed": 0,
    }
    assert [claim.ticket_key for claim in summary.expiring_soon] == [short.key]
    assert summary.expiring_soon[0].minutes_remaining == 20
    assert summary.generated_at == services.clock()
    assert len(summary.recent) == 5
    assert summary.recent[0].entry.action is ActivityAction.CLAIMED
    assert summary.recent[0].age == "just now"


def test_summary_ages_recent_activity(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    services.tickets.create_ticket("PROJ", "old news")
    services.clock.advance(minutes=90)

    summary = services.status.get_summary()
    assert summary.project_key is None
    assert [item.age for item in summary.recent] == ["1h ago"]


def test_list_workable_orders_by_priority_then_age(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    svc.create_ticket("PROJ", "medium first")
    services.clock.advance(seconds=1)
    svc.create_ticket("PROJ", "lowest", priority="lowest")
    services.clock.advance(seconds=1)
    svc.create_ticket("PROJ", "highest", priority="highest")
    services.clock.advance(seconds=1)
    svc.create_ticket("PROJ", "medium second")

    titles = [ticket.title for ticket in services.status.list_workable("PROJ")]
    assert titles == ["highest", "medium first", "medium second", "lowest"]
    assert len(services.status.list_workable(limit=2)) == 2
