"""Concurrent claims from independent store handles on one database file."""

from __future__ import annotations

import sqlite3
import threading
from typing import TYPE_CHECKING

import pytest

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import TicketStatus
from wark.persistence.state_db import StateDB
from wark.service import TicketService

from . import open_services

if TYPE_CHECKING:
    from pathlib import Path

_WORKERS = 8


def test_exactly_one_concurrent_claim_wins(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    ticket = services.tickets.create_ticket("PROJ", "Contended").ticket
    db_path = services.db.path

    # One handle per worker, as separate agent processes would have.
    contenders = [TicketService(StateDB(db_path), clock=services.clock) for _ in range(_WORKERS)]
    barrier = threading.Barrier(_WORKERS)
    lock = threading.Lock()
    winners: list[str] = []
    losers: list[ErrorCode] = []
    unexpected: list[Exception] = []

    def attempt(index: int, service: TicketService) -> None:
        worker = f"agent-{index}"
        barrier.wait()
        try:
            service.claim(ticket.key, worker, 30)
        except TicketError as exc:
            with lock:
                losers.append(exc.code)
        except Exception as exc:  # noqa: BLE001
            with lock:
                unexpected.append(exc)
        else:
            with lock:
                winners.append(worker)

    threads = [
        threading.Thread(target=attempt, args=(index, service))
        for index, service in enumerate(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert unexpected == []
    assert len(winners) == 1
    assert losers == [ErrorCode.ALREADY_CLAIMED] * (_WORKERS - 1)

    details = services.tickets.get_ticket(ticket.key)
    assert details.ticket.status is TicketStatus.WORKING
    assert details.active_claim is not None
    assert details.active_claim.worker_id == winners[0]
    rows = services.db.query_all("SELECT COUNT(*) AS n FROM claims")
    assert rows == [{"n": 1}]


def test_busy_store_is_a_retryable_conflict(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    ticket = services.tickets.create_ticket("PROJ", "Contended").ticket
    impatient = TicketService(
        StateDB(services.db.path, busy_timeout_ms=10, busy_retry_limit=1, busy_retry_backoff_ms=0),
        clock=services.clock,
    )

    holder = sqlite3.connect(services.db.path, isolation_level=None)
    try:
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(TicketError) as excinfo:
            impatient.claim(ticket.key, "agent-1", 30)
        holder.execute("ROLLBACK")
    finally:
        holder.close()

    busy = excinfo.value
    assert busy.code is ErrorCode.CONCURRENT_MODIFICATION
    assert busy.retryable
    assert busy.exit_code == 6
    assert busy.details["store_busy"] is True
    assert isinstance(busy.__cause__, Exception)

    retried = impatient.claim(ticket.key, "agent-1", 30)
    assert retried.ticket.status is TicketStatus.WORKING
