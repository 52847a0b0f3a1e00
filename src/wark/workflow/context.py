"""Shared handles and policy for the workflow components."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from wark.constants import (
    DEFAULT_CLAIM_DURATION_MINUTES,
    DEFAULT_MAX_RETRIES,
    MAX_CLAIM_DURATION_MINUTES,
)
from wark.domain.errors import TicketError
from wark.domain.models import Ticket
from wark.persistence.repositories import (
    ActivityRepo,
    ClaimRepo,
    DependencyRepo,
    InboxRepo,
    MilestoneRepo,
    ProjectRepo,
    TaskRepo,
    TicketRepo,
)
from wark.persistence.state_db import StateDB
from wark.workflow.activity import ActivityLogger


@dataclass(frozen=True, slots=True)
class WorkflowPolicy:
    """Tunable defaults, normally built from the ``claims`` and ``tickets`` config sections."""

    default_claim_minutes: int = DEFAULT_CLAIM_DURATION_MINUTES
    max_claim_minutes: int = MAX_CLAIM_DURATION_MINUTES
    default_max_retries: int = DEFAULT_MAX_RETRIES
    auto_accept: bool = False

    def __post_init__(self) -> None:
        if self.default_claim_minutes < 1:
            raise ValueError("default_claim_minutes must be >= 1")
        if self.max_claim_minutes < self.default_claim_minutes:
            raise ValueError("max_claim_minutes must be >= default_claim_minutes")
        if self.default_max_retries < 1:
            raise ValueError("default_max_retries must be >= 1")


def utc_now() -> datetime:
    return datetime.now(UTC)


class WorkflowContext:
    """Repositories, clock, and logger for one store handle.

    Components receive a context at construction and a live connection per
    call; nothing here is global, so tests can run isolated stores side by side.
    """

    def __init__(
        self,
        db: StateDB,
        *,
        policy: WorkflowPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.db = db
        self.policy = policy or WorkflowPolicy()
        self._clock = clock or utc_now
        self.logger = logger if logger is not None else structlog.get_logger("wark.workflow")

        self.projects = ProjectRepo(db)
        self.milestones = MilestoneRepo(db)
        self.tickets = TicketRepo(db)
        self.dependencies = DependencyRepo(db)
        self.claims = ClaimRepo(db)
        self.inbox = InboxRepo(db)
        self.tasks = TaskRepo(db)
        self.activity_repo = ActivityRepo(db)
        self.activity = ActivityLogger(self.activity_repo, clock=self.now, logger=self.logger)

    def now(self) -> datetime:
        return self._clock()

    def require_ticket(self, conn: sqlite3.Connection | None, key: str) -> Ticket:
        try:
            ticket = self.tickets.get_by_key(key, conn=conn)
        except ValueError as exc:
            raise TicketError.invalid_argument(str(exc), ticket=key) from exc
        if ticket is None:
            raise TicketError.not_found("ticket", key.strip().upper())
        return ticket

    def require_ticket_id(self, conn: sqlite3.Connection | None, ticket_id: int) -> Ticket:
        ticket = self.tickets.get(ticket_id, conn=conn)
        if ticket is None:
            raise TicketError.not_found("ticket", ticket_id)
        return ticket

    def save_ticket(
        self,
        conn: sqlite3.Connection,
        before: Ticket,
        after: Ticket,
        *,
        operation: str,
    ) -> Ticket:
        """Persist ``after`` guarded by ``before.updated_at``."""
        saved = self.tickets.update(
            after,
            expected_updated_at=before.updated_at,
            now=self.now(),
            conn=conn,
        )
        if before.status is not saved.status:
            self.logger.info(
                "ticket_transition",
                ticket_key=saved.key,
                from_status=before.status.value,
                to_status=saved.status.value,
                operation=operation,
                retry_count=saved.retry_count,
            )
        return saved


__all__ = ["WorkflowContext", "WorkflowPolicy", "utc_now"]
