"""
wark — entity store repositories

File: src/wark/persistence/repositories.py

Purpose
- Repository/DAO classes reading and writing domain entities in the state DB:
  ProjectRepo, MilestoneRepo, TicketRepo, DependencyRepo, ClaimRepo, InboxRepo,
  ActivityRepo, TaskRepo.

Functional requirements
- Every method accepts an optional live connection so callers can compose many
  writes into one transaction; without one, writes open their own.
- Ticket updates are optimistic: the row is written only if ``updated_at`` still
  matches the snapshot the caller read.
- A unique-index violation on active claims surfaces as ALREADY_CLAIMED.

Non-functional requirements
- Must be efficient; list queries are paginated and never load whole tables
  unless asked to (integrity checks).
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from typing import Any, Final, cast

from wark.domain import keys as domain_keys
from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ActivityAction,
    ActivityEntry,
    ActorType,
    Claim,
    ClaimStatus,
    Complexity,
    InboxMessage,
    MessageType,
    Milestone,
    MilestoneStatus,
    Priority,
    Project,
    Ticket,
    TicketStatus,
    TicketTask,
    as_utc_datetime,
    details_to_json,
    to_iso8601z,
)
from wark.persistence.state_db import PRIORITY_ORDER_SQL, RowValue, SQLParams, StateDB

_MAX_PAGE_SIZE: Final[int] = 1_000
_TIMESTAMP_STEP: Final[timedelta] = timedelta(microseconds=1)

_TICKET_SELECT: Final[str] = """
SELECT t.*, p.key AS project_key
FROM tickets t
JOIN projects p ON p.id = t.project_id
"""

_INBOX_SELECT: Final[str] = """
SELECT m.*, p.key || '-' || t.number AS ticket_key, t.title AS ticket_title
FROM inbox_messages m
JOIN tickets t ON t.id = m.ticket_id
JOIN projects p ON p.id = t.project_id
"""

_ACTIVITY_SELECT: Final[str] = """
SELECT a.*, p.key || '-' || t.number AS ticket_key
FROM activity_log a
JOIN tickets t ON t.id = a.ticket_id
JOIN projects p ON p.id = t.project_id
"""

_MILESTONE_SELECT: Final[str] = """
SELECT m.*, p.key AS project_key
FROM milestones m
JOIN projects p ON p.id = m.project_id
"""


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.ensure_migrated()

    @property
    def db(self) -> StateDB:
        return self._db

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class ProjectRepo(_BaseRepo):
    """Projects and their private ticket-numbering sequence."""

    def add(
        self,
        key: str,
        name: str,
        *,
        description: str | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Project:
        normalized_key = domain_keys.normalize_project_key(key)
        stamp = _iso8601z(now or _utc_now())
        with self._db.transaction(conn=conn) as tx:
            project_id = self._db.insert(
                """
                INSERT INTO projects (key, name, description, next_number, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (normalized_key, name, description, stamp, stamp),
                conn=tx,
            )
            project = self.get(project_id, conn=tx)
        if project is None:
            raise ValueError(f"project {normalized_key} vanished after insert")
        return project

    def get(self, project_id: int, *, conn: sqlite3.Connection | None = None) -> Project | None:
        row = self._db.query_one("SELECT * FROM projects WHERE id = ?", (project_id,), conn=conn)
        return None if row is None else _project_from_row(row)

    def get_by_key(self, key: str, *, conn: sqlite3.Connection | None = None) -> Project | None:
        row = self._db.query_one(
            "SELECT * FROM projects WHERE key = ?",
            (key.strip().upper(),),
            conn=conn,
        )
        return None if row is None else _project_from_row(row)

    def list(self, *, conn: sqlite3.Connection | None = None) -> list[Project]:
        rows = self._db.query_all("SELECT * FROM projects ORDER BY key ASC", conn=conn)
        return [_project_from_row(row) for row in rows]

    def allocate_number(self, project_id: int, *, conn: sqlite3.Connection) -> int:
        """Reserve the next ticket number; caller must hold a write transaction."""
        row = self._db.query_one(
            "SELECT next_number FROM projects WHERE id = ?", (project_id,), conn=conn
        )
        if row is None:
            raise ValueError(f"project_id not found: {project_id}")
        number = _row_int(row, "next_number", "projects.next_number")
        self._db.execute(
            "UPDATE projects SET next_number = ?, updated_at = ? WHERE id = ?",
            (number + 1, _iso8601z(_utc_now()), project_id),
            conn=conn,
        )
        return number

    def delete(self, project_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn=conn) as tx:
            return self._db.execute("DELETE FROM projects WHERE id = ?", (project_id,), conn=tx) > 0

    def status_counts(
        self, project_id: int | None = None, *, conn: sqlite3.Connection | None = None
    ) -> dict[TicketStatus, int]:
        sql = "SELECT status, COUNT(*) AS n FROM tickets"
        params: list[object] = []
        if project_id is not None:
            sql += " WHERE project_id = ?"
            params.append(project_id)
        sql += " GROUP BY status"
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        counts = {status: 0 for status in TicketStatus}
        for row in rows:
            counts[TicketStatus(_row_text(row, "status", "tickets.status"))] = _row_int(
                row, "n", "count"
            )
        return counts


class MilestoneRepo(_BaseRepo):
    def add(
        self,
        project: Project,
        key: str,
        name: str,
        *,
        goal: str | None = None,
        target_date: date | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Milestone:
        normalized_key = domain_keys.normalize_milestone_key(key)
        stamp = _iso8601z(now or _utc_now())
        with self._db.transaction(conn=conn) as tx:
            milestone_id = self._db.insert(
                """
                INSERT INTO milestones (
                    project_id, key, name, goal, target_date, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 'open', ?, ?)
                """,
                (
                    project.id,
                    normalized_key,
                    name,
                    goal,
                    target_date.isoformat() if target_date is not None else None,
                    stamp,
                    stamp,
                ),
                conn=tx,
            )
            milestone = self.get(milestone_id, conn=tx)
        if milestone is None:
            raise ValueError(f"milestone {normalized_key} vanished after insert")
        return milestone

    def get(
        self, milestone_id: int, *, conn: sqlite3.Connection | None = None
    ) -> Milestone | None:
        row = self._db.query_one(
            _MILESTONE_SELECT + " WHERE m.id = ?", (milestone_id,), conn=conn
        )
        return None if row is None else _milestone_from_row(row)

    def get_by_key(
        self, project_id: int, key: str, *, conn: sqlite3.Connection | None = None
    ) -> Milestone | None:
        row = self._db.query_one(
            _MILESTONE_SELECT + " WHERE m.project_id = ? AND m.key = ?",
            (project_id, key.strip().upper()),
            conn=conn,
        )
        return None if row is None else _milestone_from_row(row)

    def list(
        self,
        *,
        project_id: int | None = None,
        status: MilestoneStatus | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Milestone]:
        sql = _MILESTONE_SELECT
        clauses: list[str] = []
        params: list[object] = []
        if project_id is not None:
            clauses.append("m.project_id = ?")
            params.append(project_id)
        if status is not None:
            clauses.append("m.status = ?")
            params.append(status.value)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY p.key ASC, COALESCE(m.target_date, '9999-12-31') ASC, m.key ASC"
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_milestone_from_row(row) for row in rows]

    def update(
        self,
        milestone: Milestone,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Milestone:
        stamp = now or _utc_now()
        with self._db.transaction(conn=conn) as tx:
            self._db.execute(
                """
                UPDATE milestones
                SET name = ?, goal = ?, target_date = ?, status = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    milestone.name,
                    milestone.goal,
                    milestone.target_date.isoformat() if milestone.target_date else None,
                    milestone.status.value,
                    _iso8601z(stamp),
                    milestone.id,
                ),
                conn=tx,
            )
        return replace(milestone, updated_at=stamp)

    def delete(self, milestone_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn=conn) as tx:
            return (
                self._db.execute("DELETE FROM milestones WHERE id = ?", (milestone_id,), conn=tx)
                > 0
            )


class TicketRepo(_BaseRepo):
    """Tickets, with optimistic concurrency on every update."""

    def add(
        self,
        project: Project,
        *,
        title: str,
        status: TicketStatus,
        description: str | None = None,
        priority: Priority = Priority.MEDIUM,
        complexity: Complexity = Complexity.MEDIUM,
        max_retries: int = 3,
        parent_ticket_id: int | None = None,
        milestone_id: int | None = None,
        aggregate_only: bool = False,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Ticket:
        stamp = _iso8601z(now or _utc_now())
        with self._db.transaction(conn=conn) as tx:
            number = ProjectRepo(self._db).allocate_number(project.id, conn=tx)
            ticket_id = self._db.insert(
                """
                INSERT INTO tickets (
                    project_id, number, title, description, status, priority, complexity,
                    retry_count, max_retries, parent_ticket_id, milestone_id, aggregate_only,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project.id,
                    number,
                    title,
                    description,
                    status.value,
                    priority.value,
                    complexity.value,
                    max_retries,
                    parent_ticket_id,
                    milestone_id,
                    1 if aggregate_only else 0,
                    stamp,
                    stamp,
                ),
                conn=tx,
            )
            ticket = self.get(ticket_id, conn=tx)
        if ticket is None:
            raise ValueError(f"ticket {project.key}-{number} vanished after insert")
        return ticket

    def get(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> Ticket | None:
        row = self._db.query_one(_TICKET_SELECT + " WHERE t.id = ?", (ticket_id,), conn=conn)
        return None if row is None else _ticket_from_row(row)

    def get_by_key(self, key: str, *, conn: sqlite3.Connection | None = None) -> Ticket | None:
        project_key, number = domain_keys.parse_ticket_key(key)
        row = self._db.query_one(
            _TICKET_SELECT + " WHERE p.key = ? AND t.number = ?",
            (project_key, number),
            conn=conn,
        )
        return None if row is None else _ticket_from_row(row)

    def list(
        self,
        *,
        project_id: int | None = None,
        statuses: Sequence[TicketStatus] | None = None,
        parent_ticket_id: int | None = None,
        milestone_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[Ticket]:
        self._validate_page(limit, offset)
        sql = _TICKET_SELECT
        clauses: list[str] = []
        params: list[object] = []
        if project_id is not None:
            clauses.append("t.project_id = ?")
            params.append(project_id)
        if statuses:
            clauses.append(f"t.status IN ({','.join('?' for _ in statuses)})")
            params.extend(status.value for status in statuses)
        if parent_ticket_id is not None:
            clauses.append("t.parent_ticket_id = ?")
            params.append(parent_ticket_id)
        if milestone_id is not None:
            clauses.append("t.milestone_id = ?")
            params.append(milestone_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {PRIORITY_ORDER_SQL} ASC, t.created_at ASC, t.id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_ticket_from_row(row) for row in rows]

    def list_all(self, *, conn: sqlite3.Connection | None = None) -> list[Ticket]:
        rows = self._db.query_all(_TICKET_SELECT + " ORDER BY t.id ASC", conn=conn)
        return [_ticket_from_row(row) for row in rows]

    def list_children(
        self, parent_ticket_id: int, *, conn: sqlite3.Connection | None = None
    ) -> list[Ticket]:
        rows = self._db.query_all(
            _TICKET_SELECT + " WHERE t.parent_ticket_id = ? ORDER BY t.number ASC",
            (parent_ticket_id,),
            conn=conn,
        )
        return [_ticket_from_row(row) for row in rows]

    def list_workable(
        self,
        *,
        project_id: int | None = None,
        limit: int = 100,
        conn: sqlite3.Connection | None = None,
    ) -> list[Ticket]:
        self._validate_page(limit, 0)
        sql = "SELECT t.* FROM workable_tickets t"
        params: list[object] = []
        if project_id is not None:
            sql += " WHERE t.project_id = ?"
            params.append(project_id)
        sql += f" ORDER BY {PRIORITY_ORDER_SQL} ASC, t.created_at ASC, t.id ASC LIMIT ?"
        params.append(limit)
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_ticket_from_row(row) for row in rows]

    def update(
        self,
        ticket: Ticket,
        *,
        expected_updated_at: datetime,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Ticket:
        """Write every mutable column if the row still carries ``expected_updated_at``.

        Raises ``TicketError(CONCURRENT_MODIFICATION)`` when another writer got
        there first and ``TicketError(NOT_FOUND)`` when the row is gone.
        """
        stamp = _next_timestamp(now or _utc_now(), expected_updated_at)
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                """
                UPDATE tickets
                SET title = ?, description = ?, status = ?, resolution = ?,
                    human_flag_reason = ?, priority = ?, complexity = ?, retry_count = ?,
                    max_retries = ?, branch_name = ?, parent_ticket_id = ?, milestone_id = ?,
                    aggregate_only = ?, completed_at = ?, updated_at = ?
                WHERE id = ? AND updated_at = ?
                """,
                (
                    ticket.title,
                    ticket.description,
                    ticket.status.value,
                    ticket.resolution.value if ticket.resolution is not None else None,
                    ticket.human_flag_reason.value if ticket.human_flag_reason else None,
                    ticket.priority.value,
                    ticket.complexity.value,
                    ticket.retry_count,
                    ticket.max_retries,
                    ticket.branch_name,
                    ticket.parent_ticket_id,
                    ticket.milestone_id,
                    1 if ticket.aggregate_only else 0,
                    _iso8601z(ticket.completed_at) if ticket.completed_at else None,
                    _iso8601z(stamp),
                    ticket.id,
                    _iso8601z(expected_updated_at),
                ),
                conn=tx,
            )
            if changed == 0:
                current = self._db.query_one(
                    "SELECT updated_at, status FROM tickets WHERE id = ?",
                    (ticket.id,),
                    conn=tx,
                )
                if current is None:
                    raise TicketError.not_found("ticket", ticket.key)
                raise TicketError(
                    ErrorCode.CONCURRENT_MODIFICATION,
                    f"ticket {ticket.key} was modified concurrently; re-read and retry",
                    {
                        "ticket": ticket.key,
                        "expected_updated_at": _iso8601z(expected_updated_at),
                        "actual_updated_at": current.get("updated_at"),
                        "current_status": current.get("status"),
                    },
                )
        return replace(ticket, updated_at=stamp)

    def delete(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
        with self._db.transaction(conn=conn) as tx:
            return self._db.execute("DELETE FROM tickets WHERE id = ?", (ticket_id,), conn=tx) > 0


class DependencyRepo(_BaseRepo):
    """Directed edges ``ticket -> depends_on``."""

    def add(
        self,
        ticket_id: int,
        depends_on_id: int,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with self._db.transaction(conn=conn) as tx:
            self._db.execute(
                """
                INSERT INTO ticket_dependencies (ticket_id, depends_on_id, created_at)
                VALUES (?, ?, ?)
                """,
                (ticket_id, depends_on_id, _iso8601z(now or _utc_now())),
                conn=tx,
            )

    def remove(
        self, ticket_id: int, depends_on_id: int, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        with self._db.transaction(conn=conn) as tx:
            removed = self._db.execute(
                "DELETE FROM ticket_dependencies WHERE ticket_id = ? AND depends_on_id = ?",
                (ticket_id, depends_on_id),
                conn=tx,
            )
        return removed > 0

    def exists(
        self, ticket_id: int, depends_on_id: int, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        row = self._db.query_one(
            "SELECT 1 AS hit FROM ticket_dependencies WHERE ticket_id = ? AND depends_on_id = ?",
            (ticket_id, depends_on_id),
            conn=conn,
        )
        return row is not None

    def dependencies(
        self, ticket_id: int, *, conn: sqlite3.Connection | None = None
    ) -> list[Ticket]:
        rows = self._db.query_all(
            _TICKET_SELECT
            + """
            JOIN ticket_dependencies d ON d.depends_on_id = t.id
            WHERE d.ticket_id = ?
            ORDER BY t.id ASC
            """,
            (ticket_id,),
            conn=conn,
        )
        return [_ticket_from_row(row) for row in rows]

    def unresolved(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> list[Ticket]:
        return [
            ticket
            for ticket in self.dependencies(ticket_id, conn=conn)
            if not ticket.status.is_terminal
        ]

    def dependents(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> list[Ticket]:
        rows = self._db.query_all(
            _TICKET_SELECT
            + """
            JOIN ticket_dependencies d ON d.ticket_id = t.id
            WHERE d.depends_on_id = ?
            ORDER BY t.id ASC
            """,
            (ticket_id,),
            conn=conn,
        )
        return [_ticket_from_row(row) for row in rows]

    def reaches(
        self, start_id: int, target_id: int, *, conn: sqlite3.Connection | None = None
    ) -> bool:
        """True when ``target_id`` is reachable from ``start_id`` along depends-on edges."""
        row = self._db.query_one(
            """
            WITH RECURSIVE reach(id) AS (
                SELECT depends_on_id FROM ticket_dependencies WHERE ticket_id = ?
                UNION
                SELECT d.depends_on_id
                FROM ticket_dependencies d
                JOIN reach r ON d.ticket_id = r.id
            )
            SELECT 1 AS hit FROM reach WHERE id = ? LIMIT 1
            """,
            (start_id, target_id),
            conn=conn,
        )
        return row is not None

    def edges(self, *, conn: sqlite3.Connection | None = None) -> list[tuple[int, int]]:
        rows = self._db.query_all(
            "SELECT ticket_id, depends_on_id FROM ticket_dependencies ORDER BY ticket_id, depends_on_id",
            conn=conn,
        )
        return [
            (
                _row_int(row, "ticket_id", "ticket_dependencies.ticket_id"),
                _row_int(row, "depends_on_id", "ticket_dependencies.depends_on_id"),
            )
            for row in rows
        ]


class ClaimRepo(_BaseRepo):
    """Leases; the partial unique index is the only mutex."""

    def add(
        self,
        ticket: Ticket,
        worker_id: str,
        *,
        claimed_at: datetime,
        expires_at: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> Claim:
        claim_id = domain_keys.generate_claim_id()
        try:
            with self._db.transaction(conn=conn) as tx:
                row_id = self._db.insert(
                    """
                    INSERT INTO claims (
                        claim_id, ticket_id, worker_id, claimed_at, expires_at, status
                    ) VALUES (?, ?, ?, ?, ?, 'active')
                    """,
                    (claim_id, ticket.id, worker_id, _iso8601z(claimed_at), _iso8601z(expires_at)),
                    conn=tx,
                )
                claim = self.get(row_id, conn=tx)
        except sqlite3.IntegrityError as exc:
            if "claims.ticket_id" not in str(exc):
                raise
            holder = self.get_active(ticket.id, conn=conn)
            raise TicketError(
                ErrorCode.ALREADY_CLAIMED,
                f"ticket {ticket.key} is already claimed",
                {
                    "ticket": ticket.key,
                    "worker_id": holder.worker_id if holder else None,
                    "expires_at": _iso8601z(holder.expires_at) if holder else None,
                },
            ) from exc
        if claim is None:
            raise ValueError(f"claim {claim_id} vanished after insert")
        return claim

    def get(self, claim_row_id: int, *, conn: sqlite3.Connection | None = None) -> Claim | None:
        row = self._db.query_one("SELECT * FROM claims WHERE id = ?", (claim_row_id,), conn=conn)
        return None if row is None else _claim_from_row(row)

    def get_active(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> Claim | None:
        row = self._db.query_one(
            "SELECT * FROM claims WHERE ticket_id = ? AND status = 'active'",
            (ticket_id,),
            conn=conn,
        )
        return None if row is None else _claim_from_row(row)

    def list_for_ticket(
        self, ticket_id: int, *, conn: sqlite3.Connection | None = None
    ) -> list[Claim]:
        rows = self._db.query_all(
            "SELECT * FROM claims WHERE ticket_id = ? ORDER BY id DESC",
            (ticket_id,),
            conn=conn,
        )
        return [_claim_from_row(row) for row in rows]

    def list_active(self, *, conn: sqlite3.Connection | None = None) -> list[Claim]:
        rows = self._db.query_all(
            "SELECT * FROM claims WHERE status = 'active' ORDER BY expires_at ASC, id ASC",
            conn=conn,
        )
        return [_claim_from_row(row) for row in rows]

    def list_recent(
        self, *, limit: int = 100, conn: sqlite3.Connection | None = None
    ) -> list[Claim]:
        """Every claim regardless of status, newest first."""
        self._validate_page(limit, 0)
        rows = self._db.query_all(
            "SELECT * FROM claims ORDER BY claimed_at DESC, id DESC LIMIT ?",
            (limit,),
            conn=conn,
        )
        return [_claim_from_row(row) for row in rows]

    def list_expired(
        self, now: datetime, *, conn: sqlite3.Connection | None = None
    ) -> list[Claim]:
        rows = self._db.query_all(
            """
            SELECT * FROM claims
            WHERE status = 'active' AND expires_at <= ?
            ORDER BY expires_at ASC, id ASC
            """,
            (_iso8601z(now),),
            conn=conn,
        )
        return [_claim_from_row(row) for row in rows]

    def finish(
        self,
        claim: Claim,
        status: ClaimStatus,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Claim | None:
        """Move an active claim to ``status``; ``None`` if it already left ``active``."""
        if status is ClaimStatus.ACTIVE:
            raise ValueError("finish() needs a terminal claim status")
        stamp = now or _utc_now()
        # A lease can only end at or after it started.
        stamp = max(stamp, claim.claimed_at)
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                """
                UPDATE claims SET status = ?, released_at = ?
                WHERE id = ? AND status = 'active'
                """,
                (status.value, _iso8601z(stamp), claim.id),
                conn=tx,
            )
        if changed == 0:
            return None
        return replace(claim, status=status, released_at=stamp)

    def extend(
        self,
        claim: Claim,
        expires_at: datetime,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Claim | None:
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                "UPDATE claims SET expires_at = ? WHERE id = ? AND status = 'active'",
                (_iso8601z(expires_at), claim.id),
                conn=tx,
            )
        if changed == 0:
            return None
        return replace(claim, expires_at=expires_at)


class InboxRepo(_BaseRepo):
    def add(
        self,
        ticket_id: int,
        message_type: MessageType,
        content: str,
        *,
        from_agent: str | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> InboxMessage:
        with self._db.transaction(conn=conn) as tx:
            message_id = self._db.insert(
                """
                INSERT INTO inbox_messages (ticket_id, message_type, content, from_agent, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (ticket_id, message_type.value, content, from_agent, _iso8601z(now or _utc_now())),
                conn=tx,
            )
            message = self.get(message_id, conn=tx)
        if message is None:
            raise ValueError(f"inbox message {message_id} vanished after insert")
        return message

    def get(
        self, message_id: int, *, conn: sqlite3.Connection | None = None
    ) -> InboxMessage | None:
        row = self._db.query_one(_INBOX_SELECT + " WHERE m.id = ?", (message_id,), conn=conn)
        return None if row is None else _inbox_from_row(row)

    def respond(
        self,
        message: InboxMessage,
        response: str,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> InboxMessage | None:
        """Record a response; ``None`` if the message was already answered."""
        stamp = now or _utc_now()
        with self._db.transaction(conn=conn) as tx:
            changed = self._db.execute(
                """
                UPDATE inbox_messages SET response = ?, responded_at = ?
                WHERE id = ? AND responded_at IS NULL
                """,
                (response, _iso8601z(stamp), message.id),
                conn=tx,
            )
        if changed == 0:
            return None
        return replace(message, response=response, responded_at=stamp)

    def list(
        self,
        *,
        pending_only: bool = True,
        project_id: int | None = None,
        ticket_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[InboxMessage]:
        self._validate_page(limit, offset)
        sql = _INBOX_SELECT
        clauses: list[str] = []
        params: list[object] = []
        if pending_only:
            clauses.append("m.responded_at IS NULL")
        if project_id is not None:
            clauses.append("t.project_id = ?")
            params.append(project_id)
        if ticket_id is not None:
            clauses.append("m.ticket_id = ?")
            params.append(ticket_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY m.created_at ASC, m.id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_inbox_from_row(row) for row in rows]

    def count_pending(
        self, *, project_id: int | None = None, conn: sqlite3.Connection | None = None
    ) -> int:
        sql = "SELECT COUNT(*) AS n FROM pending_human_input"
        params: tuple[object, ...] = ()
        if project_id is not None:
            sql += " WHERE project_id = ?"
            params = (project_id,)
        row = self._db.query_one(sql, cast("SQLParams", params), conn=conn)
        return 0 if row is None else _row_int(row, "n", "count")


class ActivityRepo(_BaseRepo):
    """Append-only history. There is deliberately no update or delete method."""

    def add(
        self,
        ticket_id: int,
        action: ActivityAction,
        *,
        actor_type: ActorType,
        summary: str,
        actor_id: str | None = None,
        details: Mapping[str, Any] | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ActivityEntry:
        with self._db.transaction(conn=conn) as tx:
            entry_id = self._db.insert(
                """
                INSERT INTO activity_log (
                    ticket_id, action, actor_type, actor_id, details_json, summary, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket_id,
                    action.value,
                    actor_type.value,
                    actor_id,
                    details_to_json(details),
                    summary,
                    _iso8601z(now or _utc_now()),
                ),
                conn=tx,
            )
            row = self._db.query_one(_ACTIVITY_SELECT + " WHERE a.id = ?", (entry_id,), conn=tx)
        if row is None:
            raise ValueError(f"activity entry {entry_id} vanished after insert")
        return _activity_from_row(row)

    def list_for_ticket(
        self,
        ticket_id: int,
        *,
        action: ActivityAction | None = None,
        limit: int = 100,
        offset: int = 0,
        conn: sqlite3.Connection | None = None,
    ) -> list[ActivityEntry]:
        self._validate_page(limit, offset)
        sql = _ACTIVITY_SELECT + " WHERE a.ticket_id = ?"
        params: list[object] = [ticket_id]
        if action is not None:
            sql += " AND a.action = ?"
            params.append(action.value)
        sql += " ORDER BY a.id ASC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_activity_from_row(row) for row in rows]

    def recent(
        self,
        *,
        project_id: int | None = None,
        limit: int = 5,
        conn: sqlite3.Connection | None = None,
    ) -> list[ActivityEntry]:
        self._validate_page(limit, 0)
        sql = _ACTIVITY_SELECT
        params: list[object] = []
        if project_id is not None:
            sql += " WHERE t.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY a.id DESC LIMIT ?"
        params.append(limit)
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)), conn=conn)
        return [_activity_from_row(row) for row in rows]


class TaskRepo(_BaseRepo):
    def add(
        self,
        ticket_id: int,
        description: str,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> TicketTask:
        stamp = _iso8601z(now or _utc_now())
        with self._db.transaction(conn=conn) as tx:
            row = self._db.query_one(
                "SELECT COALESCE(MAX(position) + 1, 0) AS next_position FROM ticket_tasks "
                "WHERE ticket_id = ?",
                (ticket_id,),
                conn=tx,
            )
            position = 0 if row is None else _row_int(row, "next_position", "position")
            task_id = self._db.insert(
                """
                INSERT INTO ticket_tasks (
                    ticket_id, position, description, complete, created_at, updated_at
                ) VALUES (?, ?, ?, 0, ?, ?)
                """,
                (ticket_id, position, description, stamp, stamp),
                conn=tx,
            )
            task_row = self._db.query_one(
                "SELECT * FROM ticket_tasks WHERE id = ?", (task_id,), conn=tx
            )
        if task_row is None:
            raise ValueError(f"task {task_id} vanished after insert")
        return _task_from_row(task_row)

    def list(self, ticket_id: int, *, conn: sqlite3.Connection | None = None) -> list[TicketTask]:
        rows = self._db.query_all(
            "SELECT * FROM ticket_tasks WHERE ticket_id = ? ORDER BY position ASC",
            (ticket_id,),
            conn=conn,
        )
        return [_task_from_row(row) for row in rows]

    def get(
        self, ticket_id: int, position: int, *, conn: sqlite3.Connection | None = None
    ) -> TicketTask | None:
        row = self._db.query_one(
            "SELECT * FROM ticket_tasks WHERE ticket_id = ? AND position = ?",
            (ticket_id, position),
            conn=conn,
        )
        return None if row is None else _task_from_row(row)

    def set_complete(
        self,
        task: TicketTask,
        complete: bool,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> TicketTask:
        stamp = now or _utc_now()
        with self._db.transaction(conn=conn) as tx:
            self._db.execute(
                "UPDATE ticket_tasks SET complete = ?, updated_at = ? WHERE id = ?",
                (1 if complete else 0, _iso8601z(stamp), task.id),
                conn=tx,
            )
        return replace(task, complete=complete, updated_at=stamp)

    def remove(
        self,
        task: TicketTask,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Delete ``task`` and close the gap; returns the number of tasks left."""
        stamp = _iso8601z(now or _utc_now())
        with self._db.transaction(conn=conn) as tx:
            self._db.execute("DELETE FROM ticket_tasks WHERE id = ?", (task.id,), conn=tx)
            later = self._db.query_all(
                "SELECT id, position FROM ticket_tasks WHERE ticket_id = ? AND position > ? "
                "ORDER BY position ASC",
                (task.ticket_id, task.position),
                conn=tx,
            )
            # Ascending order keeps UNIQUE(ticket_id, position) satisfied row by row.
            for row in later:
                self._db.execute(
                    "UPDATE ticket_tasks SET position = ?, updated_at = ? WHERE id = ?",
                    (_row_int(row, "position", "position") - 1, stamp, row["id"]),
                    conn=tx,
                )
            remaining = self._db.query_one(
                "SELECT COUNT(*) AS n FROM ticket_tasks WHERE ticket_id = ?",
                (task.ticket_id,),
                conn=tx,
            )
        return 0 if remaining is None else _row_int(remaining, "n", "count")


def _project_from_row(row: Mapping[str, RowValue]) -> Project:
    return Project(
        id=_row_int(row, "id", "projects.id"),
        key=_row_text(row, "key", "projects.key"),
        name=_row_text(row, "name", "projects.name"),
        description=_row_optional_text(row, "description", "projects.description"),
        next_number=_row_int(row, "next_number", "projects.next_number"),
        created_at=_row_text(row, "created_at", "projects.created_at"),
        updated_at=_row_text(row, "updated_at", "projects.updated_at"),
    )


def _milestone_from_row(row: Mapping[str, RowValue]) -> Milestone:
    return Milestone(
        id=_row_int(row, "id", "milestones.id"),
        project_id=_row_int(row, "project_id", "milestones.project_id"),
        project_key=_row_text(row, "project_key", "projects.key"),
        key=_row_text(row, "key", "milestones.key"),
        name=_row_text(row, "name", "milestones.name"),
        goal=_row_optional_text(row, "goal", "milestones.goal"),
        target_date=_row_optional_text(row, "target_date", "milestones.target_date"),
        status=_row_text(row, "status", "milestones.status"),
        created_at=_row_text(row, "created_at", "milestones.created_at"),
        updated_at=_row_text(row, "updated_at", "milestones.updated_at"),
    )


def _ticket_from_row(row: Mapping[str, RowValue]) -> Ticket:
    return Ticket(
        id=_row_int(row, "id", "tickets.id"),
        project_id=_row_int(row, "project_id", "tickets.project_id"),
        project_key=_row_text(row, "project_key", "projects.key"),
        number=_row_int(row, "number", "tickets.number"),
        title=_row_text(row, "title", "tickets.title"),
        description=_row_optional_text(row, "description", "tickets.description"),
        status=_row_text(row, "status", "tickets.status"),
        resolution=_row_optional_text(row, "resolution", "tickets.resolution"),
        human_flag_reason=_row_optional_text(
            row, "human_flag_reason", "tickets.human_flag_reason"
        ),
        priority=_row_text(row, "priority", "tickets.priority"),
        complexity=_row_text(row, "complexity", "tickets.complexity"),
        retry_count=_row_int(row, "retry_count", "tickets.retry_count"),
        max_retries=_row_int(row, "max_retries", "tickets.max_retries"),
        branch_name=_row_optional_text(row, "branch_name", "tickets.branch_name"),
        parent_ticket_id=_row_optional_int(row, "parent_ticket_id", "tickets.parent_ticket_id"),
        milestone_id=_row_optional_int(row, "milestone_id", "tickets.milestone_id"),
        aggregate_only=_row_int(row, "aggregate_only", "tickets.aggregate_only"),
        created_at=_row_text(row, "created_at", "tickets.created_at"),
        updated_at=_row_text(row, "updated_at", "tickets.updated_at"),
        completed_at=_row_optional_text(row, "completed_at", "tickets.completed_at"),
    )


def _claim_from_row(row: Mapping[str, RowValue]) -> Claim:
    return Claim(
        id=_row_int(row, "id", "claims.id"),
        claim_id=_row_text(row, "claim_id", "claims.claim_id"),
        ticket_id=_row_int(row, "ticket_id", "claims.ticket_id"),
        worker_id=_row_text(row, "worker_id", "claims.worker_id"),
        claimed_at=_row_text(row, "claimed_at", "claims.claimed_at"),
        expires_at=_row_text(row, "expires_at", "claims.expires_at"),
        released_at=_row_optional_text(row, "released_at", "claims.released_at"),
        status=_row_text(row, "status", "claims.status"),
    )


def _inbox_from_row(row: Mapping[str, RowValue]) -> InboxMessage:
    return InboxMessage(
        id=_row_int(row, "id", "inbox_messages.id"),
        ticket_id=_row_int(row, "ticket_id", "inbox_messages.ticket_id"),
        message_type=_row_text(row, "message_type", "inbox_messages.message_type"),
        content=_row_text(row, "content", "inbox_messages.content"),
        from_agent=_row_optional_text(row, "from_agent", "inbox_messages.from_agent"),
        response=_row_optional_text(row, "response", "inbox_messages.response"),
        responded_at=_row_optional_text(row, "responded_at", "inbox_messages.responded_at"),
        created_at=_row_text(row, "created_at", "inbox_messages.created_at"),
        ticket_key=_row_optional_text(row, "ticket_key", "ticket_key"),
        ticket_title=_row_optional_text(row, "ticket_title", "ticket_title"),
    )


def _activity_from_row(row: Mapping[str, RowValue]) -> ActivityEntry:
    return ActivityEntry(
        id=_row_int(row, "id", "activity_log.id"),
        ticket_id=_row_int(row, "ticket_id", "activity_log.ticket_id"),
        action=_row_text(row, "action", "activity_log.action"),
        actor_type=_row_text(row, "actor_type", "activity_log.actor_type"),
        actor_id=_row_optional_text(row, "actor_id", "activity_log.actor_id"),
        details=_row_text(row, "details_json", "activity_log.details_json"),
        summary=_row_text(row, "summary", "activity_log.summary"),
        created_at=_row_text(row, "created_at", "activity_log.created_at"),
        ticket_key=_row_optional_text(row, "ticket_key", "ticket_key"),
    )


def _task_from_row(row: Mapping[str, RowValue]) -> TicketTask:
    return TicketTask(
        id=_row_int(row, "id", "ticket_tasks.id"),
        ticket_id=_row_int(row, "ticket_id", "ticket_tasks.ticket_id"),
        position=_row_int(row, "position", "ticket_tasks.position"),
        description=_row_text(row, "description", "ticket_tasks.description"),
        complete=_row_int(row, "complete", "ticket_tasks.complete"),
        created_at=_row_text(row, "created_at", "ticket_tasks.created_at"),
        updated_at=_row_text(row, "updated_at", "ticket_tasks.updated_at"),
    )


def _row_text(row: Mapping[str, RowValue], key: str, path: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _row_optional_text(row: Mapping[str, RowValue], key: str, path: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected text value")
    return value


def _row_int(row: Mapping[str, RowValue], key: str, path: str) -> int:
    value = row.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer value")
    return value


def _row_optional_int(row: Mapping[str, RowValue], key: str, path: str) -> int | None:
    if row.get(key) is None:
        return None
    return _row_int(row, key, path)


def _iso8601z(value: datetime) -> str:
    return to_iso8601z(value)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _next_timestamp(now: datetime, previous: datetime) -> datetime:
    """A write timestamp strictly after ``previous`` so version checks never collide."""
    current = as_utc_datetime(now, "now")
    floor = as_utc_datetime(previous, "previous") + _TIMESTAMP_STEP
    return current if current >= floor else floor


__all__ = [
    "ActivityRepo",
    "ClaimRepo",
    "DependencyRepo",
    "InboxRepo",
    "MilestoneRepo",
    "ProjectRepo",
    "TaskRepo",
    "TicketRepo",
]
