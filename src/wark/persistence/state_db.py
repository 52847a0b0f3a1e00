"""
wark — entity store

File: src/wark/persistence/state_db.py

Purpose
- SQLite schema management, migrations, and connection lifecycle for the
  ticket store (one file per installation, WAL journal).

Functional requirements
- Must support idempotent migration application.
- Must enforce "one active claim per ticket" with a storage-level unique index.
- Activity rows are append-only; triggers reject UPDATE and DELETE while the
  owning ticket exists.

Non-functional requirements
- Must avoid long-lived locks; every write runs in a short BEGIN IMMEDIATE
  transaction on a connection opened for that call.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final

from wark.constants import STATE_DB_SCHEMA_VERSION
from wark.domain.models import (
    ActivityAction,
    ActorType,
    ClaimStatus,
    Complexity,
    FlagReason,
    MessageType,
    MilestoneStatus,
    Priority,
    Resolution,
    TicketStatus,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Sequence[str]) -> str:
    return ",".join(f"'{value}'" for value in values)


def _enum_values(values: type[Enum]) -> tuple[str, ...]:
    return tuple(sorted(str(item.value) for item in values))


def _priority_order_sql(column: str) -> str:
    cases = " ".join(f"WHEN '{item.value}' THEN {item.ordinal}" for item in Priority)
    return f"CASE {column} {cases} ELSE 99 END"


_TICKET_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(TicketStatus)
_RESOLUTION_VALUES: Final[tuple[str, ...]] = _enum_values(Resolution)
_FLAG_REASON_VALUES: Final[tuple[str, ...]] = _enum_values(FlagReason)
_PRIORITY_VALUES: Final[tuple[str, ...]] = _enum_values(Priority)
_COMPLEXITY_VALUES: Final[tuple[str, ...]] = _enum_values(Complexity)
_CLAIM_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(ClaimStatus)
_MESSAGE_TYPE_VALUES: Final[tuple[str, ...]] = _enum_values(MessageType)
_ACTIVITY_ACTION_VALUES: Final[tuple[str, ...]] = _enum_values(ActivityAction)
_ACTOR_TYPE_VALUES: Final[tuple[str, ...]] = _enum_values(ActorType)
_MILESTONE_STATUS_VALUES: Final[tuple[str, ...]] = _enum_values(MilestoneStatus)

PRIORITY_ORDER_SQL: Final[str] = _priority_order_sql("t.priority")

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key TEXT NOT NULL UNIQUE CHECK (length(key) BETWEEN 2 AND 10 AND key = upper(key)),
        name TEXT NOT NULL CHECK (length(trim(name)) > 0),
        description TEXT,
        next_number INTEGER NOT NULL DEFAULT 1 CHECK (next_number >= 1),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS milestones (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        key TEXT NOT NULL CHECK (length(key) BETWEEN 1 AND 20 AND key = upper(key)),
        name TEXT NOT NULL CHECK (length(trim(name)) > 0),
        goal TEXT,
        target_date TEXT,
        status TEXT NOT NULL DEFAULT 'open'
            CHECK (status IN ({_sql_enum(_MILESTONE_STATUS_VALUES)})),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (project_id, key)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS tickets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        number INTEGER NOT NULL CHECK (number >= 1),
        title TEXT NOT NULL CHECK (length(trim(title)) > 0),
        description TEXT,
        status TEXT NOT NULL CHECK (status IN ({_sql_enum(_TICKET_STATUS_VALUES)})),
        resolution TEXT
            CHECK (resolution IS NULL OR resolution IN ({_sql_enum(_RESOLUTION_VALUES)})),
        human_flag_reason TEXT
            CHECK (
                human_flag_reason IS NULL
                OR human_flag_reason IN ({_sql_enum(_FLAG_REASON_VALUES)})
            ),
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ({_sql_enum(_PRIORITY_VALUES)})),
        complexity TEXT NOT NULL DEFAULT 'medium'
            CHECK (complexity IN ({_sql_enum(_COMPLEXITY_VALUES)})),
        retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
        max_retries INTEGER NOT NULL DEFAULT 3 CHECK (max_retries >= 1),
        branch_name TEXT,
        parent_ticket_id INTEGER REFERENCES tickets(id) ON DELETE SET NULL,
        milestone_id INTEGER REFERENCES milestones(id) ON DELETE SET NULL,
        aggregate_only INTEGER NOT NULL DEFAULT 0 CHECK (aggregate_only IN (0, 1)),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        UNIQUE (project_id, number),
        CHECK ((status = 'closed') = (resolution IS NOT NULL)),
        CHECK ((status = 'human') = (human_flag_reason IS NOT NULL)),
        CHECK (parent_ticket_id IS NULL OR parent_ticket_id <> id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tickets_project_status
    ON tickets(project_id, status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tickets_status
    ON tickets(status, updated_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tickets_parent
    ON tickets(parent_ticket_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tickets_milestone
    ON tickets(milestone_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS ticket_dependencies (
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        depends_on_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        PRIMARY KEY (ticket_id, depends_on_id),
        CHECK (ticket_id <> depends_on_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_dependencies_depends_on
    ON ticket_dependencies(depends_on_id)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS claims (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        claim_id TEXT NOT NULL UNIQUE,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        worker_id TEXT NOT NULL CHECK (length(worker_id) > 0),
        claimed_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        released_at TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ({_sql_enum(_CLAIM_STATUS_VALUES)})),
        CHECK (expires_at >= claimed_at),
        CHECK ((status = 'active') = (released_at IS NULL))
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_claims_one_active
    ON claims(ticket_id) WHERE status = 'active'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_claims_status_expires
    ON claims(status, expires_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_claims_ticket
    ON claims(ticket_id, id DESC)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS inbox_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        message_type TEXT NOT NULL CHECK (message_type IN ({_sql_enum(_MESSAGE_TYPE_VALUES)})),
        content TEXT NOT NULL CHECK (length(trim(content)) > 0),
        from_agent TEXT,
        response TEXT,
        responded_at TEXT,
        created_at TEXT NOT NULL,
        CHECK ((response IS NULL) = (responded_at IS NULL))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_inbox_pending
    ON inbox_messages(responded_at, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_inbox_ticket
    ON inbox_messages(ticket_id)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS activity_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        action TEXT NOT NULL CHECK (action IN ({_sql_enum(_ACTIVITY_ACTION_VALUES)})),
        actor_type TEXT NOT NULL CHECK (actor_type IN ({_sql_enum(_ACTOR_TYPE_VALUES)})),
        actor_id TEXT,
        details_json TEXT NOT NULL DEFAULT '{{}}' CHECK (json_valid(details_json)),
        summary TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_activity_ticket
    ON activity_log(ticket_id, id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_activity_created
    ON activity_log(created_at DESC)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_activity_log_no_update
    BEFORE UPDATE ON activity_log
    BEGIN
        SELECT RAISE(ABORT, 'activity_log is append-only');
    END
    """,
    # Cascades from explicit ticket/project deletion run after the ticket row is
    # gone, so only deletes of a live ticket's history are rejected.
    """
    CREATE TRIGGER IF NOT EXISTS trg_activity_log_no_delete
    BEFORE DELETE ON activity_log
    WHEN EXISTS (SELECT 1 FROM tickets WHERE id = OLD.ticket_id)
    BEGIN
        SELECT RAISE(ABORT, 'activity_log is append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS ticket_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        position INTEGER NOT NULL CHECK (position >= 0),
        description TEXT NOT NULL CHECK (length(trim(description)) > 0),
        complete INTEGER NOT NULL DEFAULT 0 CHECK (complete IN (0, 1)),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (ticket_id, position)
    )
    """,
    f"""
    CREATE VIEW IF NOT EXISTS workable_tickets AS
    SELECT t.*, p.key AS project_key
    FROM tickets t
    JOIN projects p ON p.id = t.project_id
    WHERE t.status = 'ready'
      AND NOT EXISTS (
          SELECT 1
          FROM ticket_dependencies d
          JOIN tickets dep ON dep.id = d.depends_on_id
          WHERE d.ticket_id = t.id AND dep.status <> 'closed'
      )
      AND NOT EXISTS (
          SELECT 1 FROM claims c WHERE c.ticket_id = t.id AND c.status = 'active'
      )
    ORDER BY {PRIORITY_ORDER_SQL} ASC, t.created_at ASC, t.id ASC
    """,
    """
    CREATE VIEW IF NOT EXISTS active_claims AS
    SELECT
        c.*,
        t.project_id AS project_id,
        p.key || '-' || t.number AS ticket_key,
        t.title AS ticket_title,
        CAST(
            ROUND((julianday(c.expires_at) - julianday('now')) * 1440) AS INTEGER
        ) AS minutes_remaining
    FROM claims c
    JOIN tickets t ON t.id = c.ticket_id
    JOIN projects p ON p.id = t.project_id
    WHERE c.status = 'active'
    """,
    """
    CREATE VIEW IF NOT EXISTS pending_human_input AS
    SELECT
        m.*,
        t.project_id AS project_id,
        p.key || '-' || t.number AS ticket_key,
        t.title AS ticket_title,
        t.status AS ticket_status
    FROM inbox_messages m
    JOIN tickets t ON t.id = m.ticket_id
    JOIN projects p ON p.id = t.project_id
    WHERE m.responded_at IS NULL
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_ticket_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_ticket_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite store handle with deterministic migrations and short-lived connections.

    The handle holds no open connection; each call opens one, so separate
    processes (CLI invocations, agents, a long-lived reader) can share the file.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="open database")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn,
                    f"ROLLBACK TO SAVEPOINT {savepoint}",
                    (),
                    operation="rollback to savepoint",
                )
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
                raise
            else:
                self._execute_with_retry(
                    conn,
                    f"RELEASE SAVEPOINT {savepoint}",
                    (),
                    operation="release savepoint",
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this version of wark "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue

                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = _utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    # Another process may have applied it while we waited for the lock.
                    if self._load_applied_migrations(tx).get(migration.version) is not None:
                        continue
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )

                applied[migration.version] = MigrationRecord(
                    version=migration.version,
                    name=migration.name,
                    checksum=migration.checksum,
                    applied_at=applied_at,
                )

            self._migrated = True
            return self.schema_version(conn=conn)

    def ensure_migrated(self) -> None:
        """Migrate once per handle."""
        if not self._migrated:
            self.migrate()

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            conn=conn,
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            return sorted(
                self._load_applied_migrations(conn).values(),
                key=lambda record: record.version,
            )

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="execute statement")
            return cursor.rowcount

        with self.transaction(immediate=True) as tx:
            cursor = self._execute_with_retry(tx, sql, params, operation="execute statement")
            return cursor.rowcount

    def insert(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection,
    ) -> int:
        """Execute an INSERT and return the new row id."""

        cursor = self._execute_with_retry(conn, sql, params, operation="insert row")
        row_id = cursor.lastrowid
        if row_id is None:
            raise StateDBError(f"insert into {self._path} returned no row id")
        return row_id

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as typed dictionaries."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a typed dictionary."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query one")
            row = cursor.fetchone()
            return None if row is None else _row_to_dict(row)

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using SQLite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)

        with (
            self.connection() as source,
            sqlite3.connect(
                destination_path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            ) as target,
        ):
            source.backup(target)
        target.close()
        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def foreign_key_check(self) -> tuple[str, ...]:
        rows = self.query_all("PRAGMA foreign_key_check")
        return tuple(
            f"{row.get('table')} rowid={row.get('rowid')} -> {row.get('parent')}" for row in rows
        )

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StateDBError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise StateDBMigrationError("schema_versions.version must be integer")
            if not isinstance(row["name"], str):
                raise StateDBMigrationError("schema_versions.name must be text")
            if not isinstance(row["checksum"], str):
                raise StateDBMigrationError("schema_versions.checksum must be text")
            if not isinstance(row["applied_at"], str):
                raise StateDBMigrationError("schema_versions.applied_at must be text")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=row["name"],
                checksum=row["checksum"],
                applied_at=row["applied_at"],
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        if target_version < 0:
            raise StateDBMigrationError("target schema version must be >= 0")
        migration_versions = {migration.version for migration in _MIGRATIONS}
        if target_version > max(migration_versions, default=0):
            raise StateDBMigrationError(
                "schema target exceeds known migrations "
                f"(target={target_version}, known={max(migration_versions, default=0)})"
            )
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `wark doctor` and restore from `wark backup` if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    raw = dict(row)
    return {str(key): raw[key] for key in raw}


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "PRIORITY_ORDER_SQL",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
