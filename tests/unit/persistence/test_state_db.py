"""State DB migration, pragmas, backup, and append-only history tests."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from wark.constants import STATE_DB_SCHEMA_VERSION
from wark.domain.models import ActivityAction, ActorType
from wark.persistence.repositories import ActivityRepo
from wark.persistence.state_db import StateDB, StateDBMigrationError

from . import fixed_now, make_project, make_ticket, open_db

if TYPE_CHECKING:
    from pathlib import Path


def test_migration_idempotence_schema_version_and_pragmas(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "wark.sqlite3", busy_timeout_ms=4_321)

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert [record.version for record in db.schema_history()] == [STATE_DB_SCHEMA_VERSION]

    with db.connection() as conn:
        objects = {
            (str(row[0]), str(row[1]))
            for row in conn.execute("SELECT type, name FROM sqlite_master").fetchall()
        }
        for table in (
            "schema_versions",
            "projects",
            "milestones",
            "tickets",
            "ticket_dependencies",
            "claims",
            "inbox_messages",
            "activity_log",
            "ticket_tasks",
        ):
            assert ("table", table) in objects
        for view in ("workable_tickets", "active_claims", "pending_human_input"):
            assert ("view", view) in objects
        assert ("index", "idx_claims_one_active") in objects

        pragma_fk = conn.execute("PRAGMA foreign_keys").fetchone()
        pragma_journal = conn.execute("PRAGMA journal_mode").fetchone()
        pragma_busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()
        assert pragma_fk is not None and int(pragma_fk[0]) == 1
        assert pragma_journal is not None and str(pragma_journal[0]).lower() == "wal"
        assert pragma_busy_timeout is not None and int(pragma_busy_timeout[0]) == 4_321


def test_newer_schema_is_refused(tmp_path: Path) -> None:
    db = open_db(tmp_path)
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "0" * 64, "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        StateDB(db.path).migrate()


def test_backup_and_integrity_check(tmp_path: Path) -> None:
    db = open_db(tmp_path)
    make_ticket(db, make_project(db))

    assert db.integrity_check() == ()
    assert db.foreign_key_check() == ()

    backup_path = db.backup(tmp_path / "backups" / "wark.sqlite3")
    assert backup_path.exists()
    assert backup_path.stat().st_size > 0

    with sqlite3.connect(backup_path) as conn:
        row = conn.execute("SELECT COUNT(*) FROM tickets").fetchone()
        assert row is not None and int(row[0]) == 1


def test_nested_transaction_rolls_back_only_the_savepoint(tmp_path: Path) -> None:
    db = open_db(tmp_path)
    project = make_project(db)

    with db.transaction() as tx:
        db.execute("UPDATE projects SET name = ? WHERE id = ?", ("Renamed", project.id), conn=tx)
        with pytest.raises(RuntimeError), db.transaction(conn=tx) as inner:
            db.execute("UPDATE projects SET name = ? WHERE id = ?", ("Lost", project.id), conn=inner)
            raise RuntimeError("boom")

    row = db.query_one("SELECT name FROM projects WHERE id = ?", (project.id,))
    assert row == {"name": "Renamed"}


def test_activity_log_is_append_only(tmp_path: Path) -> None:
    db = open_db(tmp_path)
    ticket = make_ticket(db, make_project(db))
    entry = ActivityRepo(db).add(
        ticket.id,
        ActivityAction.COMMENT,
        actor_type=ActorType.HUMAN,
        summary="first note",
        now=fixed_now(),
    )

    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("UPDATE activity_log SET summary = 'edited' WHERE id = ?", (entry.id,))
    with pytest.raises(sqlite3.IntegrityError, match="append-only"):
        db.execute("DELETE FROM activity_log WHERE id = ?", (entry.id,))

    rows = ActivityRepo(db).list_for_ticket(ticket.id)
    assert [row.summary for row in rows] == ["first note"]
