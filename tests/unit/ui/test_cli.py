"""
wark — CLI contract tests

File: tests/unit/ui/test_cli.py

Purpose
- Drive ``run_cli`` in-process against a throwaway store and check exit codes,
  JSON payload shapes, and where errors are written.
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pytest
import yaml

from wark.ui.cli import build_parser, run_cli

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(frozen=True)
class Invocation:
    code: int
    out: str
    err: str

    @property
    def payload(self) -> dict[str, Any]:
        parsed = json.loads(self.out)
        assert isinstance(parsed, dict)
        return parsed


Runner = Callable[..., Invocation]


@pytest.fixture
def wark(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> Runner:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("NO_COLOR", raising=False)
    for name in list(os.environ):
        if name.startswith("WARK_"):
            monkeypatch.delenv(name)
    db_path = tmp_path / "w.db"

    def run(*argv: str, fmt: str = "json") -> Invocation:
        code = run_cli([*argv, "--db", str(db_path), "--format", fmt])
        captured = capsys.readouterr()
        return Invocation(code=code, out=captured.out, err=captured.err)

    return run


def _seed(wark: Runner) -> None:
    assert wark("init").code == 0
    assert wark("project", "create", "proj", "Demo").code == 0


def test_init_is_idempotent(wark: Runner, tmp_path: Path) -> None:
    first = wark("init")
    second = wark("init")
    assert first.code == second.code == 0
    assert first.payload["schema_version"] == second.payload["schema_version"] >= 1
    assert first.payload["state_db"] == str((tmp_path / "w.db").resolve())


def test_ticket_lifecycle_through_the_cli(wark: Runner) -> None:
    _seed(wark)

    created = wark("ticket", "create", "Add login", "-p", "PROJ", "--task", "Write form")
    assert created.code == 0
    assert created.payload["ticket"]["key"] == "PROJ-1"
    assert created.payload["ticket"]["status"] == "ready"
    assert [task["position"] for task in created.payload["tasks"]] == [0]

    blocked = wark("ticket", "create", "Deploy", "-p", "PROJ", "--depends-on", "proj-1")
    assert blocked.payload["ticket"]["status"] == "blocked"
    assert blocked.payload["ticket"]["blocked_by"] == ["PROJ-1"]

    workable = wark("workable", "-p", "PROJ")
    assert [item["key"] for item in workable.payload["tickets"]] == ["PROJ-1"]

    claimed = wark("ticket", "claim", "PROJ-1", "--worker", "agent-1", "--duration", "30")
    assert claimed.code == 0
    assert claimed.payload["claim"]["worker_id"] == "agent-1"
    assert claimed.payload["branch"] == "PROJ-1-add-login"
    assert claimed.payload["next_task"]["description"] == "Write form"

    early = wark("ticket", "complete", "PROJ-1")
    assert early.code == 4
    assert early.payload["ok"] is False
    assert early.payload["error"]["code"] == "INCOMPLETE_TASKS"
    assert "error[INCOMPLETE_TASKS]" in early.err

    done = wark("task", "done", "PROJ-1", "1", "--worker", "agent-1")
    assert done.payload["tasks_remaining"] == 0

    review = wark("ticket", "complete", "PROJ-1", "--summary", "Form added")
    assert review.payload["ticket"]["status"] == "review"
    assert review.payload["auto_accepted"] is False

    accepted = wark("ticket", "accept", "PROJ-1")
    assert accepted.payload["ticket"]["status"] == "closed"
    assert accepted.payload["ticket"]["resolution"] == "completed"
    assert accepted.payload["resolution"]["unblocked"] == 1
    assert accepted.payload["resolution"]["items"][0]["ticket_key"] == "PROJ-2"

    history = wark("ticket", "history", "PROJ-1", "--action", "claimed")
    assert [entry["action"] for entry in history.payload["entries"]] == ["claimed"]


def test_flag_and_respond_round_trip_through_the_inbox(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "Pick a store", "-p", "PROJ")

    flagged = wark(
        "ticket", "flag", "PROJ-1", "--reason", "decision_needed", "-m", "Postgres or SQLite?"
    )
    assert flagged.payload["ticket"]["status"] == "human"
    message_id = flagged.payload["inbox_message"]["id"]

    pending = wark("inbox", "list")
    assert [item["id"] for item in pending.payload["messages"]] == [message_id]
    assert pending.payload["messages"][0]["pending"] is True

    answered = wark("inbox", "respond", str(message_id), "SQLite")
    assert answered.payload["ticket_updated"] is True
    assert answered.payload["ticket"]["status"] == "ready"
    assert wark("inbox", "list").payload["messages"] == []
    assert len(wark("inbox", "list", "--all").payload["messages"]) == 1


def test_not_found_maps_to_exit_three(wark: Runner) -> None:
    _seed(wark)
    result = wark("ticket", "show", "PROJ-9")
    assert result.code == 3
    assert result.payload["error"]["code"] == "NOT_FOUND"
    assert "error[NOT_FOUND]: ticket not found: PROJ-9" in result.err


def test_text_output_goes_to_stdout_and_errors_to_stderr(wark: Runner) -> None:
    wark("init")
    created = wark("project", "create", "WEB", "Website", fmt="text")
    assert created.code == 0
    assert "Created project WEB: Website" in created.out
    assert created.err == ""

    failed = wark("ticket", "show", "nope", fmt="text")
    assert failed.code == 2
    assert failed.out == ""
    assert "error[INVALID_ARGUMENT]" in failed.err


def test_usage_errors_exit_two(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "Something", "-p", "PROJ")

    nothing = wark("ticket", "edit", "PROJ-1")
    assert nothing.code == 2
    assert "nothing to edit" in nothing.err

    bad_position = wark("task", "done", "PROJ-1", "0")
    assert bad_position.code == 2
    assert "starts at 1" in bad_position.err


def test_missing_explicit_config_file_is_reported(wark: Runner, tmp_path: Path) -> None:
    result = wark("status", "--config", str(tmp_path / "absent.toml"))
    assert result.code == 2
    assert "config file not found" in result.err


def test_ticket_edit_reports_changes_and_stale_writes(wark: Runner) -> None:
    _seed(wark)
    created = wark("ticket", "create", "Tune cache", "-p", "PROJ")
    stamp = created.payload["ticket"]["updated_at"]

    edited = wark(
        "ticket", "edit", "PROJ-1", "--priority", "high", "--expected-updated-at", stamp
    )
    assert edited.code == 0
    assert edited.payload["changes"] == [{"field": "priority", "old": "medium", "new": "high"}]

    stale = wark("ticket", "edit", "PROJ-1", "--priority", "low", "--expected-updated-at", stamp)
    assert stale.code == 6
    assert stale.payload["error"]["code"] == "CONCURRENT_MODIFICATION"
    assert stale.payload["error"]["retryable"] is True


def test_ticket_next_and_claim_views(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "Later", "-p", "PROJ", "--priority", "low")
    wark(
        "ticket", "create", "Huge", "-p", "PROJ", "--priority", "critical", "--complexity", "xlarge"
    )
    wark("ticket", "create", "Now", "-p", "PROJ", "--priority", "high")

    preview = wark("ticket", "next", "-p", "PROJ", "--dry-run")
    assert preview.code == 0
    assert preview.payload["dry_run"] is True
    assert preview.payload["ticket"]["key"] == "PROJ-3"
    assert preview.payload["skipped"] == 1
    assert wark("claims", "list").payload["claims"] == []

    picked = wark("ticket", "next", "-p", "PROJ", "--worker", "agent-1", "--duration", "30")
    assert picked.code == 0
    assert picked.payload["command"] == "ticket.next"
    assert picked.payload["ticket"]["key"] == "PROJ-3"
    assert picked.payload["claim"]["worker_id"] == "agent-1"

    listed = wark("claims", "list")
    assert [item["ticket_key"] for item in listed.payload["claims"]] == ["PROJ-3"]
    assert listed.payload["claims"][0]["minutes_remaining"] in (29, 30)

    shown = wark("claims", "show", "PROJ-3")
    assert shown.payload["claim"]["worker_id"] == "agent-1"
    assert shown.payload["claim"]["expired"] is False
    assert wark("claims", "show", "PROJ-1").payload["claim"] is None


def test_task_list_clear_and_remove_use_one_based_positions(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "Docs", "-p", "PROJ", "--task", "intro", "--task", "body")
    wark("task", "done", "PROJ-1", "1")

    listed = wark("task", "list", "PROJ-1")
    assert (listed.payload["complete"], listed.payload["total"]) == (1, 2)

    cleared = wark("task", "clear", "PROJ-1", "1")
    assert cleared.payload["changed"] is True
    assert cleared.payload["tasks_remaining"] == 2

    removed = wark("task", "remove", "PROJ-1", "1")
    assert removed.payload["removed"]["description"] == "intro"
    assert [task["description"] for task in wark("task", "list", "PROJ-1").payload["tasks"]] == [
        "body"
    ]
    assert wark("task", "remove", "PROJ-1", "4").code == 3
    assert wark("task", "clear", "PROJ-1", "0").code == 2


def test_inbox_show_prints_one_message(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "Pick a store", "-p", "PROJ")
    flagged = wark(
        "ticket", "flag", "PROJ-1", "--reason", "decision_needed", "-m", "Postgres or SQLite?"
    )
    message_id = str(flagged.payload["inbox_message"]["id"])

    shown = wark("inbox", "show", message_id)
    assert shown.payload["message"]["content"] == "Postgres or SQLite?"
    assert shown.payload["message"]["pending"] is True

    text = wark("inbox", "show", message_id, fmt="text")
    assert "wark inbox respond" in text.out
    assert wark("inbox", "show", "99").code == 3


def test_claims_expire_dry_run_on_an_idle_store(wark: Runner) -> None:
    _seed(wark)
    result = wark("claims", "expire", "--dry-run")
    assert result.code == 0
    assert result.payload["dry_run"] is True
    assert result.payload["expired"] == 0
    assert result.payload["items"] == []


def test_status_and_project_show(wark: Runner) -> None:
    _seed(wark)
    wark("ticket", "create", "One", "-p", "PROJ")
    wark("ticket", "create", "Two", "-p", "PROJ", "--depends-on", "PROJ-1")

    status = wark("status", "-p", "PROJ")
    assert status.payload["project"] == "PROJ"
    assert status.payload["counts"]["workable"] == 1
    assert status.payload["counts"]["blocked_deps"] == 1

    shown = wark("project", "show", "PROJ")
    assert shown.payload["project"]["key"] == "PROJ"
    assert shown.payload["stats"]["total"] == 2


def test_milestone_commands(wark: Runner) -> None:
    _seed(wark)
    created = wark(
        "milestone", "create", "mvp", "First release", "-p", "PROJ", "--target-date", "2026-12-01"
    )
    assert created.payload["milestone"]["key"] == "MVP"
    wark("ticket", "create", "Ship it", "-p", "PROJ", "--milestone", "MVP")

    listed = wark("milestone", "list", "-p", "PROJ")
    assert listed.payload["milestones"][0]["total"] == 1
    assert listed.payload["milestones"][0]["percent_complete"] == 0

    linked = wark("milestone", "tickets", "MVP", "-p", "PROJ")
    assert [item["key"] for item in linked.payload["tickets"]] == ["PROJ-1"]

    achieved = wark("milestone", "update", "MVP", "-p", "PROJ", "--status", "achieved")
    assert achieved.payload["milestone"]["status"] == "achieved"


def test_doctor_passes_on_a_fresh_store(wark: Runner) -> None:
    _seed(wark)
    result = wark("doctor")
    assert result.code == 0
    assert result.payload["ok"] is True
    assert {check["name"] for check in result.payload["checks"]} >= {"config", "state_db"}


def test_backup_writes_a_copy_and_refuses_the_live_path(wark: Runner, tmp_path: Path) -> None:
    _seed(wark)
    target = tmp_path / "copies" / "backup.db"
    result = wark("backup", str(target))
    assert result.code == 0
    assert target.exists()

    same = wark("backup", str(tmp_path / "w.db"))
    assert same.code == 2
    assert "must differ" in same.err


def test_config_show_applies_profile_and_flags(wark: Runner, tmp_path: Path) -> None:
    result = wark("config", "show", "--profile", "agent")
    payload = result.payload
    assert payload["active_profile"] == "agent"
    assert payload["config"]["display"]["no_color"] is True
    assert payload["config"]["paths"]["state_db"] == (tmp_path / "w.db").resolve().as_posix()


def test_yaml_output_is_parseable(wark: Runner) -> None:
    _seed(wark)
    result = wark("project", "list", fmt="yaml")
    parsed = yaml.safe_load(result.out)
    assert parsed["command"] == "project.list"
    assert [item["key"] for item in parsed["projects"]] == ["PROJ"]


def test_missing_subcommand_is_an_argparse_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_cli(["ticket"])
    assert excinfo.value.code == 2


def test_flag_choices_exclude_the_automatic_reason() -> None:
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(
            ["ticket", "flag", "PROJ-1", "--reason", "max_retries_exceeded", "-m", "x"]
        )
