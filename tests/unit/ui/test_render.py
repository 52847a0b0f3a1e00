from __future__ import annotations

import io

import pytest
import yaml

from wark.ui.render import CLIRenderer, emit_payload


def test_json_payload_is_sorted_and_compact() -> None:
    stream = io.StringIO()
    emit_payload({"b": 1, "a": {"z": "ünïcode", "y": [1, 2]}}, "json", stream=stream)
    assert stream.getvalue() == '{"a":{"y":[1,2],"z":"ünïcode"},"b":1}\n'


def test_yaml_payload_round_trips_through_safe_load() -> None:
    stream = io.StringIO()
    payload = {"command": "ticket.show", "ticket": {"key": "PROJ-1", "tasks": ("a", "b")}}
    emit_payload(payload, "yaml", stream=stream)
    assert yaml.safe_load(stream.getvalue()) == {
        "command": "ticket.show",
        "ticket": {"key": "PROJ-1", "tasks": ["a", "b"]},
    }


def test_renderer_writes_plain_text_without_a_tty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)
    renderer.kv("Status", "ready")
    renderer.kv("Aggregate only", True)
    renderer.kv("Milestone", None)
    renderer.table(("KEY", "STATUS"), [("PROJ-1", renderer.status("ready"))], title="Tickets:")
    renderer.table(("KEY",), [])
    renderer.next_steps(["wark ticket claim PROJ-1"])

    output = stream.getvalue()
    assert "\x1b[" not in output
    assert "Status: ready" in output
    assert "Aggregate only: yes" in output
    assert "Milestone: -" in output
    assert "Tickets:" in output
    assert "PROJ-1" in output
    assert "$ wark ticket claim PROJ-1" in output


def test_ok_and_fail_markers() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(no_color=True, stream=stream)
    renderer.ok("config")
    renderer.fail("state_db")
    lines = stream.getvalue().splitlines()
    assert lines == ["  OK    config", "  FAIL  state_db"]


def test_json_payload_rejects_unserializable_values() -> None:
    stream = io.StringIO()
    with pytest.raises(TypeError):
        emit_payload({"when": object()}, "json", stream=stream)
    assert stream.getvalue() == ""
