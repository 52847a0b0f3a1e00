"""
wark — unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict config schema behavior, structured errors, profile overlays, and redaction.

What this test file should cover
- Built-in defaults validate cleanly.
- Unknown keys and invalid types are rejected with actionable paths.
- Secret-looking keys are refused and redacted.
"""

from __future__ import annotations

from typing import Any

import pytest

from wark.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    WarkSettings,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _with(overlay: dict[str, Any]) -> dict[str, Any]:
    return merge_config(default_config(), overlay)


def _issue_paths(config: object) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_builtin_defaults_are_valid_and_isolated() -> None:
    result = validate_config(default_config())
    assert result.is_valid
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert sorted(result.config["profiles"]) == sorted(BUILTIN_PROFILE_NAMES)

    mutated = default_config()
    mutated["claims"]["default_duration_minutes"] = 5
    assert default_config()["claims"]["default_duration_minutes"] == 60


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"claims": {"default_duration_minutes": 0}}, "claims.default_duration_minutes"),
        ({"claims": {"max_duration_minutes": "long"}}, "claims.max_duration_minutes"),
        ({"tickets": {"auto_accept": "yes"}}, "tickets.auto_accept"),
        ({"tickets": {"default_max_retries": True}}, "tickets.default_max_retries"),
        ({"display": {"format": "xml"}}, "display.format"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"paths": {"state_db": "  "}}, "paths.state_db"),
        ({"defaults": {"project": "1BAD"}}, "defaults.project"),
        ({"claims": {"grace_minutes": 5}}, "claims.grace_minutes"),
        ({"plugins": {}}, "plugins"),
    ],
)
def test_invalid_fields_report_their_path(overlay: dict[str, Any], path: str) -> None:
    assert _issue_paths(_with(overlay)) == [path]


def test_missing_sections_are_reported() -> None:
    config = default_config()
    del config["display"]  # type: ignore[misc]
    assert _issue_paths(config) == ["display"]


def test_secret_looking_keys_are_refused() -> None:
    result = validate_config(_with({"defaults": {"api_token": "abc"}}))
    assert not result.is_valid
    assert result.issues[0].path == "defaults.api_token"
    assert "secret" in result.issues[0].message


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    result = validate_config(_with({"meta": {"schema_version": ConfigSchemaVersion + 1}}))
    assert [issue.path for issue in result.issues] == ["meta.schema_version"]
    assert "upgrade wark" in result.issues[0].message
    assert "older" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_log_level_is_case_insensitive() -> None:
    config = assert_valid_config(_with({"observability": {"log_level": " debug "}}))
    assert config["observability"]["log_level"] == "DEBUG"


def test_profile_overlays_are_validated_as_partial_sections() -> None:
    assert _issue_paths(_with({"profiles": {"ci": {"display": {"format": "json"}}}})) == []
    assert _issue_paths(_with({"profiles": {"CI": {}}})) == ["profiles.CI"]
    assert _issue_paths(_with({"profiles": {"ci": {"meta": {"schema_version": 1}}}})) == [
        "profiles.ci.meta"
    ]
    assert _issue_paths(_with({"profiles": {"ci": {"claims": {"max_duration_minutes": -1}}}})) == [
        "profiles.ci.claims.max_duration_minutes"
    ]


def test_apply_profile_overlay_merges_and_revalidates() -> None:
    base = assert_valid_config(default_config())
    agent = apply_profile_overlay(base, "agent")
    assert agent["display"] == {"no_color": True, "format": "json"}
    assert apply_profile_overlay(base, None) == base

    with pytest.raises(ConfigValidationError) as excinfo:
        apply_profile_overlay(base, "missing")
    assert excinfo.value.issues[0].path == "profiles"


def test_merge_config_is_deep_and_non_destructive() -> None:
    base = {"claims": {"default_duration_minutes": 60, "max_duration_minutes": 1440}}
    merged = merge_config(base, {"claims": {"default_duration_minutes": 15}})
    assert merged["claims"] == {"default_duration_minutes": 15, "max_duration_minutes": 1440}
    assert base["claims"]["default_duration_minutes"] == 60


def test_redaction_is_recursive_and_non_destructive() -> None:
    payload = {"paths": {"state_db": "w.db"}, "extra": [{"password": "pw", "note": "ok"}]}
    redacted = redact_config(payload)
    assert redacted == {
        "extra": [{"note": "ok", "password": "<redacted>"}],
        "paths": {"state_db": "w.db"},
    }
    assert payload["extra"][0]["password"] == "pw"
    assert redact_config(["not", "a", "mapping"]) == {}


def test_validation_error_renders_every_issue() -> None:
    config = _with({"claims": {"default_duration_minutes": 0}, "display": {"format": "xml"}})
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)
    rendered = str(excinfo.value)
    assert "- claims.default_duration_minutes: must be >= 1" in rendered
    assert "- display.format: invalid value 'xml'" in rendered


def test_settings_from_config_reads_every_section() -> None:
    config = assert_valid_config(
        _with(
            {
                "defaults": {"project": "web", "worker_id": "agent-2"},
                "tickets": {"auto_accept": True},
            }
        )
    )
    settings = WarkSettings.from_config(config, profile="interactive")
    assert settings.default_project == "WEB"
    assert settings.default_worker_id == "agent-2"
    assert settings.default_claim_minutes == 60
    assert settings.max_claim_minutes == 1440
    assert settings.default_max_retries == 3
    assert settings.auto_accept is True
    assert settings.output_format == "text"
    assert settings.redact_secrets is True
    assert settings.profile == "interactive"
