"""
wark — configuration schema and validation.

File: src/wark/config/schema.py

Purpose
- Define configuration defaults, strict validation rules, and the frozen
  settings object the service layer consumes.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support named profile overlays.
- Redact secret-looking keys in dumps.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal, TypedDict

from wark.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CLAIM_DURATION_MINUTES,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_RETRIES,
    DEFAULT_STATE_DB_PATH,
    MAX_CLAIM_DURATION_MINUTES,
)
from wark.domain import keys as domain_keys

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("agent", "interactive")
OUTPUT_FORMATS: Final[tuple[str, ...]] = ("text", "json", "yaml")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("paths", "log_dir"),
)

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "paths",
    "claims",
    "tickets",
    "defaults",
    "display",
    "observability",
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_db: str
    log_dir: str


class ClaimsConfig(TypedDict):
    default_duration_minutes: int
    max_duration_minutes: int


class TicketsConfig(TypedDict):
    default_max_retries: int
    auto_accept: bool


class DefaultsConfig(TypedDict, total=False):
    project: str
    worker_id: str


class DisplayConfig(TypedDict):
    no_color: bool
    format: Literal["text", "json", "yaml"]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_file: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    paths: dict[str, object]
    claims: dict[str, object]
    tickets: dict[str, object]
    defaults: dict[str, object]
    display: dict[str, object]
    observability: dict[str, object]


class WarkConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    claims: ClaimsConfig
    tickets: TicketsConfig
    defaults: DefaultsConfig
    display: DisplayConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[WarkConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "paths": {
        "state_db": str(DEFAULT_STATE_DB_PATH),
        "log_dir": str(DEFAULT_LOG_DIR),
    },
    "claims": {
        "default_duration_minutes": DEFAULT_CLAIM_DURATION_MINUTES,
        "max_duration_minutes": MAX_CLAIM_DURATION_MINUTES,
    },
    "tickets": {
        "default_max_retries": DEFAULT_MAX_RETRIES,
        "auto_accept": False,
    },
    "defaults": {},
    "display": {"no_color": False, "format": "text"},
    "observability": {
        "log_level": "WARNING",
        "log_to_file": False,
        "redact_secrets": True,
    },
    "profiles": {
        # Machine consumers: structured output, no colour.
        "agent": {"display": {"format": "json", "no_color": True}},
        "interactive": {"observability": {"log_level": "INFO"}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


@dataclass(frozen=True, slots=True)
class WarkSettings:
    """Effective runtime settings after precedence and validation."""

    state_db: Path
    log_dir: Path
    default_claim_minutes: int = DEFAULT_CLAIM_DURATION_MINUTES
    max_claim_minutes: int = MAX_CLAIM_DURATION_MINUTES
    default_max_retries: int = DEFAULT_MAX_RETRIES
    auto_accept: bool = False
    default_project: str | None = None
    default_worker_id: str | None = None
    no_color: bool = False
    output_format: str = "text"
    log_level: str = "WARNING"
    log_to_file: bool = False
    redact_secrets: bool = True
    profile: str | None = None

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], *, profile: str | None = None
    ) -> WarkSettings:
        paths = config["paths"]
        claims = config["claims"]
        tickets = config["tickets"]
        defaults = config.get("defaults", {})
        display = config["display"]
        observability = config["observability"]
        return cls(
            state_db=Path(paths["state_db"]).expanduser(),
            log_dir=Path(paths["log_dir"]).expanduser(),
            default_claim_minutes=claims["default_duration_minutes"],
            max_claim_minutes=claims["max_duration_minutes"],
            default_max_retries=tickets["default_max_retries"],
            auto_accept=tickets["auto_accept"],
            default_project=defaults.get("project"),
            default_worker_id=defaults.get("worker_id"),
            no_color=display["no_color"],
            output_format=display["format"],
            log_level=observability["log_level"],
            log_to_file=observability["log_to_file"],
            redact_secrets=observability["redact_secrets"],
            profile=profile,
        )


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> WarkConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade wark.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade wark"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = copy.deepcopy(dict(config))
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues, partial=False)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(
    payload: Mapping[str, object], issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = set(_SECTIONS) if partial else {*_SECTIONS, "profiles"}
    _reject_unknown_keys(payload, allowed, "", issues)
    if not partial:
        _require_keys(payload, set(_SECTIONS) - {"defaults"}, "", issues)

    validators: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "paths": _validate_paths,
        "claims": _validate_claims,
        "tickets": _validate_tickets,
        "defaults": _validate_defaults,
        "display": _validate_display,
        "observability": _validate_observability,
    }
    out: dict[str, Any] = {}
    for name in _SECTIONS:
        raw = payload.get(name)
        if raw is None:
            continue
        section = _as_object(raw, name, issues)
        if section is None:
            continue
        out[name] = validators[name](section, name, issues, partial)

    if not partial:
        claims = out.get("claims", {})
        default_minutes = claims.get("default_duration_minutes")
        max_minutes = claims.get("max_duration_minutes")
        if (
            isinstance(default_minutes, int)
            and isinstance(max_minutes, int)
            and default_minutes > max_minutes
        ):
            issues.add(
                "claims.default_duration_minutes",
                "must not exceed claims.max_duration_minutes",
            )

        profiles_raw = payload.get("profiles")
        if profiles_raw is not None:
            profiles = _as_object(profiles_raw, "profiles", issues)
            if profiles is not None:
                out["profiles"] = _validate_profiles(profiles, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"state_db", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for name in sorted(allowed & set(payload)):
        parsed = _as_str(payload[name], _join(path, name), issues)
        if parsed is None:
            continue
        if "\x00" in parsed:
            issues.add(_join(path, name), "must not contain NUL bytes")
            continue
        out[name] = parsed
    return out


def _validate_claims(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"default_duration_minutes", "max_duration_minutes"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for name in sorted(allowed & set(payload)):
        parsed = _as_int(payload[name], _join(path, name), issues, minimum=1)
        if parsed is not None:
            out[name] = parsed
    return out


def _validate_tickets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"default_max_retries", "auto_accept"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "default_max_retries" in payload:
        retries = _as_int(
            payload["default_max_retries"], _join(path, "default_max_retries"), issues, minimum=1
        )
        if retries is not None:
            out["default_max_retries"] = retries
    if "auto_accept" in payload:
        auto_accept = _as_bool(payload["auto_accept"], _join(path, "auto_accept"), issues)
        if auto_accept is not None:
            out["auto_accept"] = auto_accept
    return out


def _validate_defaults(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"project", "worker_id"}, path, issues)
    out: dict[str, Any] = {}
    if "project" in payload:
        project = _as_str(payload["project"], _join(path, "project"), issues)
        if project is not None:
            try:
                out["project"] = domain_keys.normalize_project_key(project)
            except ValueError as exc:
                issues.add(_join(path, "project"), str(exc))
    if "worker_id" in payload:
        worker = _as_str(payload["worker_id"], _join(path, "worker_id"), issues)
        if worker is not None:
            out["worker_id"] = worker
    return out


def _validate_display(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"no_color", "format"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "no_color" in payload:
        no_color = _as_bool(payload["no_color"], _join(path, "no_color"), issues)
        if no_color is not None:
            out["no_color"] = no_color
    if "format" in payload:
        fmt = _as_enum(
            payload["format"], _join(path, "format"), issues, allowed_values=OUTPUT_FORMATS
        )
        if fmt is not None:
            out["format"] = fmt
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_file", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = payload["log_level"]
        if isinstance(level, str):
            level = level.strip().upper()
        parsed = _as_enum(level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if parsed is not None:
            out["log_level"] = parsed
    for name in ("log_to_file", "redact_secrets"):
        if name in payload:
            flag = _as_bool(payload[name], _join(path, name), issues)
            if flag is not None:
                out[name] = flag
    return out


def _validate_profiles(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join("profiles", profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        if "meta" in overlay:
            issues.add(_join(profile_path, "meta"), "profiles cannot override meta")
            continue
        nested = _IssueCollector()
        validated = _validate_root(overlay, nested, partial=True)
        for issue in nested.items():
            issues.add(_join(profile_path, issue.path), issue.message)
        out[profile_name] = validated
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object, path: str, issues: _IssueCollector, *, minimum: int | None = None
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object, path: str, issues: _IssueCollector, *, allowed_values: tuple[str, ...]
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        if _looks_sensitive_key(key):
            issues.add(_join(path, key), "secret values do not belong in wark config")
        else:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object], required: set[str], path: str, issues: _IssueCollector
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    tokens = [token for token in _NON_ALNUM.split(key.strip().lower()) if token]
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        existing = target.get(key)
        if isinstance(value, Mapping) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


def _redact_value(value: object) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key])
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "OUTPUT_FORMATS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "WarkConfig",
    "WarkSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
