"""
wark config package public API.

File: src/wark/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``wark.toml`` + ``WARK_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from wark.config.loader import (
    CONFIG_PATH_ENV,
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_settings,
    normalize_paths,
    resolve_config_path,
    resolve_profile,
)
from wark.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    WarkConfig,
    WarkSettings,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CONFIG_PATH_ENV",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "WarkConfig",
    "WarkSettings",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "resolve_config_path",
    "resolve_profile",
    "validate_config",
]
