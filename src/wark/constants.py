"""Stable constants shared across the store, workflow, and service layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths.
DEFAULT_HOME_DIR: Final[PurePosixPath] = PurePosixPath("~/.wark")
DEFAULT_STATE_DB_PATH: Final[PurePosixPath] = DEFAULT_HOME_DIR / "wark.db"
DEFAULT_LOG_DIR: Final[PurePosixPath] = DEFAULT_HOME_DIR / "logs"

# Claim leases.
DEFAULT_CLAIM_DURATION_MINUTES: Final[int] = 60
MAX_CLAIM_DURATION_MINUTES: Final[int] = 24 * 60
EXPIRING_SOON_MINUTES: Final[int] = 30

# Retry budget before a ticket is escalated to a human.
DEFAULT_MAX_RETRIES: Final[int] = 3

# Branch hints handed out with a claim.
BRANCH_SLUG_MAX_LEN: Final[int] = 50

# Status summary.
RECENT_ACTIVITY_LIMIT: Final[int] = 5

__all__ = [
    "BRANCH_SLUG_MAX_LEN",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CLAIM_DURATION_MINUTES",
    "DEFAULT_HOME_DIR",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_STATE_DB_PATH",
    "EXPIRING_SOON_MINUTES",
    "MAX_CLAIM_DURATION_MINUTES",
    "RECENT_ACTIVITY_LIMIT",
    "STATE_DB_SCHEMA_VERSION",
]
