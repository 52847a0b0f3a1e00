"""Key formats for projects, milestones, tickets, and claims."""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from typing import Final

from wark.constants import BRANCH_SLUG_MAX_LEN

CLAIM_ID_PREFIX: Final[str] = "claim_"
CLAIM_ID_RANDOM_BYTES: Final[int] = 4

PROJECT_KEY_PATTERN_DESCRIPTION: Final[str] = "2-10 uppercase alphanumerics starting with a letter"
MILESTONE_KEY_PATTERN_DESCRIPTION: Final[str] = (
    "1-20 uppercase alphanumerics or underscores starting with a letter"
)

_PROJECT_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Z][A-Z0-9]{1,9}$")
_MILESTONE_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Z][A-Z0-9_]{0,19}$")
_TICKET_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^([A-Z][A-Z0-9]{1,9})-([1-9][0-9]*)$")
_CLAIM_ID_RE: Final[re.Pattern[str]] = re.compile(r"^claim_[0-9a-f]{8}$")
_SLUG_STRIP_RE: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9-]+")
_SLUG_DASHES_RE: Final[re.Pattern[str]] = re.compile(r"-{2,}")

_RandHex = Callable[[int], str]


def normalize_project_key(value: str) -> str:
    """Uppercase and validate a project key, raising ``ValueError`` on bad input."""
    if not isinstance(value, str):
        raise ValueError(f"project key must be a string, got {type(value).__name__}")
    key = value.strip().upper()
    if not _PROJECT_KEY_RE.fullmatch(key):
        raise ValueError(
            f"invalid project key {value!r}: expected {PROJECT_KEY_PATTERN_DESCRIPTION}"
        )
    return key


def normalize_milestone_key(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"milestone key must be a string, got {type(value).__name__}")
    key = value.strip().upper()
    if not _MILESTONE_KEY_RE.fullmatch(key):
        raise ValueError(
            f"invalid milestone key {value!r}: expected {MILESTONE_KEY_PATTERN_DESCRIPTION}"
        )
    return key


def format_ticket_key(project_key: str, number: int) -> str:
    return f"{project_key}-{number}"


def parse_ticket_key(value: str) -> tuple[str, int]:
    """Split ``PROJ-12`` into ``("PROJ", 12)``; lowercase input is accepted."""
    if not isinstance(value, str):
        raise ValueError(f"ticket key must be a string, got {type(value).__name__}")
    match = _TICKET_KEY_RE.fullmatch(value.strip().upper())
    if match is None:
        raise ValueError(f"invalid ticket key {value!r}: expected PROJECT-NUMBER")
    return match.group(1), int(match.group(2))


def generate_claim_id(*, randhex: _RandHex | None = None) -> str:
    token = (randhex or secrets.token_hex)(CLAIM_ID_RANDOM_BYTES)
    return f"{CLAIM_ID_PREFIX}{token}"


def validate_claim_id(id_str: str) -> None:
    if not isinstance(id_str, str) or not _CLAIM_ID_RE.fullmatch(id_str):
        raise ValueError(f"invalid claim id {id_str!r}: expected claim_<8 hex chars>")


def branch_slug(title: str, *, max_len: int = BRANCH_SLUG_MAX_LEN) -> str:
    """Reduce a title to a lowercase, dash-separated branch fragment."""
    lowered = title.lower().replace(" ", "-").replace("_", "-")
    slug = _SLUG_STRIP_RE.sub("", lowered)
    slug = _SLUG_DASHES_RE.sub("-", slug).strip("-")
    if len(slug) > max_len:
        slug = slug[:max_len].rstrip("-")
    return slug


def branch_name(ticket_key: str, title: str) -> str:
    slug = branch_slug(title)
    return f"{ticket_key}-{slug}" if slug else ticket_key


__all__ = [
    "CLAIM_ID_PREFIX",
    "MILESTONE_KEY_PATTERN_DESCRIPTION",
    "PROJECT_KEY_PATTERN_DESCRIPTION",
    "branch_name",
    "branch_slug",
    "format_ticket_key",
    "generate_claim_id",
    "normalize_milestone_key",
    "normalize_project_key",
    "parse_ticket_key",
    "validate_claim_id",
]
