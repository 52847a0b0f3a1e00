from __future__ import annotations

import pytest

from wark.domain import keys


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("proj", "PROJ"), (" Web2 ", "WEB2"), ("AB", "AB"), ("A123456789", "A123456789")],
)
def test_normalize_project_key_uppercases_valid_keys(raw: str, expected: str) -> None:
    assert keys.normalize_project_key(raw) == expected


@pytest.mark.parametrize("raw", ["P", "1AB", "AB-C", "A1234567890", "", "  "])
def test_normalize_project_key_rejects_bad_keys(raw: str) -> None:
    with pytest.raises(ValueError, match="invalid project key"):
        keys.normalize_project_key(raw)


def test_normalize_milestone_key_allows_underscores() -> None:
    assert keys.normalize_milestone_key("v1_beta") == "V1_BETA"
    assert keys.normalize_milestone_key("Q") == "Q"
    with pytest.raises(ValueError):
        keys.normalize_milestone_key("_V1")
    with pytest.raises(ValueError):
        keys.normalize_milestone_key("V" * 21)


def test_ticket_key_round_trip_and_lowercase_input() -> None:
    assert keys.format_ticket_key("PROJ", 12) == "PROJ-12"
    assert keys.parse_ticket_key("proj-12") == ("PROJ", 12)
    assert keys.parse_ticket_key(" WEB-1 ") == ("WEB", 1)


@pytest.mark.parametrize("raw", ["PROJ", "PROJ-0", "PROJ-01", "-3", "PROJ-x", "P-1"])
def test_parse_ticket_key_rejects_malformed_keys(raw: str) -> None:
    with pytest.raises(ValueError, match="invalid ticket key"):
        keys.parse_ticket_key(raw)


def test_generate_claim_id_uses_prefix_and_eight_hex_chars() -> None:
    claim_id = keys.generate_claim_id(randhex=lambda size: "ab" * size)
    assert claim_id == "claim_abababab"
    keys.validate_claim_id(claim_id)

    random_id = keys.generate_claim_id()
    keys.validate_claim_id(random_id)
    assert random_id.startswith(keys.CLAIM_ID_PREFIX)


@pytest.mark.parametrize("raw", ["claim_ABCDEF12", "claim_123", "lease_0000abcd", ""])
def test_validate_claim_id_rejects_other_shapes(raw: str) -> None:
    with pytest.raises(ValueError):
        keys.validate_claim_id(raw)


def test_branch_slug_strips_punctuation_and_collapses_dashes() -> None:
    assert keys.branch_slug("Fix: Login bug!! (urgent)") == "fix-login-bug-urgent"
    assert keys.branch_slug("Add OAuth_support -- now") == "add-oauth-support-now"
    assert keys.branch_slug("!!!") == ""


def test_branch_slug_truncates_without_trailing_dash() -> None:
    slug = keys.branch_slug("word " * 30)
    assert len(slug) <= 50
    assert not slug.endswith("-")


def test_branch_name_prefixes_ticket_key() -> None:
    assert keys.branch_name("PROJ-3", "Add user auth") == "PROJ-3-add-user-auth"
    assert keys.branch_name("PROJ-3", "???") == "PROJ-3"
