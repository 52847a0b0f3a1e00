"""
wark — unit tests for the ticket state machine

File: tests/unit/workflow/test_state_machine.py

Purpose
- Pin the transition table, the reason/resolution requirements, and the retry
  rule shared by release, reject, and expiry.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import FlagReason, Resolution, Ticket, TicketStatus
from wark.workflow.state_machine import (
    TRANSITIONS,
    TransitionKind,
    allowed_targets,
    apply_transition,
    can_transition,
    failure_decision,
)

_NOW = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)


def _ticket(status: TicketStatus = TicketStatus.WORKING, **overrides: object) -> Ticket:
    fields: dict[str, object] = {
        "id": 1,
        "project_id": 1,
        "project_key": "PROJ",
        "number": 1,
        "title": "Ticket",
        "status": status,
        "created_at": _NOW,
        "updated_at": _NOW,
    }
    fields.update(overrides)
    return Ticket(**fields)  # type: ignore[arg-type]


def test_claim_edge_is_manual_only() -> None:
    assert can_transition(TicketStatus.READY, TicketStatus.WORKING).allowed
    denied = can_transition(TicketStatus.READY, TicketStatus.WORKING, TransitionKind.AUTO)
    assert not denied.allowed
    assert denied.error_code is ErrorCode.INVALID_STATE


def test_dependency_outputs_cannot_be_set_manually() -> None:
    decision = can_transition(TicketStatus.BLOCKED, TicketStatus.READY)
    assert not decision.allowed
    assert "cannot be manual" in (decision.message or "")
    assert can_transition(TicketStatus.BLOCKED, TicketStatus.READY, TransitionKind.AUTO).allowed


def test_review_falls_back_to_blocked_only_automatically() -> None:
    auto = can_transition(TicketStatus.REVIEW, TicketStatus.BLOCKED, TransitionKind.AUTO)
    assert auto.allowed
    assert auto.release_claim
    assert not can_transition(TicketStatus.REVIEW, TicketStatus.BLOCKED).allowed


def test_same_status_and_unknown_edges_are_denied() -> None:
    assert not can_transition(TicketStatus.READY, TicketStatus.READY).allowed
    assert not can_transition(TicketStatus.BLOCKED, TicketStatus.WORKING).allowed
    assert TicketStatus.WORKING not in allowed_targets(TicketStatus.CLOSED)


def test_human_requires_a_known_flag_reason() -> None:
    missing = can_transition(TicketStatus.WORKING, TicketStatus.HUMAN)
    assert missing.error_code is ErrorCode.INVALID_REASON

    bogus = can_transition(TicketStatus.WORKING, TicketStatus.HUMAN, reason="bored")
    assert bogus.error_code is ErrorCode.INVALID_REASON

    ok = can_transition(TicketStatus.WORKING, TicketStatus.HUMAN, reason="access_required")
    assert ok.allowed
    assert ok.flag_reason is FlagReason.ACCESS_REQUIRED
    assert ok.release_claim


def test_reject_requires_reason_and_close_requires_resolution() -> None:
    assert (
        can_transition(TicketStatus.REVIEW, TicketStatus.READY, reason="  ").error_code
        is ErrorCode.INVALID_REASON
    )
    assert (
        can_transition(TicketStatus.READY, TicketStatus.CLOSED).error_code
        is ErrorCode.INVALID_RESOLUTION
    )
    assert (
        can_transition(TicketStatus.READY, TicketStatus.CLOSED, resolution="maybe").error_code
        is ErrorCode.INVALID_RESOLUTION
    )
    closing = can_transition(TicketStatus.WORKING, TicketStatus.CLOSED, resolution=" Duplicate ")
    assert closing.resolution is Resolution.DUPLICATE
    assert closing.release_claim


def test_every_non_closed_status_can_close() -> None:
    for status in TicketStatus:
        if status is TicketStatus.CLOSED:
            continue
        assert (status, TicketStatus.CLOSED) in TRANSITIONS


def test_apply_transition_sets_resolution_and_completion_time() -> None:
    ticket = _ticket(TicketStatus.REVIEW)
    decision = can_transition(ticket, TicketStatus.CLOSED, resolution="completed")
    closed = apply_transition(ticket, decision, now=_NOW)
    assert closed.resolution is Resolution.COMPLETED
    assert closed.completed_at == _NOW

    reopen = can_transition(closed, TicketStatus.READY)
    reopened = apply_transition(closed, reopen, now=_NOW)
    assert reopened.resolution is None
    assert reopened.completed_at is None


def test_apply_transition_refuses_denied_or_stale_decisions() -> None:
    ticket = _ticket(TicketStatus.READY)
    with pytest.raises(TicketError) as excinfo:
        apply_transition(ticket, can_transition(ticket, TicketStatus.REVIEW), now=_NOW)
    assert excinfo.value.code is ErrorCode.INVALID_STATE

    decision = can_transition(TicketStatus.WORKING, TicketStatus.REVIEW)
    with pytest.raises(TicketError) as stale:
        apply_transition(ticket, decision, now=_NOW)
    assert stale.value.code is ErrorCode.CONCURRENT_MODIFICATION


def test_failure_decision_returns_to_ready_then_escalates() -> None:
    first = failure_decision(_ticket(retry_count=0, max_retries=3))
    assert first.target is TicketStatus.READY
    assert first.increment_retry

    last = failure_decision(_ticket(retry_count=2, max_retries=3), TransitionKind.EXPIRE)
    assert last.target is TicketStatus.HUMAN
    assert last.flag_reason is FlagReason.MAX_RETRIES_EXCEEDED
    assert last.release_claim


def test_human_resume_resets_retry_count() -> None:
    ticket = _ticket(
        TicketStatus.HUMAN, retry_count=3, max_retries=3, human_flag_reason="max_retries_exceeded"
    )
    resumed = apply_transition(ticket, can_transition(ticket, TicketStatus.WORKING), now=_NOW)
    assert resumed.retry_count == 0
    assert resumed.human_flag_reason is None


@settings(max_examples=60, derandomize=True, deadline=None)
@given(max_retries=st.integers(min_value=1, max_value=6), attempts=st.integers(0, 10))
def test_property_retry_count_never_passes_max(max_retries: int, attempts: int) -> None:
    ticket = _ticket(TicketStatus.READY, max_retries=max_retries)
    for _ in range(attempts):
        if ticket.status is TicketStatus.HUMAN:
            break
        ticket = apply_transition(
            ticket, can_transition(ticket, TicketStatus.WORKING), now=_NOW
        )
        ticket = apply_transition(ticket, failure_decision(ticket), now=_NOW)
        assert ticket.retry_count <= ticket.max_retries
        assert (ticket.status is TicketStatus.HUMAN) == (ticket.retry_count == max_retries)

    expected = min(attempts, max_retries)
    assert ticket.retry_count == expected
