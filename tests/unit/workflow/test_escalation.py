"""Human-in-the-loop bridge: flag, respond, and send."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import ActivityAction, FlagReason, MessageType, TicketStatus

from . import build_stack

if TYPE_CHECKING:
    from pathlib import Path


def test_flag_releases_claim_and_opens_inbox_message(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with stack.db.transaction() as conn:
        working = stack.leases.grant(conn, ticket, "agent-1").ticket
    with stack.db.transaction() as conn:
        escalation = stack.bridge.flag(
            conn, working, "decision-needed", "  Postgres or SQLite?  ", actor_id="agent-1"
        )

    assert escalation.previous_status is TicketStatus.WORKING
    assert escalation.claim_released
    assert escalation.ticket.status is TicketStatus.HUMAN
    assert escalation.ticket.human_flag_reason is FlagReason.DECISION_NEEDED
    assert escalation.message.message_type is MessageType.DECISION
    assert escalation.message.content == "Postgres or SQLite?"
    assert stack.ctx.claims.get_active(ticket.id) is None


@pytest.mark.parametrize(("reason", "message"), [("bored", "help"), ("other", "  ")])
def test_flag_requires_valid_reason_and_message(tmp_path: Path, reason: str, message: str) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with pytest.raises(TicketError) as excinfo, stack.db.transaction() as conn:
        stack.bridge.flag(conn, ticket, reason, message)
    assert excinfo.value.code is ErrorCode.INVALID_REASON


def test_flag_refuses_the_retry_rule_reason(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with stack.db.transaction() as conn:
        working = stack.leases.grant(conn, ticket, "agent-1").ticket

    with pytest.raises(TicketError) as excinfo, stack.db.transaction() as conn:
        stack.bridge.flag(conn, working, FlagReason.MAX_RETRIES_EXCEEDED, "giving up")
    assert excinfo.value.code is ErrorCode.INVALID_REASON
    assert excinfo.value.exit_code == 2
    assert excinfo.value.details["reason"] == "max_retries_exceeded"

    after = stack.reload(ticket)
    assert after.status is TicketStatus.WORKING
    assert after.human_flag_reason is None
    assert stack.ctx.claims.get_active(ticket.id) is not None
    assert stack.ctx.inbox.list(pending_only=False, ticket_id=ticket.id) == []


def test_respond_returns_human_ticket_to_ready_once(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with stack.db.transaction() as conn:
        escalation = stack.bridge.flag(conn, ticket, "unclear_requirements", "Which endpoint?")

    with stack.db.transaction() as conn:
        response = stack.bridge.respond(conn, escalation.message.id, "Use /v2/users")
    assert response.ticket_updated
    assert response.previous_status is TicketStatus.HUMAN
    assert response.ticket.status is TicketStatus.READY
    assert response.ticket.human_flag_reason is None
    assert response.message.response == "Use /v2/users"

    with pytest.raises(TicketError) as excinfo, stack.db.transaction() as conn:
        stack.bridge.respond(conn, escalation.message.id, "again")
    assert excinfo.value.code is ErrorCode.INVALID_STATE

    history = stack.ctx.activity.history(stack.reload(ticket))
    assert [entry.action for entry in history][-2:] == [
        ActivityAction.ESCALATED,
        ActivityAction.HUMAN_RESPONDED,
    ]


def test_respond_to_blocked_dependency_lands_in_blocked(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    base = stack.ticket("base")
    waiting = stack.ticket("waiting")
    with stack.db.transaction() as conn:
        escalation = stack.bridge.flag(conn, waiting, "other", "Hold on")
        stack.ctx.dependencies.add(waiting.id, base.id, conn=conn)

    with stack.db.transaction() as conn:
        response = stack.bridge.respond(conn, escalation.message.id, "go")
    assert response.ticket.status is TicketStatus.BLOCKED


def test_respond_validates_input(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    with pytest.raises(TicketError) as empty, stack.db.transaction() as conn:
        stack.bridge.respond(conn, 1, " ")
    assert empty.value.code is ErrorCode.INVALID_ARGUMENT
    with pytest.raises(TicketError) as missing, stack.db.transaction() as conn:
        stack.bridge.respond(conn, 999, "hello")
    assert missing.value.code is ErrorCode.NOT_FOUND


def test_send_question_escalates_but_info_does_not(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with stack.db.transaction() as conn:
        info = stack.bridge.send(conn, ticket, "info", "Started on the schema")
    assert not info.escalated
    assert info.ticket.status is TicketStatus.READY

    with stack.db.transaction() as conn:
        decision = stack.bridge.send(conn, ticket, "DECISION", "REST or gRPC?")
    assert decision.escalated
    assert decision.ticket.status is TicketStatus.HUMAN
    assert decision.ticket.human_flag_reason is FlagReason.DECISION_NEEDED

    # Already waiting on a human: the message is just added.
    with stack.db.transaction() as conn:
        follow_up = stack.bridge.send(conn, decision.ticket, "question", "Any update?")
    assert not follow_up.escalated
    assert stack.ctx.inbox.count_pending() == 3


def test_send_rejects_unknown_type(tmp_path: Path) -> None:
    stack = build_stack(tmp_path)
    ticket = stack.ticket()
    with pytest.raises(TicketError) as excinfo, stack.db.transaction() as conn:
        stack.bridge.send(conn, ticket, "memo", "hello")
    assert excinfo.value.code is ErrorCode.INVALID_ARGUMENT
