"""
wark — unit tests for the ticket service

File: tests/unit/service/test_ticket_service.py

Purpose
- Drive whole ticket lifecycles through the public service API against a real
  store: create, claim, tasks, complete, review, close, reopen, and the
  human-in-the-loop path.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ActivityAction,
    FlagReason,
    MessageType,
    Priority,
    Resolution,
    TicketStatus,
    to_iso8601z,
)
from wark.service import TicketFilter

from . import open_services


def test_create_ticket_blocks_on_open_dependencies(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    base = svc.create_ticket("proj", "Design schema", priority="high").ticket
    created = svc.create_ticket(
        "PROJ", "Build API", depends_on=[base.key, base.key], tasks=["routes", "tests"]
    )

    assert base.key == "PROJ-1"
    assert base.priority is Priority.HIGH
    assert created.ticket.status is TicketStatus.BLOCKED
    assert created.blocked_by == ("PROJ-1",)
    assert [task.position for task in created.tasks] == [0, 1]
    assert svc.get_ticket("PROJ-2").blocked_by == ("PROJ-1",)


@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"project_key": "NOPE", "title": "x"}, ErrorCode.NOT_FOUND),
        ({"project_key": None, "title": "x"}, ErrorCode.INVALID_ARGUMENT),
        ({"project_key": "PROJ", "title": "  "}, ErrorCode.INVALID_ARGUMENT),
        ({"project_key": "PROJ", "title": "x", "priority": "urgent"}, ErrorCode.INVALID_ARGUMENT),
        ({"project_key": "PROJ", "title": "x", "max_retries": 0}, ErrorCode.INVALID_ARGUMENT),
        ({"project_key": "PROJ", "title": "x", "depends_on": ["PROJ-9"]}, ErrorCode.NOT_FOUND),
    ],
)
def test_create_ticket_validation(tmp_path: Path, kwargs: dict[str, object], code: ErrorCode) -> None:
    svc = open_services(tmp_path).tickets
    with pytest.raises(TicketError) as excinfo:
        svc.create_ticket(**kwargs)  # type: ignore[arg-type]
    assert excinfo.value.code is code


def test_full_lifecycle_unblocks_dependent(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    base = svc.create_ticket("PROJ", "Add user auth", tasks=["model", "endpoint"]).ticket
    follow = svc.create_ticket("PROJ", "Add sessions", depends_on=[base.key]).ticket

    claimed = svc.claim(base.key, "agent-1", 45)
    assert claimed.ticket.status is TicketStatus.WORKING
    assert claimed.branch == "PROJ-1-add-user-auth"
    assert claimed.next_task is not None and claimed.next_task.description == "model"
    assert claimed.tasks_total == 2

    with pytest.raises(TicketError) as open_tasks:
        svc.complete(base.key, worker_id="agent-1")
    assert open_tasks.value.code is ErrorCode.INCOMPLETE_TASKS
    assert open_tasks.value.details["incomplete_count"] == 2

    assert svc.complete_task(base.key, 0, worker_id="agent-1").tasks_remaining == 1
    assert svc.complete_task(base.key, 1, worker_id="agent-1").tasks_remaining == 0

    services.clock.advance(minutes=20)
    done = svc.complete(base.key, "auth shipped", worker_id="agent-1")
    assert done.ticket.status is TicketStatus.REVIEW
    assert not done.auto_accepted
    assert svc.get_ticket(base.key).active_claim is None

    accepted = svc.accept(base.key)
    assert accepted.ticket.status is TicketStatus.CLOSED
    assert accepted.ticket.resolution is Resolution.COMPLETED
    assert accepted.resolution.unblocked == 1
    assert svc.get_ticket(follow.key).ticket.status is TicketStatus.READY

    actions = [entry.action for entry in svc.get_history(base.key).entries]
    assert actions[0] is ActivityAction.CREATED
    assert actions[-3:] == [
        ActivityAction.TASK_COMPLETED,
        ActivityAction.COMPLETED,
        ActivityAction.ACCEPTED,
    ]
    assert [
        entry.action
        for entry in svc.get_history(follow.key, action="unblocked").entries
    ] == [ActivityAction.UNBLOCKED]


def test_auto_accept_closes_on_complete(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    base = svc.create_ticket("PROJ", "Fix typo").ticket
    follow = svc.create_ticket("PROJ", "Release", depends_on=[base.key]).ticket
    svc.claim(base.key, "agent-1")

    result = svc.complete(base.key, auto_accept=True, worker_id="agent-1")

    assert result.auto_accepted
    assert result.ticket.status is TicketStatus.CLOSED
    assert svc.get_ticket(follow.key).ticket.status is TicketStatus.READY


def test_complete_and_accept_require_the_right_status(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Idle").ticket
    for call in (lambda: svc.complete(ticket.key), lambda: svc.accept(ticket.key)):
        with pytest.raises(TicketError) as excinfo:
            call()
        assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_reject_counts_retries_and_escalates_at_limit(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Flaky", max_retries=2).ticket

    svc.claim(ticket.key, "agent-1")
    svc.complete(ticket.key, worker_id="agent-1")
    with pytest.raises(TicketError) as no_reason:
        svc.reject(ticket.key, "   ")
    assert no_reason.value.code is ErrorCode.INVALID_REASON

    first = svc.reject(ticket.key, "tests fail on CI")
    assert first.ticket.status is TicketStatus.READY
    assert first.ticket.retry_count == 1
    assert not first.escalated

    svc.claim(ticket.key, "agent-2")
    svc.complete(ticket.key, worker_id="agent-2")
    second = svc.reject(ticket.key, "still failing")
    assert second.escalated
    assert second.ticket.status is TicketStatus.HUMAN
    assert second.ticket.human_flag_reason is FlagReason.MAX_RETRIES_EXCEEDED
    assert second.inbox_message is not None
    assert second.inbox_message.message_type is MessageType.ESCALATION

    resumed = svc.resume(ticket.key, "agent-3")
    assert resumed.ticket.status is TicketStatus.WORKING
    assert resumed.ticket.retry_count == 0


def test_release_returns_ticket_to_queue(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Spike").ticket
    svc.claim(ticket.key, "agent-1")

    released = svc.release(ticket.key, "  ", worker_id="agent-1")

    assert released.ticket.status is TicketStatus.READY
    assert released.ticket.retry_count == 1
    assert released.claim is not None
    with pytest.raises(TicketError) as excinfo:
        svc.release(ticket.key)
    assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_close_working_ticket_releases_claim_and_reopen_reblocks(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    base = svc.create_ticket("PROJ", "Base").ticket
    follow = svc.create_ticket("PROJ", "Follow", depends_on=[base.key]).ticket
    svc.claim(base.key, "agent-1")

    closed = svc.close(base.key, "wont_do", "descoped")
    assert closed.claim_released
    assert closed.ticket.resolution is Resolution.WONT_DO
    assert svc.get_ticket(follow.key).ticket.status is TicketStatus.READY

    with pytest.raises(TicketError) as twice:
        svc.close(base.key, "completed")
    assert twice.value.code is ErrorCode.INVALID_STATE
    with pytest.raises(TicketError) as bad:
        svc.close(follow.key, "finished")
    assert bad.value.code is ErrorCode.INVALID_RESOLUTION

    reopened = svc.reopen(base.key)
    assert reopened.ticket.status is TicketStatus.READY
    assert reopened.ticket.resolution is None
    assert [item.ticket_key for item in reopened.resolution.items] == [follow.key]
    assert svc.get_ticket(follow.key).ticket.status is TicketStatus.BLOCKED

    with pytest.raises(TicketError) as not_closed:
        svc.reopen(base.key)
    assert not_closed.value.code is ErrorCode.INVALID_STATE


def test_flag_respond_round_trip_through_inbox(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Pick a database").ticket
    svc.claim(ticket.key, "agent-1")

    flagged = svc.flag(ticket.key, "decision_needed", "Postgres or SQLite?", worker_id="agent-1")
    assert flagged.previous_status is TicketStatus.WORKING
    assert flagged.claim_released
    pending = svc.list_inbox(project_key="PROJ")
    assert [message.id for message in pending] == [flagged.inbox_message.id]

    answered = svc.respond(flagged.inbox_message.id, "SQLite")
    assert answered.ticket_updated
    assert answered.ticket.status is TicketStatus.READY
    assert svc.list_inbox() == ()
    assert len(svc.list_inbox(pending_only=False, ticket_key=ticket.key)) == 1

    with pytest.raises(TicketError) as excinfo:
        svc.flag(ticket.key, "max_retries_exceeded", "out of attempts")
    assert excinfo.value.code is ErrorCode.INVALID_REASON
    assert svc.get_ticket(ticket.key).ticket.status is TicketStatus.READY


def test_send_info_keeps_working(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Migrate").ticket
    svc.claim(ticket.key, "agent-1")

    info = svc.send(ticket.key, "info", "halfway there", worker_id="agent-1")
    assert not info.escalated
    assert svc.get_ticket(ticket.key).ticket.status is TicketStatus.WORKING

    question = svc.send(ticket.key, "question", "Drop the old table?", worker_id="agent-1")
    assert question.escalated
    assert question.claim_released
    assert question.ticket.human_flag_reason is FlagReason.OTHER


def test_update_ticket_records_changes_and_detects_stale_writes(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    services.milestones.create("PROJ", "v1", "First release")
    svc = services.tickets
    ticket = svc.create_ticket("PROJ", "Old title").ticket

    updated = svc.update_ticket(
        ticket.key,
        expected_updated_at=to_iso8601z(ticket.updated_at),
        title="New title",
        priority="highest",
        milestone="v1",
    )
    assert [change.field for change in updated.changes] == ["milestone", "priority", "title"]
    assert updated.ticket.priority is Priority.HIGHEST
    assert svc.get_ticket(ticket.key).milestone_key == "V1"

    unchanged = svc.update_ticket(ticket.key, title="New title")
    assert unchanged.changes == ()

    with pytest.raises(TicketError) as stale:
        svc.update_ticket(
            ticket.key, expected_updated_at=to_iso8601z(ticket.updated_at), title="Lost"
        )
    assert stale.value.code is ErrorCode.CONCURRENT_MODIFICATION
    assert stale.value.retryable

    with pytest.raises(TicketError) as bad_field:
        svc.update_ticket(ticket.key, status="closed")
    assert bad_field.value.code is ErrorCode.INVALID_ARGUMENT

    history = svc.get_history(ticket.key, action=ActivityAction.FIELD_CHANGED).entries
    assert {entry.details["field"] for entry in history} == {"milestone", "priority", "title"}


def test_comment_and_task_edge_cases(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    ticket = svc.create_ticket("PROJ", "Docs").ticket

    note = svc.comment(ticket.key, "Remember the changelog", actor_id="alice")
    assert note.action is ActivityAction.COMMENT
    assert note.actor_id == "alice"

    added = svc.add_task(ticket.key, "write intro")
    assert (added.task.position, added.tasks_total, added.tasks_remaining) == (0, 1, 1)
    svc.complete_task(ticket.key, 0)
    with pytest.raises(TicketError) as again:
        svc.complete_task(ticket.key, 0)
    assert again.value.code is ErrorCode.INVALID_STATE
    with pytest.raises(TicketError) as missing:
        svc.complete_task(ticket.key, 4)
    assert missing.value.code is ErrorCode.NOT_FOUND

    svc.close(ticket.key, "completed")
    with pytest.raises(TicketError) as closed:
        svc.add_task(ticket.key, "late task")
    assert closed.value.code is ErrorCode.INVALID_STATE


def test_task_list_clear_and_remove(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    ticket = svc.create_ticket("PROJ", "Docs", tasks=["intro", "body", "outro"]).ticket
    svc.complete_task(ticket.key, 0)

    listing = svc.list_tasks(ticket.key)
    assert [task.description for task in listing.tasks] == ["intro", "body", "outro"]
    assert listing.complete_count == 1
    assert listing.next_task is not None and listing.next_task.position == 1

    cleared = svc.uncomplete_task(ticket.key, 0)
    assert cleared.changed
    assert not cleared.task.complete
    assert cleared.tasks_remaining == 3
    assert not svc.uncomplete_task(ticket.key, 0).changed

    removed = svc.remove_task(ticket.key, 1)
    assert removed.task.description == "body"
    assert (removed.tasks_total, removed.tasks_remaining) == (2, 2)
    after = svc.list_tasks(ticket.key).tasks
    assert [(task.position, task.description) for task in after] == [(0, "intro"), (1, "outro")]

    changes = [
        entry.details
        for entry in svc.get_history(ticket.key, action="field_changed").entries
        if entry.details.get("field") in {"tasks", "tasks_remaining"}
    ]
    assert len(changes) == 2

    with pytest.raises(TicketError) as missing:
        svc.remove_task(ticket.key, 5)
    assert missing.value.code is ErrorCode.NOT_FOUND

    svc.close(ticket.key, "completed")
    for operation in (svc.uncomplete_task, svc.remove_task):
        with pytest.raises(TicketError) as closed:
            operation(ticket.key, 0)
        assert closed.value.code is ErrorCode.INVALID_STATE


def test_claim_next_takes_the_best_candidate(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    svc.create_ticket("PROJ", "low", priority="low")
    big = svc.create_ticket("PROJ", "big", priority="critical", complexity="xlarge").ticket
    urgent = svc.create_ticket("PROJ", "urgent", priority="high").ticket

    preview = svc.claim_next("PROJ", max_complexity="large", dry_run=True)
    assert preview.dry_run
    assert preview.ticket is not None and preview.ticket.key == urgent.key
    assert preview.claim is None
    assert preview.skipped == 1
    assert svc.list_claims() == ()

    picked = svc.claim_next("PROJ", "agent-1")
    assert picked.ticket is not None and picked.ticket.key == urgent.key
    assert picked.ticket.status is TicketStatus.WORKING
    assert picked.claim is not None and picked.claim.claim.worker_id == "agent-1"
    assert svc.get_ticket(big.key).ticket.status is TicketStatus.READY

    anything = svc.claim_next("PROJ", "agent-2", max_complexity="xlarge")
    assert anything.ticket is not None and anything.ticket.key == big.key


def test_claim_next_passes_over_exhausted_tickets_and_reports_empty(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    assert svc.claim_next("PROJ", "agent-1").ticket is None

    spent = svc.create_ticket("PROJ", "spent", max_retries=2).ticket
    services.db.execute("UPDATE tickets SET retry_count = 2 WHERE id = ?", (spent.id,))
    empty = svc.claim_next("PROJ", "agent-1")

    assert empty.ticket is None
    assert empty.skipped == 1
    assert svc.get_claim(spent.key) is None


def test_claim_views_and_message_lookup(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    first = svc.create_ticket("PROJ", "first").ticket
    second = svc.create_ticket("PROJ", "second").ticket
    svc.claim(first.key, "agent-1", 30)
    svc.claim(second.key, "agent-2", 5)
    svc.release(second.key, worker_id="agent-2")
    svc.claim(second.key, "agent-3", 5)
    services.clock.advance(minutes=10)

    active = svc.list_claims()
    assert [view.ticket_key for view in active] == [second.key, first.key]
    expired = svc.list_claims(expired_only=True)
    assert [(view.ticket_key, view.expired) for view in expired] == [(second.key, True)]
    assert len(svc.list_claims(include_finished=True)) == 3
    with pytest.raises(TicketError) as both:
        svc.list_claims(include_finished=True, expired_only=True)
    assert both.value.code is ErrorCode.INVALID_ARGUMENT

    view = svc.get_claim(first.key)
    assert view is not None
    assert (view.claim.worker_id, view.minutes_remaining) == ("agent-1", 20)

    flagged = svc.flag(first.key, "unclear_requirements", "Which locale?", worker_id="agent-1")
    message = svc.get_message(flagged.inbox_message.id)
    assert message.content == "Which locale?"
    assert message.ticket_key == first.key
    lapsed = svc.get_claim(first.key)
    assert lapsed is not None and not lapsed.claim.is_active
    with pytest.raises(TicketError) as missing:
        svc.get_message(999)
    assert missing.value.code is ErrorCode.NOT_FOUND


def test_decompose_creates_ready_children_and_rolls_up(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    parent = svc.create_ticket("PROJ", "Epic", priority="high").ticket

    result = svc.decompose(parent.key, ["part one", "part two"], aggregate_only=True)

    assert result.parent.status is TicketStatus.BLOCKED
    assert result.parent.aggregate_only
    assert [child.status for child in result.children] == [TicketStatus.READY] * 2
    assert all(child.priority is Priority.HIGH for child in result.children)
    details = svc.get_ticket(parent.key)
    assert [child.key for child in details.children] == ["PROJ-2", "PROJ-3"]
    assert details.blocked_by == ("PROJ-2", "PROJ-3")
    assert svc.get_ticket("PROJ-2").parent_key == parent.key

    for child in result.children:
        svc.claim(child.key, "agent-1")
        svc.complete(child.key, auto_accept=True, worker_id="agent-1")
    assert svc.get_ticket(parent.key).ticket.status is TicketStatus.REVIEW

    with pytest.raises(TicketError) as excinfo:
        svc.decompose(parent.key, ["late"])
    assert excinfo.value.code is ErrorCode.INVALID_STATE


def test_reopened_child_sends_rolled_up_parent_back_to_blocked(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    parent = svc.create_ticket("PROJ", "Epic").ticket
    (child,) = svc.decompose(parent.key, ["only part"], aggregate_only=True).children
    svc.close(child.key, "completed")
    svc.claim(parent.key, "reviewer-1")
    assert svc.get_ticket(parent.key).ticket.status is TicketStatus.REVIEW

    reopened = svc.reopen(child.key)

    moved = [
        (item.ticket_key, item.from_status, item.to_status) for item in reopened.resolution.items
    ]
    assert moved == [(parent.key, TicketStatus.REVIEW, TicketStatus.BLOCKED)]
    details = svc.get_ticket(parent.key)
    assert details.ticket.status is TicketStatus.BLOCKED
    assert details.blocked_by == (child.key,)
    assert details.active_claim is None
    with pytest.raises(TicketError) as excinfo:
        svc.accept(parent.key)
    assert excinfo.value.code is ErrorCode.INVALID_STATE
    assert svc.check_integrity().ok

    svc.close(child.key, "completed")
    assert svc.accept(parent.key).ticket.status is TicketStatus.CLOSED


def test_accept_and_complete_refuse_open_dependencies(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    base = svc.create_ticket("PROJ", "Schema").ticket
    follow = svc.create_ticket("PROJ", "API", depends_on=[base.key]).ticket
    svc.close(base.key, "completed")
    svc.claim(follow.key, "agent-1")
    svc.reopen(base.key)

    with pytest.raises(TicketError) as completing:
        svc.complete(follow.key)
    assert completing.value.code is ErrorCode.UNRESOLVED_DEPS
    assert completing.value.details["blocked_by"] == [base.key]

    svc.close(base.key, "completed")
    svc.complete(follow.key)
    svc.reopen(base.key)
    with pytest.raises(TicketError) as accepting:
        svc.accept(follow.key)
    assert accepting.value.code is ErrorCode.INVALID_STATE
    assert svc.get_ticket(follow.key).ticket.status is TicketStatus.BLOCKED


def test_check_integrity_flags_review_with_open_dependencies(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    a = svc.create_ticket("PROJ", "a").ticket
    b = svc.create_ticket("PROJ", "b").ticket
    svc.claim(b.key, "agent-1")
    svc.complete(b.key)

    services.db.execute(
        "INSERT INTO ticket_dependencies (ticket_id, depends_on_id, created_at) VALUES (?, ?, ?)",
        (b.id, a.id, to_iso8601z(services.clock())),
    )
    report = svc.check_integrity()

    assert [(issue.check, issue.subject) for issue in report.issues] == [
        ("dependency_status", b.key)
    ]
    assert a.key in report.issues[0].message

    with pytest.raises(TicketError) as excinfo:
        svc.accept(b.key)
    assert excinfo.value.code is ErrorCode.UNRESOLVED_DEPS


def test_dependency_edits_and_cycles(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    a = svc.create_ticket("PROJ", "a").ticket
    b = svc.create_ticket("PROJ", "b", depends_on=[a.key]).ticket
    c = svc.create_ticket("PROJ", "c").ticket

    added = svc.add_dependency(c.key, b.key)
    assert added.status_changed
    assert added.ticket.status is TicketStatus.BLOCKED

    with pytest.raises(TicketError) as cycle:
        svc.add_dependency(a.key, c.key)
    assert cycle.value.code is ErrorCode.DEPENDENCY_CYCLE
    assert cycle.value.details["cycle"][0] == a.key

    graph = svc.get_ticket_graph(b.key)
    assert graph.dependencies == (a.key,)
    assert graph.dependents == (c.key,)
    assert graph.order == (a.key, b.key, c.key)

    removed = svc.remove_dependency(c.key, b.key)
    assert removed.ticket.status is TicketStatus.READY
    vetted = svc.vet(b.key)
    assert not vetted.changed
    assert vetted.blocked_by == (a.key,)


def test_list_tickets_filters(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    services.projects.create("OTHER", "Other")
    svc = services.tickets
    svc.create_ticket("PROJ", "one")
    svc.create_ticket("PROJ", "two", depends_on=["PROJ-1"])
    svc.create_ticket("OTHER", "three")

    ready = svc.list_tickets(TicketFilter(project_key="PROJ", statuses=(TicketStatus.READY,)))
    assert [ticket.key for ticket in ready] == ["PROJ-1"]
    assert len(svc.list_tickets()) == 3
    assert len(svc.list_tickets(TicketFilter(limit=1))) == 1


def test_expire_claims_through_service(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    ticket = svc.create_ticket("PROJ", "Slow", max_retries=1).ticket
    svc.claim(ticket.key, "agent-1", 5)

    services.clock.advance(minutes=5)
    result = svc.expire_claims()

    assert (result.expired, result.escalated) == (1, 1)
    details = svc.get_ticket(ticket.key)
    assert details.ticket.status is TicketStatus.HUMAN
    assert [message.message_type for message in details.pending_messages] == [
        MessageType.ESCALATION
    ]


def test_check_integrity_reports_status_drift(tmp_path: Path) -> None:
    services = open_services(tmp_path)
    svc = services.tickets
    a = svc.create_ticket("PROJ", "a").ticket
    b = svc.create_ticket("PROJ", "b").ticket
    assert svc.check_integrity().ok

    services.db.execute(
        "INSERT INTO ticket_dependencies (ticket_id, depends_on_id, created_at) VALUES (?, ?, ?)",
        (b.id, a.id, to_iso8601z(services.clock())),
    )
    report = svc.check_integrity()

    assert not report.ok
    assert report.tickets_checked == 2
    assert report.edges_checked == 1
    assert [(issue.check, issue.subject) for issue in report.issues] == [
        ("dependency_status", b.key)
    ]

    svc.vet_all()
    assert svc.check_integrity().ok


def test_unknown_ticket_key_is_not_found_and_malformed_is_invalid(tmp_path: Path) -> None:
    svc = open_services(tmp_path).tickets
    with pytest.raises(TicketError) as missing:
        svc.get_ticket("PROJ-404")
    assert missing.value.code is ErrorCode.NOT_FOUND
    with pytest.raises(TicketError) as malformed:
        svc.get_ticket("not a key")
    assert malformed.value.code is ErrorCode.INVALID_ARGUMENT


_OPERATIONS = st.lists(
    st.tuples(
        st.sampled_from(
            [
                "claim",
                "release",
                "complete",
                "accept",
                "reject",
                "flag",
                "respond",
                "close",
                "reopen",
                "expire",
            ]
        ),
        st.integers(min_value=0, max_value=2),
    ),
    max_size=30,
)


@settings(max_examples=25, derandomize=True, deadline=None)
@given(operations=_OPERATIONS)
def test_property_random_operations_keep_the_store_consistent(
    operations: list[tuple[str, int]],
) -> None:
    with tempfile.TemporaryDirectory() as workdir:
        services = open_services(Path(workdir))
        svc = services.tickets
        first = svc.create_ticket("PROJ", "Schema", max_retries=2).ticket
        second = svc.create_ticket("PROJ", "API", depends_on=[first.key], max_retries=2).ticket
        third = svc.create_ticket(
            "PROJ", "Docs", depends_on=[first.key, second.key], max_retries=2
        ).ticket
        keys = [first.key, second.key, third.key]

        for name, index in operations:
            key = keys[index]
            try:
                if name == "claim":
                    svc.claim(key, f"agent-{index}", 30)
                elif name == "release":
                    svc.release(key, "handing back")
                elif name == "complete":
                    svc.complete(key, "done")
                elif name == "accept":
                    svc.accept(key)
                elif name == "reject":
                    svc.reject(key, "needs another pass")
                elif name == "flag":
                    svc.flag(key, "decision_needed", "Which storage engine?")
                elif name == "respond":
                    pending = svc.list_inbox(ticket_key=key)
                    if pending:
                        svc.respond(pending[0].id, "Use SQLite")
                elif name == "close":
                    svc.close(key, "wont_do")
                elif name == "reopen":
                    svc.reopen(key)
                else:
                    services.clock.advance(minutes=45)
                    svc.expire_claims()
            except TicketError as exc:
                assert exc.code is not ErrorCode.INTERNAL

            report = svc.check_integrity()
            assert report.ok, report.issues
            for each in keys:
                ticket = svc.get_ticket(each).ticket
                assert (ticket.status is TicketStatus.CLOSED) == (ticket.resolution is not None)
                assert (ticket.status is TicketStatus.HUMAN) == (
                    ticket.human_flag_reason is not None
                )
                assert 0 <= ticket.retry_count <= ticket.max_retries
