"""
wark — ticket state machine

File: src/wark/workflow/state_machine.py

Purpose
- The single authority on ticket status transitions. Pure functions only:
  nothing here touches the store.

Functional requirements
- ``can_transition`` answers allow/deny for (current status, target, kind,
  reason, resolution) and reports the side effects the caller must apply.
- ``blocked`` and ``ready`` are outputs of dependency resolution; a manual
  command may only reach them along the release, reject, respond, and reopen
  edges.
- ``apply_transition`` is the only code that builds a ticket with a new status.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Final

from wark.domain.errors import ErrorCode, TicketError
from wark.domain.models import (
    ACTIVE_STATUSES,
    FlagReason,
    Resolution,
    Ticket,
    TicketStatus,
)


class TransitionKind(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"
    EXPIRE = "expire"


@dataclass(frozen=True, slots=True)
class _Rule:
    kinds: frozenset[TransitionKind]
    requires_reason: bool = False
    requires_flag_reason: bool = False
    requires_resolution: bool = False
    release_claim: bool = False
    increment_retry: bool = False
    reset_retry: bool = False
    clear_resolution: bool = False


_ANY_KIND: Final[frozenset[TransitionKind]] = frozenset(TransitionKind)
_MANUAL: Final[frozenset[TransitionKind]] = frozenset({TransitionKind.MANUAL})
_AUTO: Final[frozenset[TransitionKind]] = frozenset({TransitionKind.AUTO})

_S = TicketStatus


def _build_rules() -> dict[tuple[TicketStatus, TicketStatus], _Rule]:
    rules: dict[tuple[TicketStatus, TicketStatus], _Rule] = {
        (_S.BLOCKED, _S.READY): _Rule(_AUTO),
        (_S.READY, _S.BLOCKED): _Rule(_AUTO),
        (_S.READY, _S.WORKING): _Rule(_MANUAL),
        # Decomposition roll-up of an aggregation-only parent.
        (_S.BLOCKED, _S.REVIEW): _Rule(_AUTO),
        (_S.READY, _S.REVIEW): _Rule(_AUTO),
        # A reopened dependency sends review back to blocked.
        (_S.REVIEW, _S.BLOCKED): _Rule(_AUTO, release_claim=True),
        (_S.WORKING, _S.REVIEW): _Rule(_MANUAL, release_claim=True),
        (_S.WORKING, _S.READY): _Rule(
            frozenset({TransitionKind.MANUAL, TransitionKind.EXPIRE}),
            release_claim=True,
            increment_retry=True,
        ),
        (_S.REVIEW, _S.READY): _Rule(
            _MANUAL,
            requires_reason=True,
            release_claim=True,
            increment_retry=True,
        ),
        (_S.HUMAN, _S.WORKING): _Rule(_MANUAL, reset_retry=True),
        (_S.HUMAN, _S.READY): _Rule(_MANUAL, reset_retry=True),
        (_S.CLOSED, _S.READY): _Rule(_MANUAL, clear_resolution=True),
        (_S.CLOSED, _S.BLOCKED): _Rule(_MANUAL, clear_resolution=True),
    }
    for source in ACTIVE_STATUSES:
        rules[(source, _S.HUMAN)] = _Rule(
            _ANY_KIND,
            requires_flag_reason=True,
            release_claim=True,
        )
    for source in TicketStatus:
        if source is _S.CLOSED:
            continue
        rules[(source, _S.CLOSED)] = _Rule(
            frozenset({TransitionKind.MANUAL, TransitionKind.AUTO}),
            requires_resolution=True,
            release_claim=True,
        )
    return rules


TRANSITIONS: Final[dict[tuple[TicketStatus, TicketStatus], _Rule]] = _build_rules()


@dataclass(frozen=True, slots=True)
class TransitionDecision:
    """Outcome of a transition check, with the side effects to apply when allowed."""

    allowed: bool
    current: TicketStatus
    target: TicketStatus
    kind: TransitionKind
    error_code: ErrorCode | None = None
    message: str | None = None
    flag_reason: FlagReason | None = None
    resolution: Resolution | None = None
    release_claim: bool = False
    increment_retry: bool = False
    reset_retry: bool = False
    clear_resolution: bool = False

    def raise_if_denied(self, ticket_key: str) -> None:
        if self.allowed:
            return
        raise TicketError(
            self.error_code or ErrorCode.INVALID_STATE,
            f"{ticket_key}: {self.message}",
            {
                "ticket": ticket_key,
                "current_status": self.current.value,
                "target_status": self.target.value,
                "kind": self.kind.value,
            },
        )


def allowed_targets(status: TicketStatus) -> tuple[TicketStatus, ...]:
    return tuple(sorted((target for (source, target) in TRANSITIONS if source is status)))


def can_transition(
    ticket: Ticket | TicketStatus,
    target: TicketStatus,
    kind: TransitionKind = TransitionKind.MANUAL,
    *,
    reason: str | FlagReason | None = None,
    resolution: Resolution | str | None = None,
) -> TransitionDecision:
    """Decide whether ``ticket`` may move to ``target``; never raises for a denial."""
    current = ticket.status if isinstance(ticket, Ticket) else TicketStatus(ticket)
    target = TicketStatus(target)
    kind = TransitionKind(kind)

    def deny(code: ErrorCode, message: str) -> TransitionDecision:
        return TransitionDecision(
            allowed=False,
            current=current,
            target=target,
            kind=kind,
            error_code=code,
            message=message,
        )

    if current is target:
        return deny(ErrorCode.INVALID_STATE, f"ticket is already in status {current.value}")

    rule = TRANSITIONS.get((current, target))
    if rule is None:
        return deny(
            ErrorCode.INVALID_STATE,
            f"transition {current.value} -> {target.value} is not allowed",
        )
    if kind not in rule.kinds:
        allowed = ", ".join(sorted(item.value for item in rule.kinds))
        return deny(
            ErrorCode.INVALID_STATE,
            f"transition {current.value} -> {target.value} cannot be {kind.value} "
            f"(allowed: {allowed})",
        )

    flag_reason: FlagReason | None = None
    if rule.requires_flag_reason:
        if reason is None or (isinstance(reason, str) and not reason.strip()):
            return deny(ErrorCode.INVALID_REASON, "a flag reason is required")
        try:
            flag_reason = FlagReason.parse(reason)
        except ValueError as exc:
            return deny(ErrorCode.INVALID_REASON, str(exc))

    if rule.requires_reason and (reason is None or not str(reason).strip()):
        return deny(
            ErrorCode.INVALID_REASON,
            f"a reason is required for {current.value} -> {target.value}",
        )

    parsed_resolution: Resolution | None = None
    if rule.requires_resolution:
        if resolution is None:
            return deny(ErrorCode.INVALID_RESOLUTION, "a resolution is required to close")
        try:
            parsed_resolution = Resolution(
                resolution.strip().lower() if isinstance(resolution, str) else resolution
            )
        except ValueError:
            allowed = ", ".join(item.value for item in Resolution)
            return deny(
                ErrorCode.INVALID_RESOLUTION,
                f"invalid resolution {resolution!r}; expected one of: {allowed}",
            )

    return TransitionDecision(
        allowed=True,
        current=current,
        target=target,
        kind=kind,
        flag_reason=flag_reason,
        resolution=parsed_resolution,
        release_claim=rule.release_claim,
        increment_retry=rule.increment_retry,
        reset_retry=rule.reset_retry,
        clear_resolution=rule.clear_resolution,
    )


def failure_decision(
    ticket: Ticket,
    kind: TransitionKind = TransitionKind.MANUAL,
    *,
    reason: str | None = None,
) -> TransitionDecision:
    """Decision for a failed attempt (release, reject, expiry).

    The retry count goes up by one. Once it reaches ``max_retries`` the ticket
    goes to ``human`` with ``max_retries_exceeded`` instead of back to ``ready``.
    """
    if ticket.status is TicketStatus.REVIEW and (reason is None or not reason.strip()):
        return can_transition(ticket, TicketStatus.READY, kind, reason=reason)

    if ticket.retry_count + 1 >= ticket.max_retries:
        decision = can_transition(
            ticket,
            TicketStatus.HUMAN,
            kind,
            reason=FlagReason.MAX_RETRIES_EXCEEDED,
        )
    else:
        decision = can_transition(ticket, TicketStatus.READY, kind, reason=reason)

    if not decision.allowed:
        return decision
    return replace(decision, increment_retry=True, release_claim=True)


def apply_transition(ticket: Ticket, decision: TransitionDecision, *, now: datetime) -> Ticket:
    """Build the ticket that results from an allowed decision."""
    if not decision.allowed:
        decision.raise_if_denied(ticket.key)
    if decision.current is not ticket.status:
        raise TicketError(
            ErrorCode.CONCURRENT_MODIFICATION,
            f"{ticket.key}: decision was made for status {decision.current.value}, "
            f"ticket is now {ticket.status.value}",
            {"ticket": ticket.key, "current_status": ticket.status.value},
        )

    target = decision.target
    retry_count = ticket.retry_count
    if decision.reset_retry:
        retry_count = 0
    elif decision.increment_retry:
        retry_count += 1

    completed_at = ticket.completed_at
    if target is TicketStatus.CLOSED:
        completed_at = now
    elif decision.clear_resolution:
        completed_at = None

    return replace(
        ticket,
        status=target,
        resolution=decision.resolution if target is TicketStatus.CLOSED else None,
        human_flag_reason=decision.flag_reason if target is TicketStatus.HUMAN else None,
        retry_count=retry_count,
        completed_at=completed_at,
    )


__all__ = [
    "TRANSITIONS",
    "TransitionDecision",
    "TransitionKind",
    "allowed_targets",
    "apply_transition",
    "can_transition",
    "failure_decision",
]
