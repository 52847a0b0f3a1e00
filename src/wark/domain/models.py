"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, date, datetime, timedelta
from enum import Enum, StrEnum
from typing import Any, NoReturn, TypeVar, cast

from wark.domain import keys as domain_keys

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 65536
_MAX_TITLE = 500
_MAX_ID_TEXT = 128
_MAX_JSON_DEPTH = 16


class TicketStatus(StrEnum):
    BLOCKED = "blocked"
    READY = "ready"
    WORKING = "working"
    HUMAN = "human"
    REVIEW = "review"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self is TicketStatus.CLOSED


class Resolution(StrEnum):
    COMPLETED = "completed"
    WONT_DO = "wont_do"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    OBSOLETE = "obsolete"


class Priority(StrEnum):
    HIGHEST = "highest"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    LOWEST = "lowest"

    @property
    def ordinal(self) -> int:
        """1 for highest through 5 for lowest; lower sorts first."""
        return _PRIORITY_ORDINALS[self]


_PRIORITY_ORDINALS: dict[Priority, int] = {
    Priority.HIGHEST: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
    Priority.LOWEST: 5,
}


class Complexity(StrEnum):
    TRIVIAL = "trivial"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    XLARGE = "xlarge"

    @property
    def ordinal(self) -> int:
        return _COMPLEXITY_ORDINALS[self]

    @property
    def needs_decomposition(self) -> bool:
        return self in (Complexity.LARGE, Complexity.XLARGE)


_COMPLEXITY_ORDINALS: dict[Complexity, int] = {
    Complexity.TRIVIAL: 1,
    Complexity.SMALL: 2,
    Complexity.MEDIUM: 3,
    Complexity.LARGE: 4,
    Complexity.XLARGE: 5,
}


class ClaimStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    RELEASED = "released"


class MessageType(StrEnum):
    QUESTION = "question"
    DECISION = "decision"
    REVIEW = "review"
    ESCALATION = "escalation"
    INFO = "info"

    @property
    def requires_response(self) -> bool:
        return self in (MessageType.QUESTION, MessageType.DECISION, MessageType.ESCALATION)


class ActorType(StrEnum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class ActivityAction(StrEnum):
    """Closed vocabulary for activity log entries."""

    CREATED = "created"
    CLAIMED = "claimed"
    RELEASED = "released"
    EXPIRED = "expired"
    COMPLETED = "completed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CLOSED = "closed"
    REOPENED = "reopened"
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_REMOVED = "dependency_removed"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    DECOMPOSED = "decomposed"
    CHILD_CREATED = "child_created"
    TASK_COMPLETED = "task_completed"
    ESCALATED = "escalated"
    HUMAN_RESPONDED = "human_responded"
    FIELD_CHANGED = "field_changed"
    COMMENT = "comment"


class FlagReason(StrEnum):
    IRRECONCILABLE_CONFLICT = "irreconcilable_conflict"
    UNCLEAR_REQUIREMENTS = "unclear_requirements"
    DECISION_NEEDED = "decision_needed"
    ACCESS_REQUIRED = "access_required"
    BLOCKED_EXTERNAL = "blocked_external"
    RISK_ASSESSMENT = "risk_assessment"
    OUT_OF_SCOPE = "out_of_scope"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    OTHER = "other"

    @classmethod
    def parse(cls, value: object) -> FlagReason:
        """Accept ``Decision-Needed`` style spellings; raise ``ValueError`` otherwise."""
        if isinstance(value, FlagReason):
            return value
        if not isinstance(value, str):
            raise ValueError(f"flag reason must be a string, got {type(value).__name__}")
        normalized = value.strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(
                f"invalid flag reason {value!r}; expected one of: {allowed}"
            ) from None

    @property
    def message_type(self) -> MessageType:
        """Inbox message type a flag with this reason produces."""
        if self is FlagReason.DECISION_NEEDED:
            return MessageType.DECISION
        if self in (FlagReason.RISK_ASSESSMENT, FlagReason.IRRECONCILABLE_CONFLICT):
            return MessageType.ESCALATION
        if self is FlagReason.MAX_RETRIES_EXCEEDED:
            return MessageType.ESCALATION
        return MessageType.QUESTION


class MilestoneStatus(StrEnum):
    OPEN = "open"
    ACHIEVED = "achieved"
    ABANDONED = "abandoned"


TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.CLOSED})
ACTIVE_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.BLOCKED, TicketStatus.READY, TicketStatus.WORKING, TicketStatus.REVIEW}
)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _set(obj: object, name: str, value: object) -> None:
    object.__setattr__(obj, name, value)


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    text = _as_str(value, path, min_len=0, max_len=max_len)
    return text or None


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    # SQLite stores booleans as 0/1.
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_int(value: object, path: str, *, minimum: int | None = None) -> int | None:
    if value is None:
        return None
    return _as_int(value, path, minimum=minimum)


def as_utc_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return as_utc_datetime(value, path)


def _as_optional_date(value: object, path: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 date: {value!r} ({exc})")
    _fail(path, f"expected date or YYYY-MM-DD string, got {type(value).__name__}")


def to_iso8601z(value: datetime) -> str:
    normalized = as_utc_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_optional_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum | None:
    if value is None:
        return None
    return _as_enum(enum_type, value, path)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return _as_json_value(value.value, path, depth=depth)
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    if isinstance(value, str):
        try:
            value = json.loads(value) if value else {}
        except json.JSONDecodeError as exc:
            _fail(path, f"invalid JSON: {exc}")
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class Project(CanonicalModel):
    id: int
    key: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    next_number: int = 1

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "Project.id", minimum=1))
        try:
            _set(self, "key", domain_keys.normalize_project_key(self.key))
        except ValueError as exc:
            _fail("Project.key", str(exc))
        _set(self, "name", _as_str(self.name, "Project.name", max_len=_MAX_TITLE))
        _set(self, "description", _as_optional_str(self.description, "Project.description"))
        _set(self, "next_number", _as_int(self.next_number, "Project.next_number", minimum=1))
        _set(self, "created_at", as_utc_datetime(self.created_at, "Project.created_at"))
        _set(self, "updated_at", as_utc_datetime(self.updated_at, "Project.updated_at"))


@dataclass(frozen=True, slots=True)
class Milestone(CanonicalModel):
    id: int
    project_id: int
    project_key: str
    key: str
    name: str
    created_at: datetime
    updated_at: datetime
    status: MilestoneStatus = MilestoneStatus.OPEN
    goal: str | None = None
    target_date: date | None = None

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "Milestone.id", minimum=1))
        _set(self, "project_id", _as_int(self.project_id, "Milestone.project_id", minimum=1))
        try:
            _set(self, "key", domain_keys.normalize_milestone_key(self.key))
        except ValueError as exc:
            _fail("Milestone.key", str(exc))
        _set(self, "name", _as_str(self.name, "Milestone.name", max_len=_MAX_TITLE))
        _set(self, "status", _as_enum(MilestoneStatus, self.status, "Milestone.status"))
        _set(self, "goal", _as_optional_str(self.goal, "Milestone.goal"))
        _set(self, "target_date", _as_optional_date(self.target_date, "Milestone.target_date"))
        _set(self, "created_at", as_utc_datetime(self.created_at, "Milestone.created_at"))
        _set(self, "updated_at", as_utc_datetime(self.updated_at, "Milestone.updated_at"))

    @property
    def qualified_key(self) -> str:
        return f"{self.project_key}/{self.key}"


@dataclass(frozen=True, slots=True)
class Ticket(CanonicalModel):
    """A unit of work.

    Instances are immutable. Status, resolution, and flag reason change only by
    building a new ticket through the state machine, and the constructor
    rejects any combination that breaks ``closed <=> resolution`` or
    ``human <=> human_flag_reason``.
    """

    id: int
    project_id: int
    project_key: str
    number: int
    title: str
    status: TicketStatus
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    priority: Priority = Priority.MEDIUM
    complexity: Complexity = Complexity.MEDIUM
    resolution: Resolution | None = None
    human_flag_reason: FlagReason | None = None
    retry_count: int = 0
    max_retries: int = 3
    branch_name: str | None = None
    parent_ticket_id: int | None = None
    milestone_id: int | None = None
    aggregate_only: bool = False
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "Ticket.id", minimum=1))
        _set(self, "project_id", _as_int(self.project_id, "Ticket.project_id", minimum=1))
        _set(self, "number", _as_int(self.number, "Ticket.number", minimum=1))
        _set(self, "title", _as_str(self.title, "Ticket.title", max_len=_MAX_TITLE))
        _set(self, "status", _as_enum(TicketStatus, self.status, "Ticket.status"))
        _set(self, "description", _as_optional_str(self.description, "Ticket.description"))
        _set(self, "priority", _as_enum(Priority, self.priority, "Ticket.priority"))
        _set(self, "complexity", _as_enum(Complexity, self.complexity, "Ticket.complexity"))
        _set(
            self,
            "resolution",
            _as_optional_enum(Resolution, self.resolution, "Ticket.resolution"),
        )
        if self.human_flag_reason is not None:
            try:
                _set(self, "human_flag_reason", FlagReason.parse(self.human_flag_reason))
            except ValueError as exc:
                _fail("Ticket.human_flag_reason", str(exc))
        _set(self, "retry_count", _as_int(self.retry_count, "Ticket.retry_count", minimum=0))
        _set(self, "max_retries", _as_int(self.max_retries, "Ticket.max_retries", minimum=1))
        _set(
            self,
            "branch_name",
            _as_optional_str(self.branch_name, "Ticket.branch_name", max_len=_MAX_ID_TEXT),
        )
        _set(
            self,
            "parent_ticket_id",
            _as_optional_int(self.parent_ticket_id, "Ticket.parent_ticket_id", minimum=1),
        )
        _set(
            self,
            "milestone_id",
            _as_optional_int(self.milestone_id, "Ticket.milestone_id", minimum=1),
        )
        _set(self, "aggregate_only", _as_bool(self.aggregate_only, "Ticket.aggregate_only"))
        _set(self, "created_at", as_utc_datetime(self.created_at, "Ticket.created_at"))
        _set(self, "updated_at", as_utc_datetime(self.updated_at, "Ticket.updated_at"))
        _set(
            self,
            "completed_at",
            _as_optional_datetime(self.completed_at, "Ticket.completed_at"),
        )

        if (self.status is TicketStatus.CLOSED) != (self.resolution is not None):
            _fail("Ticket.resolution", "must be set if and only if status is closed")
        if (self.status is TicketStatus.HUMAN) != (self.human_flag_reason is not None):
            _fail("Ticket.human_flag_reason", "must be set if and only if status is human")
        if self.parent_ticket_id is not None and self.parent_ticket_id == self.id:
            _fail("Ticket.parent_ticket_id", "ticket cannot be its own parent")

    @property
    def key(self) -> str:
        return domain_keys.format_ticket_key(self.project_key, self.number)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def to_dict(self) -> dict[str, JSONValue]:
        payload = CanonicalModel.to_dict(self)
        payload["key"] = self.key
        return payload


@dataclass(frozen=True, slots=True)
class Dependency(CanonicalModel):
    ticket_id: int
    depends_on_id: int
    created_at: datetime

    def __post_init__(self) -> None:
        _set(self, "ticket_id", _as_int(self.ticket_id, "Dependency.ticket_id", minimum=1))
        _set(
            self,
            "depends_on_id",
            _as_int(self.depends_on_id, "Dependency.depends_on_id", minimum=1),
        )
        if self.ticket_id == self.depends_on_id:
            _fail("Dependency", "a ticket cannot depend on itself")
        _set(self, "created_at", as_utc_datetime(self.created_at, "Dependency.created_at"))


@dataclass(frozen=True, slots=True)
class Claim(CanonicalModel):
    id: int
    claim_id: str
    ticket_id: int
    worker_id: str
    claimed_at: datetime
    expires_at: datetime
    status: ClaimStatus = ClaimStatus.ACTIVE
    released_at: datetime | None = None

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "Claim.id", minimum=1))
        try:
            domain_keys.validate_claim_id(self.claim_id)
        except ValueError as exc:
            _fail("Claim.claim_id", str(exc))
        _set(self, "ticket_id", _as_int(self.ticket_id, "Claim.ticket_id", minimum=1))
        _set(self, "worker_id", _as_str(self.worker_id, "Claim.worker_id", max_len=_MAX_ID_TEXT))
        _set(self, "claimed_at", as_utc_datetime(self.claimed_at, "Claim.claimed_at"))
        _set(self, "expires_at", as_utc_datetime(self.expires_at, "Claim.expires_at"))
        if self.expires_at < self.claimed_at:
            _fail("Claim.expires_at", "must be >= Claim.claimed_at")
        _set(self, "status", _as_enum(ClaimStatus, self.status, "Claim.status"))
        _set(self, "released_at", _as_optional_datetime(self.released_at, "Claim.released_at"))

    @property
    def is_active(self) -> bool:
        return self.status is ClaimStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def time_remaining(self, now: datetime) -> timedelta:
        remaining = self.expires_at - now
        return remaining if remaining > timedelta(0) else timedelta(0)


@dataclass(frozen=True, slots=True)
class InboxMessage(CanonicalModel):
    id: int
    ticket_id: int
    message_type: MessageType
    content: str
    created_at: datetime
    from_agent: str | None = None
    response: str | None = None
    responded_at: datetime | None = None
    ticket_key: str | None = None
    ticket_title: str | None = None

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "InboxMessage.id", minimum=1))
        _set(self, "ticket_id", _as_int(self.ticket_id, "InboxMessage.ticket_id", minimum=1))
        _set(
            self,
            "message_type",
            _as_enum(MessageType, self.message_type, "InboxMessage.message_type"),
        )
        _set(self, "content", _as_str(self.content, "InboxMessage.content"))
        _set(
            self,
            "from_agent",
            _as_optional_str(self.from_agent, "InboxMessage.from_agent", max_len=_MAX_ID_TEXT),
        )
        _set(self, "response", _as_optional_str(self.response, "InboxMessage.response"))
        _set(
            self,
            "responded_at",
            _as_optional_datetime(self.responded_at, "InboxMessage.responded_at"),
        )
        if (self.response is None) != (self.responded_at is None):
            _fail("InboxMessage.responded_at", "must be set together with response")
        _set(self, "created_at", as_utc_datetime(self.created_at, "InboxMessage.created_at"))

    @property
    def is_pending(self) -> bool:
        return self.responded_at is None


@dataclass(frozen=True, slots=True)
class FieldChange:
    field: str
    old: JSONValue
    new: JSONValue


@dataclass(frozen=True, slots=True)
class ClaimDetails:
    worker_id: str | None
    duration_mins: int | None
    expires_at: str | None
    review_claim: bool


@dataclass(frozen=True, slots=True)
class EscalationDetails:
    previous_status: str | None
    reason: str | None
    message_type: str | None
    inbox_message_id: int | None


ActivityDetailsView = FieldChange | ClaimDetails | EscalationDetails


@dataclass(frozen=True, slots=True)
class ActivityEntry(CanonicalModel):
    """One append-only history row.

    ``details`` stays a free-form mapping; ``view()`` projects it into a typed
    record for the actions that have one.
    """

    id: int
    ticket_id: int
    action: ActivityAction
    actor_type: ActorType
    summary: str
    created_at: datetime
    actor_id: str | None = None
    details: dict[str, JSONValue] = field(default_factory=dict)
    ticket_key: str | None = None

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "ActivityEntry.id", minimum=1))
        _set(self, "ticket_id", _as_int(self.ticket_id, "ActivityEntry.ticket_id", minimum=1))
        _set(self, "action", _as_enum(ActivityAction, self.action, "ActivityEntry.action"))
        _set(self, "actor_type", _as_enum(ActorType, self.actor_type, "ActivityEntry.actor_type"))
        _set(self, "summary", _as_str(self.summary, "ActivityEntry.summary", min_len=0))
        _set(
            self,
            "actor_id",
            _as_optional_str(self.actor_id, "ActivityEntry.actor_id", max_len=_MAX_ID_TEXT),
        )
        _set(self, "details", as_json_object(self.details, "ActivityEntry.details"))
        _set(self, "created_at", as_utc_datetime(self.created_at, "ActivityEntry.created_at"))

    def view(self) -> ActivityDetailsView | None:
        if self.action is ActivityAction.FIELD_CHANGED:
            return self.field_change()
        if self.action is ActivityAction.CLAIMED:
            return self.claim_details()
        if self.action is ActivityAction.ESCALATED:
            return self.escalation_details()
        return None

    def field_change(self) -> FieldChange | None:
        name = self.details.get("field")
        if self.action is not ActivityAction.FIELD_CHANGED or not isinstance(name, str):
            return None
        return FieldChange(field=name, old=self.details.get("old"), new=self.details.get("new"))

    def claim_details(self) -> ClaimDetails | None:
        if self.action is not ActivityAction.CLAIMED:
            return None
        worker = self.details.get("worker_id")
        duration = self.details.get("duration_mins")
        expires = self.details.get("expires_at")
        return ClaimDetails(
            worker_id=worker if isinstance(worker, str) else None,
            duration_mins=duration if isinstance(duration, int) else None,
            expires_at=expires if isinstance(expires, str) else None,
            review_claim=self.details.get("review_claim") is True,
        )

    def escalation_details(self) -> EscalationDetails | None:
        if self.action is not ActivityAction.ESCALATED:
            return None
        previous = self.details.get("previous_status")
        reason = self.details.get("reason")
        message_type = self.details.get("message_type")
        message_id = self.details.get("inbox_message_id")
        return EscalationDetails(
            previous_status=previous if isinstance(previous, str) else None,
            reason=reason if isinstance(reason, str) else None,
            message_type=message_type if isinstance(message_type, str) else None,
            inbox_message_id=message_id if isinstance(message_id, int) else None,
        )


@dataclass(frozen=True, slots=True)
class TicketTask(CanonicalModel):
    id: int
    ticket_id: int
    position: int
    description: str
    created_at: datetime
    updated_at: datetime
    complete: bool = False

    def __post_init__(self) -> None:
        _set(self, "id", _as_int(self.id, "TicketTask.id", minimum=1))
        _set(self, "ticket_id", _as_int(self.ticket_id, "TicketTask.ticket_id", minimum=1))
        _set(self, "position", _as_int(self.position, "TicketTask.position", minimum=0))
        _set(self, "description", _as_str(self.description, "TicketTask.description"))
        _set(self, "complete", _as_bool(self.complete, "TicketTask.complete"))
        _set(self, "created_at", as_utc_datetime(self.created_at, "TicketTask.created_at"))
        _set(self, "updated_at", as_utc_datetime(self.updated_at, "TicketTask.updated_at"))


def details_to_json(details: Mapping[str, Any] | None) -> str:
    """Canonical JSON text for an activity details payload."""
    return _canonical_json(as_json_object(dict(details or {}), "details"))


__all__ = [
    "ACTIVE_STATUSES",
    "ActivityAction",
    "ActivityDetailsView",
    "ActivityEntry",
    "ActorType",
    "CanonicalModel",
    "Claim",
    "ClaimDetails",
    "ClaimStatus",
    "Complexity",
    "Dependency",
    "EscalationDetails",
    "FieldChange",
    "FlagReason",
    "InboxMessage",
    "JSONValue",
    "MessageType",
    "Milestone",
    "MilestoneStatus",
    "Priority",
    "Project",
    "Resolution",
    "TERMINAL_STATUSES",
    "Ticket",
    "TicketStatus",
    "TicketTask",
    "as_json_object",
    "as_utc_datetime",
    "details_to_json",
    "to_iso8601z",
]
