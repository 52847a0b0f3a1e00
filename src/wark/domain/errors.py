"""Closed error taxonomy returned by every core operation."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Every failure the core reports belongs to exactly one of these codes."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_STATE = "INVALID_STATE"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    UNRESOLVED_DEPS = "UNRESOLVED_DEPS"
    INCOMPLETE_TASKS = "INCOMPLETE_TASKS"
    INVALID_REASON = "INVALID_REASON"
    INVALID_RESOLUTION = "INVALID_RESOLUTION"
    DEPENDENCY_CYCLE = "DEPENDENCY_CYCLE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INTERNAL = "INTERNAL"


_EXIT_CODES: dict[ErrorCode, int] = {
    ErrorCode.INVALID_ARGUMENT: 2,
    ErrorCode.INVALID_REASON: 2,
    ErrorCode.INVALID_RESOLUTION: 2,
    ErrorCode.DEPENDENCY_CYCLE: 2,
    ErrorCode.NOT_FOUND: 3,
    ErrorCode.INVALID_STATE: 4,
    ErrorCode.ALREADY_CLAIMED: 4,
    ErrorCode.UNRESOLVED_DEPS: 4,
    ErrorCode.INCOMPLETE_TASKS: 4,
    ErrorCode.INTERNAL: 5,
    ErrorCode.CONCURRENT_MODIFICATION: 6,
}

_RETRYABLE: frozenset[ErrorCode] = frozenset({ErrorCode.CONCURRENT_MODIFICATION})


class TicketError(Exception):
    """Typed failure with structured details a caller can act on."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Mapping[str, Any] | None = None,
        *,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.suggestion = suggestion

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"TicketError(code={self.code.value!r}, message={self.message!r})"

    @property
    def retryable(self) -> bool:
        """Only races the caller can resolve by re-reading are retryable."""
        return self.code in _RETRYABLE

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self.code, 1)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = dict(self.details)
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload

    # Constructors for the common cases.

    @classmethod
    def not_found(cls, kind: str, ident: object) -> TicketError:
        return cls(
            ErrorCode.NOT_FOUND,
            f"{kind} not found: {ident}",
            {"kind": kind, "id": str(ident)},
        )

    @classmethod
    def invalid_argument(cls, message: str, **details: Any) -> TicketError:
        return cls(ErrorCode.INVALID_ARGUMENT, message, details)

    @classmethod
    def invalid_state(cls, message: str, **details: Any) -> TicketError:
        return cls(ErrorCode.INVALID_STATE, message, details)

    @classmethod
    def invalid_reason(cls, message: str, **details: Any) -> TicketError:
        return cls(ErrorCode.INVALID_REASON, message, details)

    @classmethod
    def store_busy(cls, operation: str, cause: str) -> TicketError:
        return cls(
            ErrorCode.CONCURRENT_MODIFICATION,
            f"store is busy during {operation}; retry shortly",
            {"operation": operation, "cause": cause, "store_busy": True},
        )

    @classmethod
    def internal(cls, message: str, **details: Any) -> TicketError:
        return cls(ErrorCode.INTERNAL, message, details)


__all__ = ["ErrorCode", "TicketError"]
