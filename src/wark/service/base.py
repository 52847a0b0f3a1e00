"""Shared plumbing for the service layer: one transaction per call, typed errors out."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import structlog

from wark.config.schema import WarkSettings
from wark.domain import keys as domain_keys
from wark.domain.errors import TicketError
from wark.domain.models import Milestone, Project
from wark.observability.logging import correlation_scope
from wark.persistence.state_db import StateDB, StateDBBusyError, StateDBError
from wark.workflow.context import WorkflowContext, WorkflowPolicy
from wark.workflow.escalation import InboxBridge
from wark.workflow.leases import LeaseManager
from wark.workflow.resolver import Resolver

TEnum = TypeVar("TEnum", bound=Enum)


def policy_from_settings(settings: WarkSettings | None) -> WorkflowPolicy:
    if settings is None:
        return WorkflowPolicy()
    return WorkflowPolicy(
        default_claim_minutes=settings.default_claim_minutes,
        max_claim_minutes=settings.max_claim_minutes,
        default_max_retries=settings.default_max_retries,
        auto_accept=settings.auto_accept,
    )


def parse_choice(enum_type: type[TEnum], value: TEnum | str, name: str) -> TEnum:
    """Case-insensitive enum parsing that fails with INVALID_ARGUMENT."""
    if isinstance(value, enum_type):
        return value
    raw = value.strip().lower().replace("-", "_") if isinstance(value, str) else value
    try:
        return enum_type(raw)
    except ValueError as exc:
        allowed = ", ".join(str(item.value) for item in enum_type)
        raise TicketError.invalid_argument(
            f"invalid {name} {value!r}; expected one of: {allowed}", field=name
        ) from exc


def require_text(value: str | None, name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise TicketError.invalid_argument(f"{name} is required", field=name)
    return text


class ServiceBase:
    """Wires the workflow components to one store handle.

    Every public operation of a subclass runs inside ``_unit_of_work``: a
    single ``BEGIN IMMEDIATE`` transaction for writes (a deferred one for
    reads), with storage and validation failures translated into
    ``TicketError`` on the way out.
    """

    _logger_name = "wark.service"

    def __init__(
        self,
        db: StateDB,
        *,
        settings: WarkSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._settings = settings
        self._logger = logger if logger is not None else structlog.get_logger(self._logger_name)
        self._ctx = WorkflowContext(
            db, policy=policy_from_settings(settings), clock=clock, logger=self._logger
        )
        self._resolver = Resolver(self._ctx)
        self._bridge = InboxBridge(self._ctx, self._resolver)
        self._leases = LeaseManager(self._ctx, self._resolver, self._bridge)

    @property
    def db(self) -> StateDB:
        return self._db

    @property
    def policy(self) -> WorkflowPolicy:
        return self._ctx.policy

    @contextmanager
    def _unit_of_work(
        self,
        operation: str,
        *,
        write: bool = True,
        ticket_key: str | None = None,
        worker_id: str | None = None,
    ) -> Iterator[sqlite3.Connection]:
        with correlation_scope(
            operation=operation,
            ticket_key=ticket_key.strip().upper() if ticket_key and ticket_key.strip() else None,
            worker_id=worker_id.strip() if worker_id and worker_id.strip() else None,
        ):
            try:
                with self._db.transaction(immediate=write) as conn:
                    yield conn
            except TicketError:
                raise
            except StateDBBusyError as exc:
                self._logger.warning("store_busy", operation=operation, error=str(exc))
                raise TicketError.store_busy(operation, str(exc)) from exc
            except StateDBError as exc:
                self._logger.error("storage_failure", operation=operation, error=str(exc))
                raise TicketError.internal(
                    f"storage failure during {operation}: {exc}", operation=operation
                ) from exc
            except sqlite3.Error as exc:
                self._logger.error("storage_failure", operation=operation, error=str(exc))
                raise TicketError.internal(
                    f"storage failure during {operation}: {exc}", operation=operation
                ) from exc
            except ValueError as exc:
                raise TicketError.invalid_argument(str(exc), operation=operation) from exc

    def _project_key(self, project_key: str | None) -> str:
        key = project_key
        if not key and self._settings is not None:
            key = self._settings.default_project
        if not key:
            raise TicketError.invalid_argument(
                "a project key is required (or set defaults.project in config)"
            )
        try:
            return domain_keys.normalize_project_key(key)
        except ValueError as exc:
            raise TicketError.invalid_argument(str(exc), project=key) from exc

    def _require_project(self, conn: sqlite3.Connection, project_key: str | None) -> Project:
        key = self._project_key(project_key)
        project = self._ctx.projects.get_by_key(key, conn=conn)
        if project is None:
            raise TicketError.not_found("project", key)
        return project

    def _optional_project(
        self, conn: sqlite3.Connection, project_key: str | None
    ) -> Project | None:
        if not project_key:
            return None
        return self._require_project(conn, project_key)

    def _require_milestone(
        self, conn: sqlite3.Connection, project: Project, milestone_key: str
    ) -> Milestone:
        try:
            key = domain_keys.normalize_milestone_key(milestone_key)
        except ValueError as exc:
            raise TicketError.invalid_argument(str(exc), milestone=milestone_key) from exc
        milestone = self._ctx.milestones.get_by_key(project.id, key, conn=conn)
        if milestone is None:
            raise TicketError.not_found("milestone", f"{project.key}/{key}")
        return milestone

    def _worker(self, worker_id: str | None) -> str:
        worker = worker_id
        if not worker and self._settings is not None:
            worker = self._settings.default_worker_id
        return require_text(worker, "worker id")


__all__ = ["ServiceBase", "parse_choice", "policy_from_settings", "require_text"]
