"""Service layer: the transactional entry points the CLI and other callers use."""

from __future__ import annotations

from wark.service.base import ServiceBase, parse_choice, policy_from_settings
from wark.service.milestones import MilestoneProgress, MilestoneService
from wark.service.projects import ProjectService, ProjectStats
from wark.service.status import StatusService, StatusSummary, format_age
from wark.service.tickets import IntegrityReport, TicketFilter, TicketService

__all__ = [
    "IntegrityReport",
    "MilestoneProgress",
    "MilestoneService",
    "ProjectService",
    "ProjectStats",
    "ServiceBase",
    "StatusService",
    "StatusSummary",
    "TicketFilter",
    "TicketService",
    "format_age",
    "parse_choice",
    "policy_from_settings",
]
