"""Command-line interface router for wark."""

from __future__ import annotations

import argparse
import os
import sys
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from wark import __version__
from wark.config import (
    ConfigLoadError,
    ConfigValidationError,
    WarkSettings,
    load_config,
    redact_config,
    resolve_config_path,
    resolve_profile,
)
from wark.domain.errors import TicketError
from wark.domain.models import (
    ActivityAction,
    ActivityEntry,
    Claim,
    Complexity,
    FlagReason,
    InboxMessage,
    MessageType,
    MilestoneStatus,
    Priority,
    Resolution,
    Ticket,
    TicketStatus,
    TicketTask,
)
from wark.observability import setup_logging, shutdown_logging
from wark.persistence.state_db import StateDB, StateDBError
from wark.service import (
    MilestoneService,
    ProjectService,
    StatusService,
    TicketFilter,
    TicketService,
)
from wark.service.tickets import ClaimView, changes_payload, ticket_payload
from wark.ui.render import OUTPUT_FORMATS, CLIRenderer, create_renderer, emit_payload
from wark.workflow.resolver import ResolutionResult

_STATUS_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in TicketStatus)
_PRIORITY_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in Priority)
_COMPLEXITY_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in Complexity)
_RESOLUTION_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in Resolution)
_FLAG_CHOICES: Final[tuple[str, ...]] = tuple(
    item.value for item in FlagReason if item is not FlagReason.MAX_RETRIES_EXCEEDED
)
_MESSAGE_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in MessageType)
_ACTION_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in ActivityAction)
_MILESTONE_STATUS_CHOICES: Final[tuple[str, ...]] = tuple(item.value for item in MilestoneStatus)

_log = structlog.get_logger("wark.cli")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


class CommandSession:
    """Settings, output format, and lazily built services for one invocation."""

    def __init__(
        self,
        args: argparse.Namespace,
        settings: WarkSettings,
        config: Mapping[str, Any],
    ) -> None:
        self.args = args
        self.settings = settings
        self.config = config
        self.output_format: str = getattr(args, "output_format", None) or settings.output_format
        self.renderer = create_renderer(
            no_color=_flag(args, "no_color") or settings.no_color,
            verbose=_flag(args, "verbose"),
        )
        self._db: StateDB | None = None

    @property
    def structured(self) -> bool:
        return self.output_format != "text"

    @property
    def db(self) -> StateDB:
        if self._db is None:
            self._db = StateDB(self.settings.state_db)
        return self._db

    def tickets(self) -> TicketService:
        return TicketService(self.db, settings=self.settings)

    def projects(self) -> ProjectService:
        return ProjectService(self.db, settings=self.settings)

    def milestones(self) -> MilestoneService:
        return MilestoneService(self.db, settings=self.settings)

    def status(self) -> StatusService:
        return StatusService(self.db, settings=self.settings)

    def emit(self, payload: Mapping[str, Any]) -> int:
        emit_payload(payload, self.output_format)
        return 0


Handler = Callable[[argparse.Namespace, CommandSession], int]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="wark",
        description=(
            "wark: ticket lifecycle tracker for coordinating AI agents and humans.\n\n"
            "Common workflows:\n"
            "  wark workable                   List tickets an agent can pick up\n"
            "  wark ticket claim PROJ-1        Take a time-boxed lease on a ticket\n"
            "  wark ticket complete PROJ-1     Hand finished work over for review\n"
            "  wark inbox list                 Questions waiting on a human\n"
            "  wark status                     Dashboard summary\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"wark {__version__}")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to wark TOML config (default: ./wark.toml if present, or $WARK_CONFIG).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--db",
        dest="state_db",
        default=None,
        help="Path to the SQLite store (overrides paths.state_db).",
    )
    common.add_argument(
        "--format",
        dest="output_format",
        choices=OUTPUT_FORMATS,
        default=None,
        help="Output format (default: display.format from config, normally text).",
    )
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Log debug detail to stderr."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init ----------------------------------------------------------------
    init_parser = _command(
        subparsers,
        common,
        "init",
        help="Create or migrate the ticket store",
        description=(
            "Create the SQLite store (or bring an existing one up to date).\n\n"
            "Examples:\n"
            "  wark init\n"
            "  wark init --db ./tickets.db\n"
        ),
        handler=_cmd_init,
    )
    del init_parser

    _build_project_parsers(subparsers, common)
    _build_ticket_parsers(subparsers, common)
    _build_task_parsers(subparsers, common)
    _build_inbox_parsers(subparsers, common)

    # claims --------------------------------------------------------------
    claims_parser = subparsers.add_parser("claims", help="Claim maintenance")
    claims_sub = claims_parser.add_subparsers(dest="claims_command", required=True)
    claims_list = _command(
        claims_sub,
        common,
        "list",
        help="List claims (active by default)",
        description=(
            "Examples:\n"
            "  wark claims list\n"
            "  wark claims list --expired\n"
            "  wark claims list --all -p WARK\n"
        ),
        handler=_cmd_claims_list,
    )
    scope = claims_list.add_mutually_exclusive_group()
    scope.add_argument(
        "--all", dest="include_finished", action="store_true", help="Include finished claims"
    )
    scope.add_argument("--expired", action="store_true", help="Only active claims past expiry")
    claims_list.add_argument("--project", "-p", default=None)
    claims_list.add_argument("--limit", type=int, default=100)

    claims_show = _command(
        claims_sub,
        common,
        "show",
        help="Show the claim on a ticket",
        description="Examples:\n  wark claims show WARK-7\n",
        handler=_cmd_claims_show,
    )
    claims_show.add_argument("key")

    expire_parser = _command(
        claims_sub,
        common,
        "expire",
        help="Expire every claim whose lease has run out",
        description=(
            "Apply the retry rule to every lapsed claim: the ticket returns to ready,\n"
            "or goes to a human once it has used up its retries.\n\n"
            "Examples:\n"
            "  wark claims expire\n"
            "  wark claims expire --dry-run\n"
        ),
        handler=_cmd_claims_expire,
    )
    expire_parser.add_argument(
        "--dry-run", action="store_true", help="Report what would expire without changing it"
    )

    # status / workable ---------------------------------------------------
    status_parser = _command(
        subparsers,
        common,
        "status",
        help="Show the dashboard summary",
        description=(
            "Counts by state, claims expiring soon, and recent activity.\n\n"
            "Examples:\n"
            "  wark status\n"
            "  wark status --project WARK --format json\n"
        ),
        handler=_cmd_status,
    )
    status_parser.add_argument("--project", "-p", default=None, help="Limit to one project")

    workable_parser = _command(
        subparsers,
        common,
        "workable",
        help="List tickets ready to be claimed",
        description=(
            "Ready tickets with no unresolved dependency and no active claim,\n"
            "highest priority first.\n\n"
            "Examples:\n"
            "  wark workable\n"
            "  wark workable --project WARK --limit 5\n"
        ),
        handler=_cmd_workable,
    )
    workable_parser.add_argument("--project", "-p", default=None, help="Limit to one project")
    workable_parser.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20)")

    _build_milestone_parsers(subparsers, common)

    # doctor / backup / config --------------------------------------------
    _command(
        subparsers,
        common,
        "doctor",
        help="Check config, store health, and ticket invariants",
        description=(
            "Run configuration, SQLite, and ticket-invariant checks.\n\n"
            "Examples:\n"
            "  wark doctor\n"
            "  wark doctor --format json\n"
        ),
        handler=_cmd_doctor,
    )
    backup_parser = _command(
        subparsers,
        common,
        "backup",
        help="Write a consistent copy of the store",
        description="Examples:\n  wark backup ./wark-backup.db\n",
        handler=_cmd_backup,
    )
    backup_parser.add_argument("destination", help="Destination file path")

    config_parser = subparsers.add_parser("config", help="Inspect configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    _command(
        config_sub,
        common,
        "show",
        help="Show the effective (redacted) configuration",
        description=(
            "Print configuration after defaults, file, profile, environment, and flags.\n\n"
            "Examples:\n"
            "  wark config show\n"
            "  wark config show --profile agent --format yaml\n"
        ),
        handler=_cmd_config_show,
    )
    return parser


def _command(
    subparsers: Any,
    common: argparse.ArgumentParser,
    name: str,
    *,
    help: str,
    description: str,
    handler: Handler,
) -> argparse.ArgumentParser:
    command_parser: argparse.ArgumentParser = subparsers.add_parser(
        name,
        parents=[common],
        help=help,
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    command_parser.set_defaults(handler=handler)
    return command_parser


def _build_project_parsers(subparsers: Any, common: argparse.ArgumentParser) -> None:
    project_parser = subparsers.add_parser("project", help="Manage projects")
    project_sub = project_parser.add_subparsers(dest="project_command", required=True)

    create = _command(
        project_sub,
        common,
        "create",
        help="Create a project",
        description="Examples:\n  wark project create WARK 'Ticket tracker'\n",
        handler=_cmd_project_create,
    )
    create.add_argument("key", help="Project key: 2-10 letters/digits, starting with a letter")
    create.add_argument("name", help="Display name")
    create.add_argument("--description", "-d", default=None)

    _command(
        project_sub,
        common,
        "list",
        help="List projects",
        description="Examples:\n  wark project list\n",
        handler=_cmd_project_list,
    )

    show = _command(
        project_sub,
        common,
        "show",
        help="Show a project with ticket counts",
        description="Examples:\n  wark project show WARK\n",
        handler=_cmd_project_show,
    )
    show.add_argument("key")

    delete = _command(
        project_sub,
        common,
        "delete",
        help="Delete a project",
        description=(
            "Refuses while the project still has tickets unless --force is given.\n\n"
            "Examples:\n"
            "  wark project delete OLD --force\n"
        ),
        handler=_cmd_project_delete,
    )
    delete.add_argument("key")
    delete.add_argument("--force", action="store_true", help="Delete tickets too")


def _build_ticket_parsers(subparsers: Any, common: argparse.ArgumentParser) -> None:
    ticket_parser = subparsers.add_parser("ticket", help="Create, claim, and move tickets")
    ticket_sub = ticket_parser.add_subparsers(dest="ticket_command", required=True)

    create = _command(
        ticket_sub,
        common,
        "create",
        help="Create a ticket",
        description=(
            "Create a ticket; it starts blocked if any dependency is still open,\n"
            "ready otherwise.\n\n"
            "Examples:\n"
            "  wark ticket create 'Add login page' -p WARK --priority high\n"
            "  wark ticket create 'Wire API' -p WARK --depends-on WARK-1 --task 'Write client'\n"
        ),
        handler=_cmd_ticket_create,
    )
    create.add_argument("title")
    create.add_argument("--project", "-p", default=None)
    create.add_argument("--description", "-d", default=None)
    create.add_argument("--priority", choices=_PRIORITY_CHOICES, default=Priority.MEDIUM.value)
    create.add_argument(
        "--complexity", choices=_COMPLEXITY_CHOICES, default=Complexity.MEDIUM.value
    )
    create.add_argument("--max-retries", type=int, default=None)
    create.add_argument(
        "--depends-on", action="append", default=[], metavar="KEY", help="Repeatable"
    )
    create.add_argument("--parent", default=None, metavar="KEY")
    create.add_argument("--milestone", default=None, metavar="KEY")
    create.add_argument("--aggregate-only", action="store_true")
    create.add_argument("--task", action="append", default=[], metavar="TEXT", help="Repeatable")

    show = _command(
        ticket_sub,
        common,
        "show",
        help="Show one ticket in full",
        description="Examples:\n  wark ticket show WARK-12\n",
        handler=_cmd_ticket_show,
    )
    show.add_argument("key")

    list_parser = _command(
        ticket_sub,
        common,
        "list",
        help="List tickets",
        description=(
            "Examples:\n"
            "  wark ticket list -p WARK\n"
            "  wark ticket list --status ready --status working\n"
        ),
        handler=_cmd_ticket_list,
    )
    list_parser.add_argument("--project", "-p", default=None)
    list_parser.add_argument(
        "--status", action="append", choices=_STATUS_CHOICES, default=[], help="Repeatable"
    )
    list_parser.add_argument("--milestone", default=None)
    list_parser.add_argument("--parent", default=None)
    list_parser.add_argument("--limit", type=int, default=100)
    list_parser.add_argument("--offset", type=int, default=0)

    edit = _command(
        ticket_sub,
        common,
        "edit",
        help="Edit descriptive fields",
        description=(
            "Status never changes here; use the lifecycle commands for that.\n\n"
            "Examples:\n"
            "  wark ticket edit WARK-3 --priority critical\n"
            "  wark ticket edit WARK-3 --no-milestone\n"
        ),
        handler=_cmd_ticket_edit,
    )
    edit.add_argument("key")
    edit.add_argument("--title", default=None)
    edit.add_argument("--description", "-d", default=None)
    edit.add_argument("--priority", choices=_PRIORITY_CHOICES, default=None)
    edit.add_argument("--complexity", choices=_COMPLEXITY_CHOICES, default=None)
    edit.add_argument("--max-retries", type=int, default=None)
    milestone_group = edit.add_mutually_exclusive_group()
    milestone_group.add_argument("--milestone", default=None)
    milestone_group.add_argument("--no-milestone", action="store_true")
    edit.add_argument(
        "--aggregate-only",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Parent finishes by roll-up to review when every subtask closes",
    )
    edit.add_argument(
        "--expected-updated-at",
        default=None,
        help="Fail with CONCURRENT_MODIFICATION unless the ticket still has this timestamp",
    )

    vet = _command(
        ticket_sub,
        common,
        "vet",
        help="Recompute blocked/ready from dependencies",
        description=(
            "Without a key, re-vets every blocked or ready ticket.\n\n"
            "Examples:\n"
            "  wark ticket vet WARK-4\n"
            "  wark ticket vet\n"
        ),
        handler=_cmd_ticket_vet,
    )
    vet.add_argument("key", nargs="?", default=None)

    depend = _command(
        ticket_sub,
        common,
        "depend",
        help="Add a dependency edge",
        description="Examples:\n  wark ticket depend WARK-5 WARK-2\n",
        handler=_cmd_ticket_depend,
    )
    depend.add_argument("key")
    depend.add_argument("depends_on", metavar="DEPENDS_ON")

    undepend = _command(
        ticket_sub,
        common,
        "undepend",
        help="Remove a dependency edge",
        description="Examples:\n  wark ticket undepend WARK-5 WARK-2\n",
        handler=_cmd_ticket_undepend,
    )
    undepend.add_argument("key")
    undepend.add_argument("depends_on", metavar="DEPENDS_ON")

    claim = _command(
        ticket_sub,
        common,
        "claim",
        help="Take an exclusive, time-boxed claim",
        description=(
            "Claiming a ready ticket starts work; claiming a ticket in review\n"
            "reserves it for a reviewer.\n\n"
            "Examples:\n"
            "  wark ticket claim WARK-7 --worker agent-1\n"
            "  wark ticket claim WARK-7 --worker agent-1 --duration 120\n"
        ),
        handler=_cmd_ticket_claim,
    )
    claim.add_argument("key")
    _add_worker(claim)
    claim.add_argument("--duration", type=int, default=None, help="Lease length in minutes")

    next_parser = _command(
        ticket_sub,
        common,
        "next",
        help="Claim the highest-priority workable ticket",
        description=(
            "Pick the best workable ticket and claim it in one step. Tickets above\n"
            "--complexity or out of retries are passed over.\n\n"
            "Examples:\n"
            "  wark ticket next --worker agent-1\n"
            "  wark ticket next -p WARK --complexity medium --dry-run\n"
        ),
        handler=_cmd_ticket_next,
    )
    next_parser.add_argument("--project", "-p", default=None)
    next_parser.add_argument(
        "--complexity",
        choices=_COMPLEXITY_CHOICES,
        default=Complexity.LARGE.value,
        help="Largest complexity to take (default: large)",
    )
    next_parser.add_argument(
        "--dry-run", action="store_true", help="Show the pick without claiming it"
    )
    _add_worker(next_parser)
    next_parser.add_argument("--duration", type=int, default=None, help="Lease length in minutes")

    extend = _command(
        ticket_sub,
        common,
        "extend",
        help="Extend the active claim",
        description="Examples:\n  wark ticket extend WARK-7 --duration 30\n",
        handler=_cmd_ticket_extend,
    )
    extend.add_argument("key")
    extend.add_argument("--duration", type=int, required=True, help="Minutes to add")
    _add_worker(extend)

    release = _command(
        ticket_sub,
        common,
        "release",
        help="Give a claimed ticket back (counts as a failed attempt)",
        description="Examples:\n  wark ticket release WARK-7 --reason 'needs a design decision'\n",
        handler=_cmd_ticket_release,
    )
    release.add_argument("key")
    release.add_argument("--reason", default=None)
    _add_worker(release)

    complete = _command(
        ticket_sub,
        common,
        "complete",
        help="Finish work and hand the ticket to review",
        description=(
            "Every task must be done first. With auto-accept the ticket closes\n"
            "immediately.\n\n"
            "Examples:\n"
            "  wark ticket complete WARK-7 --summary 'Added tests'\n"
            "  wark ticket complete WARK-7 --auto-accept\n"
        ),
        handler=_cmd_ticket_complete,
    )
    complete.add_argument("key")
    complete.add_argument("--summary", default=None)
    complete.add_argument(
        "--auto-accept",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Override tickets.auto_accept from config",
    )
    _add_worker(complete)

    accept = _command(
        ticket_sub,
        common,
        "accept",
        help="Accept a ticket in review",
        description="Examples:\n  wark ticket accept WARK-7\n",
        handler=_cmd_ticket_accept,
    )
    accept.add_argument("key")

    reject = _command(
        ticket_sub,
        common,
        "reject",
        help="Reject a ticket in review",
        description="Examples:\n  wark ticket reject WARK-7 --reason 'tests fail on CI'\n",
        handler=_cmd_ticket_reject,
    )
    reject.add_argument("key")
    reject.add_argument("--reason", required=True)

    flag = _command(
        ticket_sub,
        common,
        "flag",
        help="Escalate a ticket to a human",
        description=(
            "Examples:\n"
            "  wark ticket flag WARK-7 --reason decision_needed --message 'Postgres or SQLite?'\n"
        ),
        handler=_cmd_ticket_flag,
    )
    flag.add_argument("key")
    flag.add_argument("--reason", required=True, choices=_FLAG_CHOICES)
    flag.add_argument("--message", "-m", required=True)
    _add_worker(flag)

    resume = _command(
        ticket_sub,
        common,
        "resume",
        help="Pick a human-flagged ticket back up",
        description="Examples:\n  wark ticket resume WARK-7 --worker agent-1\n",
        handler=_cmd_ticket_resume,
    )
    resume.add_argument("key")
    _add_worker(resume)
    resume.add_argument("--duration", type=int, default=None)

    close = _command(
        ticket_sub,
        common,
        "close",
        help="Close a ticket with a resolution",
        description=(
            "Examples:\n"
            "  wark ticket close WARK-9 --resolution wont_do --reason 'superseded by WARK-12'\n"
        ),
        handler=_cmd_ticket_close,
    )
    close.add_argument("key")
    close.add_argument("--resolution", required=True, choices=_RESOLUTION_CHOICES)
    close.add_argument("--reason", default=None)

    reopen = _command(
        ticket_sub,
        common,
        "reopen",
        help="Reopen a closed ticket",
        description="Examples:\n  wark ticket reopen WARK-9\n",
        handler=_cmd_ticket_reopen,
    )
    reopen.add_argument("key")

    comment = _command(
        ticket_sub,
        common,
        "comment",
        help="Add a comment to the ticket history",
        description="Examples:\n  wark ticket comment WARK-7 'Waiting on upstream fix'\n",
        handler=_cmd_ticket_comment,
    )
    comment.add_argument("key")
    comment.add_argument("text")
    comment.add_argument("--as", dest="actor_type", choices=("human", "agent"), default="human")
    comment.add_argument("--actor", dest="actor_id", default=None)

    history = _command(
        ticket_sub,
        common,
        "history",
        help="Show the activity log",
        description=(
            "Examples:\n"
            "  wark ticket history WARK-7\n"
            "  wark ticket history WARK-7 --action field_changed\n"
        ),
        handler=_cmd_ticket_history,
    )
    history.add_argument("key")
    history.add_argument("--action", choices=_ACTION_CHOICES, default=None)
    history.add_argument("--limit", type=int, default=100)

    decompose = _command(
        ticket_sub,
        common,
        "decompose",
        help="Split a ticket into subtasks",
        description=(
            "Each title becomes a child ticket; the parent depends on all of them.\n\n"
            "Examples:\n"
            "  wark ticket decompose WARK-3 'Schema' 'API' 'UI' --aggregate-only\n"
        ),
        handler=_cmd_ticket_decompose,
    )
    decompose.add_argument("key")
    decompose.add_argument("titles", nargs="+", metavar="TITLE")
    decompose.add_argument(
        "--complexity", choices=_COMPLEXITY_CHOICES, default=Complexity.SMALL.value
    )
    decompose.add_argument(
        "--aggregate-only", action=argparse.BooleanOptionalAction, default=None
    )

    graph = _command(
        ticket_sub,
        common,
        "graph",
        help="Show transitive dependencies and dependents",
        description="Examples:\n  wark ticket graph WARK-3\n",
        handler=_cmd_ticket_graph,
    )
    graph.add_argument("key")


def _build_task_parsers(subparsers: Any, common: argparse.ArgumentParser) -> None:
    task_parser = subparsers.add_parser("task", help="Checklist items inside a ticket")
    task_sub = task_parser.add_subparsers(dest="task_command", required=True)

    add = _command(
        task_sub,
        common,
        "add",
        help="Append a task",
        description="Examples:\n  wark task add WARK-7 'Write migration'\n",
        handler=_cmd_task_add,
    )
    add.add_argument("key")
    add.add_argument("description")

    done = _command(
        task_sub,
        common,
        "done",
        help="Mark a task complete (1-based position)",
        description="Examples:\n  wark task done WARK-7 1\n",
        handler=_cmd_task_done,
    )
    done.add_argument("key")
    done.add_argument("position", type=int)
    _add_worker(done)

    list_parser = _command(
        task_sub,
        common,
        "list",
        help="List a ticket's tasks",
        description="Examples:\n  wark task list WARK-7\n",
        handler=_cmd_task_list,
    )
    list_parser.add_argument("key")

    clear = _command(
        task_sub,
        common,
        "clear",
        help="Mark a task incomplete again (1-based position)",
        description="Examples:\n  wark task clear WARK-7 2\n",
        handler=_cmd_task_clear,
    )
    clear.add_argument("key")
    clear.add_argument("position", type=int)

    remove = _command(
        task_sub,
        common,
        "remove",
        help="Delete a task; later tasks move up (1-based position)",
        description="Examples:\n  wark task remove WARK-7 2\n",
        handler=_cmd_task_remove,
    )
    remove.add_argument("key")
    remove.add_argument("position", type=int)


def _build_inbox_parsers(subparsers: Any, common: argparse.ArgumentParser) -> None:
    inbox_parser = subparsers.add_parser("inbox", help="Messages between agents and humans")
    inbox_sub = inbox_parser.add_subparsers(dest="inbox_command", required=True)

    list_parser = _command(
        inbox_sub,
        common,
        "list",
        help="List inbox messages (pending by default)",
        description="Examples:\n  wark inbox list\n  wark inbox list --all -p WARK\n",
        handler=_cmd_inbox_list,
    )
    list_parser.add_argument("--all", dest="include_answered", action="store_true")
    list_parser.add_argument("--project", "-p", default=None)
    list_parser.add_argument("--ticket", default=None)
    list_parser.add_argument("--limit", type=int, default=100)

    show = _command(
        inbox_sub,
        common,
        "show",
        help="Show one message in full",
        description="Examples:\n  wark inbox show 4\n",
        handler=_cmd_inbox_show,
    )
    show.add_argument("message_id", type=int)

    respond = _command(
        inbox_sub,
        common,
        "respond",
        help="Answer a message; a human-flagged ticket returns to work",
        description="Examples:\n  wark inbox respond 4 'Use SQLite'\n",
        handler=_cmd_inbox_respond,
    )
    respond.add_argument("message_id", type=int)
    respond.add_argument("response")

    send = _command(
        inbox_sub,
        common,
        "send",
        help="Send a message about a ticket",
        description=(
            "Questions and decisions need an answer, so they also move the ticket\n"
            "to human.\n\n"
            "Examples:\n"
            "  wark inbox send WARK-7 info 'Halfway through'\n"
            "  wark inbox send WARK-7 question 'Which API version?'\n"
        ),
        handler=_cmd_inbox_send,
    )
    send.add_argument("key")
    send.add_argument("message_type", choices=_MESSAGE_CHOICES)
    send.add_argument("content")
    _add_worker(send)


def _build_milestone_parsers(subparsers: Any, common: argparse.ArgumentParser) -> None:
    milestone_parser = subparsers.add_parser("milestone", help="Group tickets into milestones")
    milestone_sub = milestone_parser.add_subparsers(dest="milestone_command", required=True)

    create = _command(
        milestone_sub,
        common,
        "create",
        help="Create a milestone",
        description=(
            "Examples:\n"
            "  wark milestone create MVP 'First release' -p WARK --target-date 2026-12-01\n"
        ),
        handler=_cmd_milestone_create,
    )
    create.add_argument("key")
    create.add_argument("name")
    create.add_argument("--project", "-p", default=None)
    create.add_argument("--goal", default=None)
    create.add_argument("--target-date", default=None, help="YYYY-MM-DD")

    list_parser = _command(
        milestone_sub,
        common,
        "list",
        help="List milestones with progress",
        description="Examples:\n  wark milestone list -p WARK --status open\n",
        handler=_cmd_milestone_list,
    )
    list_parser.add_argument("--project", "-p", default=None)
    list_parser.add_argument("--status", choices=_MILESTONE_STATUS_CHOICES, default=None)

    show = _command(
        milestone_sub,
        common,
        "show",
        help="Show one milestone",
        description="Examples:\n  wark milestone show MVP -p WARK\n",
        handler=_cmd_milestone_show,
    )
    show.add_argument("key")
    show.add_argument("--project", "-p", default=None)

    tickets = _command(
        milestone_sub,
        common,
        "tickets",
        help="List tickets linked to a milestone",
        description="Examples:\n  wark milestone tickets MVP -p WARK\n",
        handler=_cmd_milestone_tickets,
    )
    tickets.add_argument("key")
    tickets.add_argument("--project", "-p", default=None)
    tickets.add_argument("--limit", type=int, default=100)

    update = _command(
        milestone_sub,
        common,
        "update",
        help="Edit a milestone",
        description="Examples:\n  wark milestone update MVP -p WARK --status achieved\n",
        handler=_cmd_milestone_update,
    )
    update.add_argument("key")
    update.add_argument("--project", "-p", default=None)
    update.add_argument("--name", default=None)
    update.add_argument("--goal", default=None)
    update.add_argument("--target-date", default=None)
    update.add_argument("--status", choices=_MILESTONE_STATUS_CHOICES, default=None)

    delete = _command(
        milestone_sub,
        common,
        "delete",
        help="Delete a milestone (tickets are unlinked, not deleted)",
        description="Examples:\n  wark milestone delete MVP -p WARK\n",
        handler=_cmd_milestone_delete,
    )
    delete.add_argument("key")
    delete.add_argument("--project", "-p", default=None)


def _add_worker(command_parser: argparse.ArgumentParser) -> None:
    command_parser.add_argument(
        "--worker",
        "-w",
        dest="worker_id",
        default=None,
        help="Worker id (default: defaults.worker_id / $WARK_WORKER_ID)",
    )


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        settings, config = _load_settings(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code

    handle = setup_logging(
        {
            "log_level": settings.log_level,
            "log_to_file": settings.log_to_file,
            "redact_secrets": settings.redact_secrets,
        },
        session_id=uuid.uuid4().hex,
        log_dir=settings.log_dir,
        verbose=_flag(namespace, "verbose"),
    )
    session = CommandSession(namespace, settings, config)
    try:
        _log.debug("command_started", command=_command_name(namespace))
        return int(handler(namespace, session))
    except TicketError as exc:
        return _report_ticket_error(session, exc)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging(handle)


def main(argv: Sequence[str] | None = None) -> int:
    """Compatibility wrapper for main-module wiring."""

    return run_cli(argv)


def _report_ticket_error(session: CommandSession, exc: TicketError) -> int:
    _log.debug("command_failed", code=exc.code.value, error=exc.message)
    if session.structured:
        session.emit({"ok": False, "error": exc.to_dict()})
    print(f"error[{exc.code.value}]: {exc.message}", file=sys.stderr)
    suggestion = getattr(exc, "suggestion", None)
    if suggestion:
        print(f"hint: {suggestion}", file=sys.stderr)
    return exc.exit_code


# ---------------------------------------------------------------------------
# Command handlers: store, projects
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace, session: CommandSession) -> int:
    db = session.db
    existed = db.path.exists()
    try:
        before = db.schema_version() if existed else 0
        version = db.migrate()
    except Exception as exc:  # noqa: BLE001 - surfaced as a CLI failure with context.
        raise CLIError(f"could not initialise {db.path}: {exc}", exit_code=5) from exc

    payload = {"command": "init", "state_db": str(db.path), "schema_version": version}
    if session.structured:
        return session.emit(payload)
    r = session.renderer
    r.kv("Store", db.path)
    r.kv("Schema version", version)
    r.text("Already up to date." if version == before else f"Migrated from schema v{before}.")
    r.next_steps(["wark project create KEY 'Project name'"])
    return 0


def _cmd_project_create(args: argparse.Namespace, session: CommandSession) -> int:
    project = session.projects().create(args.key, args.name, description=args.description)
    if session.structured:
        return session.emit({"command": "project.create", "project": project.to_dict()})
    r = session.renderer
    r.text(f"Created project {project.key}: {project.name}")
    r.next_steps([f"wark ticket create 'First ticket' -p {project.key}"])
    return 0


def _cmd_project_list(args: argparse.Namespace, session: CommandSession) -> int:
    projects = session.projects().list()
    if session.structured:
        return session.emit(
            {"command": "project.list", "projects": [item.to_dict() for item in projects]}
        )
    r = session.renderer
    if not projects:
        r.text("No projects yet.")
        r.next_steps(["wark project create KEY 'Project name'"])
        return 0
    r.table(
        ("KEY", "NAME", "TICKETS", "DESCRIPTION"),
        [
            (item.key, item.name, item.next_number - 1, _truncate(item.description or "", 50))
            for item in projects
        ],
    )
    return 0


def _cmd_project_show(args: argparse.Namespace, session: CommandSession) -> int:
    stats = session.projects().stats(args.key)
    if session.structured:
        return session.emit(
            {
                "command": "project.show",
                "project": stats.project.to_dict(),
                "stats": stats.to_dict(),
            }
        )
    r = session.renderer
    r.heading(f"{stats.project.key}: {stats.project.name}")
    if stats.project.description:
        r.text(stats.project.description)
    r.kv("Tickets", stats.total)
    r.kv("Workable", stats.workable)
    r.kv("Pending inbox", stats.pending_inbox)
    r.kv("Milestones", stats.milestones)
    r.table(
        ("STATUS", "COUNT"),
        [(r.status(status.value), count) for status, count in stats.by_status.items()],
        title="By status:",
    )
    return 0


def _cmd_project_delete(args: argparse.Namespace, session: CommandSession) -> int:
    project = session.projects().delete(args.key, force=_flag(args, "force"))
    if session.structured:
        return session.emit({"command": "project.delete", "project": project.key})
    session.renderer.text(f"Deleted project {project.key}")
    return 0


# ---------------------------------------------------------------------------
# Command handlers: tickets
# ---------------------------------------------------------------------------


def _cmd_ticket_create(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().create_ticket(
        args.project,
        args.title,
        description=args.description,
        priority=args.priority,
        complexity=args.complexity,
        max_retries=args.max_retries,
        depends_on=_string_sequence(args.depends_on),
        parent_key=_optional_str(args.parent),
        milestone_key=_optional_str(args.milestone),
        aggregate_only=_flag(args, "aggregate_only"),
        tasks=_string_sequence(args.task),
    )
    ticket = result.ticket
    if session.structured:
        return session.emit(
            {
                "command": "ticket.create",
                "ticket": ticket_payload(ticket, blocked_by=list(result.blocked_by)),
                "tasks": [task.to_dict() for task in result.tasks],
            }
        )
    r = session.renderer
    r.text(f"Created {ticket.key}: {ticket.title} [{ticket.status.value}]")
    if result.blocked_by:
        r.kv("Blocked by", ", ".join(result.blocked_by))
    if result.tasks:
        r.kv("Tasks", len(result.tasks))
    return 0


def _cmd_ticket_show(args: argparse.Namespace, session: CommandSession) -> int:
    details = session.tickets().get_ticket(args.key)
    ticket = details.ticket
    if session.structured:
        return session.emit(
            {
                "command": "ticket.show",
                "ticket": ticket_payload(
                    ticket,
                    milestone_key=details.milestone_key,
                    parent_key=details.parent_key,
                    blocked_by=list(details.blocked_by),
                ),
                "dependencies": [_ticket_brief(item) for item in details.dependencies],
                "dependents": [_ticket_brief(item) for item in details.dependents],
                "children": [_ticket_brief(item) for item in details.children],
                "tasks": [task.to_dict() for task in details.tasks],
                "active_claim": details.active_claim.to_dict() if details.active_claim else None,
                "pending_messages": [_message_payload(item) for item in details.pending_messages],
            }
        )

    r = session.renderer
    r.heading(f"{ticket.key}: {ticket.title}")
    r.kv("Status", ticket.status.value)
    if ticket.resolution is not None:
        r.kv("Resolution", ticket.resolution.value)
    if ticket.human_flag_reason is not None:
        r.kv("Flag reason", ticket.human_flag_reason.value)
    r.kv("Priority", ticket.priority.value)
    complexity = ticket.complexity.value
    if ticket.complexity.needs_decomposition and not details.children:
        complexity += " (consider: wark ticket decompose)"
    r.kv("Complexity", complexity)
    r.kv("Retries", f"{ticket.retry_count}/{ticket.max_retries}")
    if ticket.branch_name:
        r.kv("Branch", ticket.branch_name)
    if details.parent_key:
        r.kv("Parent", details.parent_key)
    if details.milestone_key:
        r.kv("Milestone", details.milestone_key)
    if ticket.aggregate_only:
        r.kv("Aggregate only", True)
    r.kv("Updated", _stamp(ticket.updated_at))
    if ticket.description:
        r.section("Description:")
        r.text(ticket.description)
    if details.active_claim is not None:
        _render_claim(r, details.active_claim)
    if details.tasks:
        r.section("Tasks:")
        r.items([_task_line(task) for task in details.tasks], prefix="")
    _render_ticket_table(r, details.dependencies, title="Depends on:")
    _render_ticket_table(r, details.dependents, title="Blocks:")
    _render_ticket_table(r, details.children, title="Subtasks:")
    if details.pending_messages:
        r.section("Waiting on a human:")
        r.items(
            [
                f"#{item.id} [{item.message_type.value}] {item.content}"
                for item in details.pending_messages
            ]
        )
    return 0


def _cmd_ticket_list(args: argparse.Namespace, session: CommandSession) -> int:
    filters = TicketFilter(
        project_key=_optional_str(args.project),
        statuses=tuple(TicketStatus(value) for value in args.status),
        milestone_key=_optional_str(args.milestone),
        parent_key=_optional_str(args.parent),
        limit=args.limit,
        offset=args.offset,
    )
    tickets = session.tickets().list_tickets(filters)
    if session.structured:
        return session.emit(
            {"command": "ticket.list", "tickets": [ticket.to_dict() for ticket in tickets]}
        )
    r = session.renderer
    if not tickets:
        r.text("No tickets match.")
        return 0
    _render_ticket_table(r, tickets)
    return 0


def _cmd_ticket_edit(args: argparse.Namespace, session: CommandSession) -> int:
    fields: dict[str, Any] = {}
    for name in ("title", "description", "priority", "complexity", "max_retries"):
        value = getattr(args, name)
        if value is not None:
            fields[name] = value
    if _flag(args, "no_milestone"):
        fields["milestone"] = None
    elif args.milestone is not None:
        fields["milestone"] = args.milestone
    if args.aggregate_only is not None:
        fields["aggregate_only"] = args.aggregate_only
    if not fields:
        raise CLIError("nothing to edit; pass at least one field option")

    result = session.tickets().update_ticket(
        args.key, expected_updated_at=_optional_str(args.expected_updated_at), **fields
    )
    if session.structured:
        return session.emit(
            {
                "command": "ticket.edit",
                "ticket": result.ticket.to_dict(),
                "changes": changes_payload(result.changes),
            }
        )
    r = session.renderer
    if not result.changes:
        r.text(f"{result.ticket.key}: nothing changed")
        return 0
    r.text(f"Updated {result.ticket.key}")
    r.items([f"{change.field}: {change.old} -> {change.new}" for change in result.changes])
    return 0


def _cmd_ticket_vet(args: argparse.Namespace, session: CommandSession) -> int:
    service = session.tickets()
    key = _optional_str(args.key)
    if key is None:
        outcome = service.vet_all()
        if session.structured:
            return session.emit(
                {"command": "ticket.vet", "resolution": _resolution_payload(outcome)}
            )
        r = session.renderer
        r.text(f"Re-vetted tickets: {len(outcome.items)} changed, {outcome.unblocked} unblocked")
        _render_resolution(r, outcome)
        return 0

    result = service.vet(key)
    if session.structured:
        return session.emit(
            {
                "command": "ticket.vet",
                "ticket": ticket_payload(result.ticket, blocked_by=list(result.blocked_by)),
                "changed": result.changed,
            }
        )
    r = session.renderer
    verb = "now" if result.changed else "still"
    r.text(f"{result.ticket.key} is {verb} {result.ticket.status.value}")
    if result.blocked_by:
        r.kv("Blocked by", ", ".join(result.blocked_by))
    return 0


def _cmd_ticket_depend(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().add_dependency(args.key, args.depends_on)
    return _dependency_output(
        session,
        "ticket.depend",
        result.ticket,
        result.status_changed,
        f"{result.ticket.key} now depends on {args.depends_on.strip().upper()}",
    )


def _cmd_ticket_undepend(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().remove_dependency(args.key, args.depends_on)
    return _dependency_output(
        session,
        "ticket.undepend",
        result.ticket,
        result.status_changed,
        f"{result.ticket.key} no longer depends on {args.depends_on.strip().upper()}",
    )


def _dependency_output(
    session: CommandSession, command: str, ticket: Ticket, changed: bool, message: str
) -> int:
    if session.structured:
        return session.emit(
            {"command": command, "ticket": ticket.to_dict(), "status_changed": changed}
        )
    r = session.renderer
    r.text(message)
    r.kv("Status", ticket.status.value + (" (changed)" if changed else ""))
    return 0


def _cmd_ticket_claim(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().claim(args.key, args.worker_id, args.duration)
    return _claim_output(session, "ticket.claim", result)


def _cmd_ticket_next(args: argparse.Namespace, session: CommandSession) -> int:
    dry_run = _flag(args, "dry_run")
    result = session.tickets().claim_next(
        _optional_str(args.project),
        args.worker_id,
        max_complexity=args.complexity,
        dry_run=dry_run,
        duration_minutes=args.duration,
    )
    if result.ticket is None:
        if session.structured:
            return session.emit(
                {
                    "command": "ticket.next",
                    "ticket": None,
                    "dry_run": dry_run,
                    "skipped": result.skipped,
                }
            )
        session.renderer.text(f"No workable ticket ({result.skipped} passed over).")
        return 0
    if result.claim is None:
        if session.structured:
            return session.emit(
                {
                    "command": "ticket.next",
                    "ticket": result.ticket.to_dict(),
                    "dry_run": True,
                    "skipped": result.skipped,
                }
            )
        ticket = result.ticket
        session.renderer.text(f"Would claim {ticket.key}: {ticket.title}")
        session.renderer.kv("Priority", ticket.priority.value)
        session.renderer.kv("Complexity", ticket.complexity.value)
        return 0
    return _claim_output(session, "ticket.next", result.claim)


def _cmd_ticket_extend(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().extend_claim(args.key, args.duration, worker_id=args.worker_id)
    return _claim_output(session, "ticket.extend", result)


def _cmd_ticket_resume(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().resume(args.key, args.worker_id, args.duration)
    return _claim_output(session, "ticket.resume", result)


def _claim_output(session: CommandSession, command: str, result: Any) -> int:
    ticket: Ticket = result.ticket
    claim: Claim = result.claim
    if session.structured:
        return session.emit(
            {
                "command": command,
                "ticket": ticket.to_dict(),
                "claim": claim.to_dict(),
                "branch": result.branch,
                "review_claim": result.review_claim,
                "next_task": result.next_task.to_dict() if result.next_task else None,
                "tasks_total": result.tasks_total,
            }
        )
    r = session.renderer
    label = "Review claim" if result.review_claim else "Claim"
    r.text(f"{label} on {ticket.key} held by {claim.worker_id}")
    r.kv("Claim id", claim.claim_id)
    r.kv("Expires", _stamp(claim.expires_at))
    if result.branch and not result.review_claim:
        r.kv("Branch", result.branch)
    if result.next_task is not None:
        task = result.next_task
        r.kv("Next task", f"{task.position + 1}/{result.tasks_total} {task.description}")
    return 0


def _cmd_ticket_release(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().release(args.key, args.reason, worker_id=args.worker_id)
    return _failure_output(
        session, "ticket.release", result.ticket, result.escalated, result.inbox_message
    )


def _cmd_ticket_reject(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().reject(args.key, args.reason)
    return _failure_output(
        session, "ticket.reject", result.ticket, result.escalated, result.inbox_message
    )


def _failure_output(
    session: CommandSession,
    command: str,
    ticket: Ticket,
    escalated: bool,
    message: InboxMessage | None,
) -> int:
    if session.structured:
        return session.emit(
            {
                "command": command,
                "ticket": ticket.to_dict(),
                "escalated": escalated,
                "inbox_message": _message_payload(message) if message else None,
            }
        )
    r = session.renderer
    r.text(
        f"{ticket.key} is now {ticket.status.value} "
        f"(retry {ticket.retry_count}/{ticket.max_retries})"
    )
    if escalated:
        r.warning("retries exhausted; escalated to a human")
        if message is not None:
            r.next_steps([f"wark inbox respond {message.id} '...'"])
    return 0


def _cmd_ticket_complete(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().complete(
        args.key, args.summary, args.auto_accept, worker_id=args.worker_id
    )
    if session.structured:
        return session.emit(
            {
                "command": "ticket.complete",
                "ticket": result.ticket.to_dict(),
                "auto_accepted": result.auto_accepted,
                "resolution": _resolution_payload(result.resolution),
            }
        )
    r = session.renderer
    if result.auto_accepted:
        r.text(f"{result.ticket.key} completed and accepted")
        _render_resolution(r, result.resolution)
    else:
        r.text(f"{result.ticket.key} is ready for review")
        r.next_steps([f"wark ticket accept {result.ticket.key}"])
    return 0


def _cmd_ticket_accept(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().accept(args.key)
    return _terminal_output(session, "ticket.accept", result.ticket, result.resolution, "accepted")


def _cmd_ticket_close(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().close(args.key, args.resolution, args.reason)
    resolution = result.ticket.resolution.value if result.ticket.resolution else ""
    return _terminal_output(
        session, "ticket.close", result.ticket, result.resolution, f"closed as {resolution}"
    )


def _cmd_ticket_reopen(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().reopen(args.key)
    return _terminal_output(
        session,
        "ticket.reopen",
        result.ticket,
        result.resolution,
        f"reopened as {result.ticket.status.value}",
    )


def _terminal_output(
    session: CommandSession,
    command: str,
    ticket: Ticket,
    resolution: ResolutionResult,
    verb: str,
) -> int:
    if session.structured:
        return session.emit(
            {
                "command": command,
                "ticket": ticket.to_dict(),
                "resolution": _resolution_payload(resolution),
            }
        )
    r = session.renderer
    r.text(f"{ticket.key} {verb}")
    _render_resolution(r, resolution)
    return 0


def _cmd_ticket_flag(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().flag(args.key, args.reason, args.message, args.worker_id)
    if session.structured:
        return session.emit(
            {
                "command": "ticket.flag",
                "ticket": result.ticket.to_dict(),
                "inbox_message": _message_payload(result.inbox_message),
                "previous_status": result.previous_status.value,
                "claim_released": result.claim_released,
            }
        )
    r = session.renderer
    r.text(f"{result.ticket.key} flagged for a human ({args.reason})")
    r.kv("Inbox message", f"#{result.inbox_message.id}")
    if result.claim_released:
        r.kv("Claim", "released")
    return 0


def _cmd_ticket_comment(args: argparse.Namespace, session: CommandSession) -> int:
    entry = session.tickets().comment(
        args.key, args.text, actor_type=args.actor_type, actor_id=_optional_str(args.actor_id)
    )
    if session.structured:
        return session.emit({"command": "ticket.comment", "entry": entry.to_dict()})
    session.renderer.text(f"Comment added to {entry.ticket_key or args.key.upper()}")
    return 0


def _cmd_ticket_history(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().get_history(args.key, action=args.action, limit=args.limit)
    if session.structured:
        return session.emit(
            {
                "command": "ticket.history",
                "ticket": result.ticket.key,
                "entries": [_entry_payload(entry) for entry in result.entries],
            }
        )
    r = session.renderer
    r.heading(f"History of {result.ticket.key}")
    if not result.entries:
        r.text("No activity recorded.")
        return 0
    r.table(
        ("WHEN", "ACTION", "ACTOR", "SUMMARY"),
        [
            (
                _stamp(entry.created_at),
                entry.action.value,
                entry.actor_id or entry.actor_type.value,
                entry.summary,
            )
            for entry in result.entries
        ],
    )
    return 0


def _cmd_ticket_decompose(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().decompose(
        args.key,
        _string_sequence(args.titles),
        complexity=args.complexity,
        aggregate_only=args.aggregate_only,
    )
    if session.structured:
        return session.emit(
            {
                "command": "ticket.decompose",
                "parent": result.parent.to_dict(),
                "children": [child.to_dict() for child in result.children],
            }
        )
    r = session.renderer
    r.text(
        f"{result.parent.key} split into {len(result.children)} subtasks; "
        f"it is now {result.parent.status.value}"
    )
    _render_ticket_table(r, result.children)
    return 0


def _cmd_ticket_graph(args: argparse.Namespace, session: CommandSession) -> int:
    graph = session.tickets().get_ticket_graph(args.key)
    payload = {
        "command": "ticket.graph",
        "ticket": graph.ticket_key,
        "dependencies": list(graph.dependencies),
        "dependents": list(graph.dependents),
        "order": list(graph.order),
    }
    if session.structured:
        return session.emit(payload)
    r = session.renderer
    r.heading(graph.ticket_key)
    r.kv("Depends on", ", ".join(graph.dependencies) or "-")
    r.kv("Blocks", ", ".join(graph.dependents) or "-")
    r.kv("Order", " -> ".join(graph.order))
    return 0


# ---------------------------------------------------------------------------
# Command handlers: tasks, inbox, claims
# ---------------------------------------------------------------------------


def _cmd_task_add(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().add_task(args.key, args.description)
    if session.structured:
        return session.emit(
            {
                "command": "task.add",
                "ticket": result.ticket.key,
                "task": result.task.to_dict(),
                "tasks_total": result.tasks_total,
                "tasks_remaining": result.tasks_remaining,
            }
        )
    session.renderer.text(
        f"Added task {result.task.position + 1} to {result.ticket.key} "
        f"({result.tasks_remaining} of {result.tasks_total} open)"
    )
    return 0


def _cmd_task_done(args: argparse.Namespace, session: CommandSession) -> int:
    if args.position < 1:
        raise CLIError("task position starts at 1")
    result = session.tickets().complete_task(args.key, args.position - 1, worker_id=args.worker_id)
    if session.structured:
        return session.emit(
            {
                "command": "task.done",
                "ticket": result.ticket.key,
                "task": result.task.to_dict(),
                "tasks_total": result.tasks_total,
                "tasks_remaining": result.tasks_remaining,
            }
        )
    r = session.renderer
    r.text(f"Completed task {args.position}/{result.tasks_total} on {result.ticket.key}")
    if result.tasks_remaining == 0:
        r.next_steps([f"wark ticket complete {result.ticket.key}"])
    return 0


def _cmd_task_list(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().list_tasks(args.key)
    if session.structured:
        return session.emit(
            {
                "command": "task.list",
                "ticket": result.ticket.key,
                "tasks": [task.to_dict() for task in result.tasks],
                "complete": result.complete_count,
                "total": len(result.tasks),
            }
        )
    r = session.renderer
    if not result.tasks:
        r.text(f"{result.ticket.key} has no tasks.")
        return 0
    r.heading(f"{result.ticket.key} tasks ({result.complete_count}/{len(result.tasks)} done)")
    r.items([_task_line(task) for task in result.tasks], prefix="")
    return 0


def _cmd_task_clear(args: argparse.Namespace, session: CommandSession) -> int:
    if args.position < 1:
        raise CLIError("task position starts at 1")
    result = session.tickets().uncomplete_task(args.key, args.position - 1)
    if session.structured:
        return session.emit(
            {
                "command": "task.clear",
                "ticket": result.ticket.key,
                "task": result.task.to_dict(),
                "changed": result.changed,
                "tasks_total": result.tasks_total,
                "tasks_remaining": result.tasks_remaining,
            }
        )
    verb = "Reopened" if result.changed else "Already open:"
    session.renderer.text(
        f"{verb} task {args.position}/{result.tasks_total} on {result.ticket.key}"
    )
    return 0


def _cmd_task_remove(args: argparse.Namespace, session: CommandSession) -> int:
    if args.position < 1:
        raise CLIError("task position starts at 1")
    result = session.tickets().remove_task(args.key, args.position - 1)
    if session.structured:
        return session.emit(
            {
                "command": "task.remove",
                "ticket": result.ticket.key,
                "removed": result.task.to_dict(),
                "tasks_total": result.tasks_total,
                "tasks_remaining": result.tasks_remaining,
            }
        )
    session.renderer.text(
        f"Removed task {args.position} from {result.ticket.key} "
        f"({result.tasks_remaining} of {result.tasks_total} open)"
    )
    return 0


def _cmd_inbox_list(args: argparse.Namespace, session: CommandSession) -> int:
    messages = session.tickets().list_inbox(
        pending_only=not _flag(args, "include_answered"),
        project_key=_optional_str(args.project),
        ticket_key=_optional_str(args.ticket),
        limit=args.limit,
    )
    if session.structured:
        return session.emit(
            {"command": "inbox.list", "messages": [_message_payload(item) for item in messages]}
        )
    r = session.renderer
    if not messages:
        r.text("Inbox is empty.")
        return 0
    r.table(
        ("ID", "TICKET", "TYPE", "FROM", "MESSAGE", "ANSWERED"),
        [
            (
                item.id,
                item.ticket_key,
                item.message_type.value,
                item.from_agent,
                _truncate(item.content, 60),
                not item.is_pending,
            )
            for item in messages
        ],
    )
    return 0


def _cmd_inbox_show(args: argparse.Namespace, session: CommandSession) -> int:
    message = session.tickets().get_message(args.message_id)
    if session.structured:
        return session.emit({"command": "inbox.show", "message": _message_payload(message)})
    r = session.renderer
    r.heading(f"Message #{message.id} on {message.ticket_key}")
    r.kv("Type", message.message_type.value)
    r.kv("From", message.from_agent or "-")
    r.kv("Sent", _stamp(message.created_at))
    r.section("Content:")
    r.text(message.content)
    if message.is_pending:
        r.next_steps([f"wark inbox respond {message.id} '<answer>'"])
    else:
        r.section(f"Response ({_stamp(message.responded_at)}):")
        r.text(message.response or "")
    return 0


def _cmd_inbox_respond(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().respond(args.message_id, args.response)
    if session.structured:
        return session.emit(
            {
                "command": "inbox.respond",
                "message": _message_payload(result.message),
                "ticket": result.ticket.to_dict(),
                "ticket_updated": result.ticket_updated,
                "previous_status": result.previous_status.value,
            }
        )
    r = session.renderer
    r.text(f"Answered message #{result.message.id} on {result.ticket.key}")
    if result.ticket_updated:
        r.kv("Status", f"{result.previous_status.value} -> {result.ticket.status.value}")
    return 0


def _cmd_inbox_send(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().send(args.key, args.message_type, args.content, args.worker_id)
    if session.structured:
        return session.emit(
            {
                "command": "inbox.send",
                "message": _message_payload(result.message),
                "ticket": result.ticket.to_dict(),
                "escalated": result.escalated,
                "claim_released": result.claim_released,
            }
        )
    r = session.renderer
    r.text(f"Sent {result.message.message_type.value} #{result.message.id} on {result.ticket.key}")
    if result.escalated:
        r.kv("Status", f"{result.ticket.status.value} (waiting on a human)")
    return 0


def _cmd_claims_list(args: argparse.Namespace, session: CommandSession) -> int:
    views = session.tickets().list_claims(
        project_key=_optional_str(args.project),
        include_finished=_flag(args, "include_finished"),
        expired_only=_flag(args, "expired"),
        limit=args.limit,
    )
    if session.structured:
        return session.emit(
            {"command": "claims.list", "claims": [_claim_view_payload(view) for view in views]}
        )
    r = session.renderer
    if not views:
        r.text("No claims.")
        return 0
    r.table(
        ("TICKET", "WORKER", "STATUS", "EXPIRES", "LEFT"),
        [
            (
                view.ticket_key,
                view.claim.worker_id,
                "expired" if view.expired else view.claim.status.value,
                _stamp(view.claim.expires_at),
                f"{view.minutes_remaining}m" if view.claim.is_active else "-",
            )
            for view in views
        ],
    )
    return 0


def _cmd_claims_show(args: argparse.Namespace, session: CommandSession) -> int:
    view = session.tickets().get_claim(args.key)
    if view is None:
        if session.structured:
            return session.emit({"command": "claims.show", "ticket": args.key, "claim": None})
        session.renderer.text(f"{args.key} has never been claimed.")
        return 0
    if session.structured:
        return session.emit({"command": "claims.show", "claim": _claim_view_payload(view)})
    r = session.renderer
    r.heading(f"Claim on {view.ticket_key}: {view.ticket_title}")
    r.kv("Worker", view.claim.worker_id)
    r.kv("Claim id", view.claim.claim_id)
    r.kv("Status", "expired" if view.expired else view.claim.status.value)
    r.kv("Claimed", _stamp(view.claim.claimed_at))
    r.kv("Expires", _stamp(view.claim.expires_at))
    if view.claim.is_active:
        r.kv("Remaining", f"{view.minutes_remaining} min")
    elif view.claim.released_at is not None:
        r.kv("Finished", _stamp(view.claim.released_at))
    return 0


def _cmd_claims_expire(args: argparse.Namespace, session: CommandSession) -> int:
    result = session.tickets().expire_claims(dry_run=_flag(args, "dry_run"))
    items = [
        {
            "ticket_key": item.ticket_key,
            "claim_id": item.claim_id,
            "worker_id": item.worker_id,
            "new_status": item.new_status.value if item.new_status else None,
            "retry_count": item.retry_count,
            "max_retries": item.max_retries,
            "escalated": item.escalated,
            "skipped": item.skipped,
            "note": item.note,
        }
        for item in result.items
    ]
    if session.structured:
        return session.emit(
            {
                "command": "claims.expire",
                "dry_run": result.dry_run,
                "processed": result.processed,
                "expired": result.expired,
                "escalated": result.escalated,
                "skipped": result.skipped,
                "items": items,
            }
        )
    r = session.renderer
    prefix = "Would expire" if result.dry_run else "Expired"
    r.text(
        f"{prefix} {result.expired} claim(s); "
        f"{result.escalated} escalated, {result.skipped} skipped"
    )
    r.table(
        ("TICKET", "WORKER", "NEW STATUS", "RETRIES", "NOTE"),
        [
            (
                item["ticket_key"],
                item["worker_id"],
                item["new_status"],
                f"{item['retry_count']}/{item['max_retries']}",
                item["note"],
            )
            for item in items
        ],
    )
    return 0


# ---------------------------------------------------------------------------
# Command handlers: dashboard, milestones
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace, session: CommandSession) -> int:
    summary = session.status().get_summary(_optional_str(args.project))
    if session.structured:
        return session.emit(
            {
                "command": "status",
                "project": summary.project_key,
                "counts": summary.counts.to_dict(),
                "expiring_soon": [
                    {
                        "ticket_key": item.ticket_key,
                        "ticket_title": item.ticket_title,
                        "worker_id": item.worker_id,
                        "claim_id": item.claim_id,
                        "minutes_remaining": item.minutes_remaining,
                    }
                    for item in summary.expiring_soon
                ],
                "recent_activity": [
                    {**_entry_payload(item.entry), "age": item.age} for item in summary.recent
                ],
            }
        )
    r = session.renderer
    r.heading(f"wark status{' for ' + summary.project_key if summary.project_key else ''}")
    counts = summary.counts
    r.kv("Workable", counts.workable)
    r.kv("Working", counts.working)
    r.kv("In review", counts.review)
    r.kv("Blocked on dependencies", counts.blocked_deps)
    r.kv("Waiting on a human", counts.blocked_human)
    r.kv("Pending inbox", counts.pending_inbox)
    r.kv("Closed", counts.closed)
    if summary.expiring_soon:
        r.table(
            ("TICKET", "WORKER", "MINUTES LEFT"),
            [
                (item.ticket_key, item.worker_id, item.minutes_remaining)
                for item in summary.expiring_soon
            ],
            title="Claims expiring soon:",
        )
    if summary.recent:
        r.table(
            ("WHEN", "TICKET", "SUMMARY"),
            [(item.age, item.entry.ticket_key, item.entry.summary) for item in summary.recent],
            title="Recent activity:",
        )
    return 0


def _cmd_workable(args: argparse.Namespace, session: CommandSession) -> int:
    tickets = session.status().list_workable(_optional_str(args.project), args.limit)
    if session.structured:
        return session.emit(
            {"command": "workable", "tickets": [item.to_dict() for item in tickets]}
        )
    r = session.renderer
    if not tickets:
        r.text("Nothing workable right now.")
        return 0
    _render_ticket_table(r, tickets)
    r.next_steps([f"wark ticket claim {tickets[0].key}"])
    return 0


def _cmd_milestone_create(args: argparse.Namespace, session: CommandSession) -> int:
    milestone = session.milestones().create(
        args.project, args.key, args.name, goal=args.goal, target_date=args.target_date
    )
    if session.structured:
        return session.emit({"command": "milestone.create", "milestone": milestone.to_dict()})
    session.renderer.text(f"Created milestone {milestone.qualified_key}: {milestone.name}")
    return 0


def _cmd_milestone_list(args: argparse.Namespace, session: CommandSession) -> int:
    progress = session.milestones().list(_optional_str(args.project), status=args.status)
    if session.structured:
        return session.emit(
            {
                "command": "milestone.list",
                "milestones": [_progress_payload(item) for item in progress],
            }
        )
    r = session.renderer
    if not progress:
        r.text("No milestones.")
        return 0
    r.table(
        ("MILESTONE", "NAME", "STATUS", "TARGET", "DONE"),
        [
            (
                item.milestone.qualified_key,
                item.milestone.name,
                item.milestone.status.value,
                item.milestone.target_date.isoformat() if item.milestone.target_date else None,
                f"{item.closed}/{item.total} ({item.percent_complete}%)",
            )
            for item in progress
        ],
    )
    return 0


def _cmd_milestone_show(args: argparse.Namespace, session: CommandSession) -> int:
    progress = session.milestones().get(args.project, args.key)
    if session.structured:
        return session.emit({"command": "milestone.show", **_progress_payload(progress)})
    r = session.renderer
    milestone = progress.milestone
    r.heading(f"{milestone.qualified_key}: {milestone.name}")
    r.kv("Status", milestone.status.value)
    r.kv("Target date", milestone.target_date.isoformat() if milestone.target_date else None)
    if milestone.goal:
        r.kv("Goal", milestone.goal)
    r.kv("Progress", f"{progress.closed}/{progress.total} closed ({progress.percent_complete}%)")
    return 0


def _cmd_milestone_tickets(args: argparse.Namespace, session: CommandSession) -> int:
    tickets = session.milestones().get_linked_tickets(args.project, args.key, limit=args.limit)
    if session.structured:
        return session.emit(
            {"command": "milestone.tickets", "tickets": [item.to_dict() for item in tickets]}
        )
    r = session.renderer
    if not tickets:
        r.text("No tickets linked.")
        return 0
    _render_ticket_table(r, tickets)
    return 0


def _cmd_milestone_update(args: argparse.Namespace, session: CommandSession) -> int:
    fields = {
        name: getattr(args, name)
        for name in ("name", "goal", "target_date", "status")
        if getattr(args, name) is not None
    }
    if not fields:
        raise CLIError("nothing to update; pass at least one field option")
    milestone = session.milestones().update(args.project, args.key, **fields)
    if session.structured:
        return session.emit({"command": "milestone.update", "milestone": milestone.to_dict()})
    session.renderer.text(f"Updated milestone {milestone.qualified_key}")
    return 0


def _cmd_milestone_delete(args: argparse.Namespace, session: CommandSession) -> int:
    milestone = session.milestones().delete(args.project, args.key)
    if session.structured:
        return session.emit({"command": "milestone.delete", "milestone": milestone.qualified_key})
    session.renderer.text(f"Deleted milestone {milestone.qualified_key}")
    return 0


# ---------------------------------------------------------------------------
# Command handlers: maintenance
# ---------------------------------------------------------------------------


def _cmd_doctor(args: argparse.Namespace, session: CommandSession) -> int:
    checks: list[tuple[str, bool, str]] = []
    checks.append(("config", True, str(resolve_config_path(_optional_str(args.config_path)))))

    db_path = session.settings.state_db
    report = None
    if not db_path.exists():
        checks.append(("state_db", True, f"{db_path} not yet created (run `wark init`)"))
    else:
        try:
            report = session.tickets().check_integrity()
            checks.append(
                (
                    "state_db",
                    True,
                    f"{db_path} schema v{session.db.schema_version()}, "
                    f"{report.tickets_checked} ticket(s), {report.edges_checked} edge(s)",
                )
            )
        except TicketError as exc:
            checks.append(("state_db", False, exc.message))
        except StateDBError as exc:
            checks.append(("state_db", False, str(exc)))

    if report is not None:
        if report.ok:
            checks.append(("invariants", True, "all ticket invariants hold"))
        for issue in report.issues:
            checks.append((f"invariants:{issue.check}", False, f"{issue.subject}: {issue.message}"))

    checks_payload = [
        {"name": name, "status": "ok" if passed else "fail", "detail": detail}
        for name, passed, detail in checks
    ]
    all_passed = all(passed for _, passed, _ in checks)
    if session.structured:
        session.emit({"command": "doctor", "ok": all_passed, "checks": checks_payload})
        return 0 if all_passed else 1

    r = session.renderer
    r.heading("wark doctor")
    for name, passed, detail in checks:
        if passed:
            r.ok(f"{name}: {detail}")
        else:
            r.fail(f"{name}: {detail}")
    if all_passed:
        r.text("\nAll checks passed.")
        return 0
    r.text("\nSome checks failed. See details above.")
    r.next_steps(["wark ticket vet"])
    return 1


def _cmd_backup(args: argparse.Namespace, session: CommandSession) -> int:
    destination = Path(_require_str(args.destination, "destination")).expanduser().resolve()
    if destination == session.settings.state_db.resolve():
        raise CLIError("backup destination must differ from the live store")
    try:
        written = session.db.backup(destination)
    except (OSError, RuntimeError) as exc:
        raise CLIError(f"backup failed: {exc}", exit_code=5) from exc
    if session.structured:
        return session.emit(
            {"command": "backup", "source": str(session.db.path), "destination": str(written)}
        )
    session.renderer.text(f"Backed up {session.db.path} to {written}")
    return 0


def _cmd_config_show(args: argparse.Namespace, session: CommandSession) -> int:
    redacted = redact_config(session.config)
    payload = {
        "command": "config",
        "config_path": str(resolve_config_path(_optional_str(args.config_path))),
        "active_profile": session.settings.profile,
        "config": redacted,
    }
    if session.structured:
        return session.emit(payload)
    r = session.renderer
    r.kv("Config file", payload["config_path"])
    r.kv("Active profile", session.settings.profile or "(default)")
    for section in sorted(redacted):
        value = redacted[section]
        if not isinstance(value, Mapping) or section == "profiles":
            continue
        r.section(f"[{section}]")
        for key in sorted(value):
            r.kv(f"  {key}", value[key])
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _render_ticket_table(
    renderer: CLIRenderer, tickets: Sequence[Ticket], *, title: str | None = None
) -> None:
    renderer.table(
        ("KEY", "STATUS", "PRIORITY", "RETRIES", "TITLE"),
        [
            (
                ticket.key,
                renderer.status(ticket.status.value),
                ticket.priority.value,
                f"{ticket.retry_count}/{ticket.max_retries}",
                _truncate(ticket.title, 60),
            )
            for ticket in tickets
        ],
        title=title,
    )


def _render_claim(renderer: CLIRenderer, claim: Claim) -> None:
    renderer.section("Active claim:")
    renderer.kv("  Worker", claim.worker_id)
    renderer.kv("  Claim id", claim.claim_id)
    renderer.kv("  Expires", _stamp(claim.expires_at))


def _render_resolution(renderer: CLIRenderer, resolution: ResolutionResult) -> None:
    if not resolution.items:
        return
    renderer.section("Dependency fallout:")
    renderer.items(
        [
            f"{item.ticket_key}: {item.from_status.value} -> {item.to_status.value} ({item.cause})"
            for item in resolution.items
        ]
    )


def _task_line(task: TicketTask) -> str:
    mark = "[x]" if task.complete else "[ ]"
    return f"{mark} {task.position + 1}. {task.description}"


def _ticket_brief(ticket: Ticket) -> dict[str, Any]:
    return {"key": ticket.key, "title": ticket.title, "status": ticket.status.value}


def _message_payload(message: InboxMessage) -> dict[str, Any]:
    payload = message.to_dict()
    payload["pending"] = message.is_pending
    return payload


def _claim_view_payload(view: ClaimView) -> dict[str, Any]:
    payload: dict[str, Any] = view.claim.to_dict()
    payload["ticket_key"] = view.ticket_key
    payload["ticket_title"] = view.ticket_title
    payload["expired"] = view.expired
    payload["minutes_remaining"] = view.minutes_remaining
    return payload


def _entry_payload(entry: ActivityEntry) -> dict[str, Any]:
    payload: dict[str, Any] = entry.to_dict()
    view = entry.view()
    if view is not None:
        payload["view"] = asdict(view)
    return payload


def _progress_payload(progress: Any) -> dict[str, Any]:
    return {
        "milestone": progress.milestone.to_dict(),
        "total": progress.total,
        "closed": progress.closed,
        "percent_complete": progress.percent_complete,
        "by_status": {status.value: count for status, count in progress.by_status.items()},
    }


def _resolution_payload(resolution: ResolutionResult) -> dict[str, Any]:
    return {
        "unblocked": resolution.unblocked,
        "parents_updated": resolution.parents_updated,
        "items": [
            {
                "ticket_key": item.ticket_key,
                "from_status": item.from_status.value,
                "to_status": item.to_status.value,
                "cause": item.cause,
            }
            for item in resolution.items
        ],
    }


def _stamp(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


# ---------------------------------------------------------------------------
# Helpers: config
# ---------------------------------------------------------------------------


def _load_settings(args: argparse.Namespace) -> tuple[WarkSettings, dict[str, Any]]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = resolve_profile(
        profile=_optional_str(getattr(args, "profile", None)), environ=os.environ
    )
    overrides: dict[str, object] = {}
    state_db = _optional_str(getattr(args, "state_db", None))
    if state_db is not None:
        overrides["paths.state_db"] = str(Path(state_db).expanduser().resolve())
    try:
        config = load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    settings = WarkSettings.from_config(config, profile=profile)
    return settings, config


def _command_name(args: argparse.Namespace) -> str:
    parts = [str(getattr(args, "command", "") or "")]
    for attr in (
        "project_command",
        "ticket_command",
        "task_command",
        "inbox_command",
        "claims_command",
        "milestone_command",
        "config_command",
    ):
        value = getattr(args, attr, None)
        if value:
            parts.append(str(value))
    return ".".join(part for part in parts if part)


# ---------------------------------------------------------------------------
# Helpers: argument parsing
# ---------------------------------------------------------------------------


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, Sequence):
        raise CLIError("invalid sequence argument", exit_code=2)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=2)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


__all__ = [
    "CLIError",
    "CommandSession",
    "build_parser",
    "main",
    "run_cli",
]


if __name__ == "__main__":
    raise SystemExit(run_cli())
