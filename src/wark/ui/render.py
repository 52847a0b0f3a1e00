"""
wark — CLI output rendering

File: src/wark/ui/render.py

Purpose
- A thin rendering layer for human-readable CLI output on top of ``rich``,
  plus the machine formats (JSON, YAML) every command can emit instead.
- Respect the NO_COLOR environment variable and the --no-color flag.

Functional requirements
- Text output goes to stdout; nothing else writes there while a command runs.
- JSON output is deterministic: sorted keys, compact separators.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping, Sequence
from typing import IO, Any, Final

import yaml
from rich.console import Console
from rich.table import Table
from rich.text import Text

OUTPUT_FORMATS: Final[tuple[str, ...]] = ("text", "json", "yaml")

STATUS_STYLES: Final[dict[str, str]] = {
    "blocked": "yellow",
    "ready": "green",
    "working": "cyan",
    "review": "magenta",
    "human": "bold red",
    "closed": "dim",
}


def _color_allowed(no_color_flag: bool, stream: IO[str]) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Human-readable output for one command invocation."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: IO[str] | None = None,
    ) -> None:
        self.verbose = verbose
        out = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, out)
        self._console = Console(
            file=out,
            no_color=not self._color,
            color_system="auto" if self._color else None,
            highlight=False,
            soft_wrap=True,
        )

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        self._console.print(Text(text, style="bold"))

    def kv(self, key: str, value: object) -> None:
        line = Text(f"{key}: ", style="bold")
        line.append(_plain(value))
        self._console.print(line)

    def text(self, line: str) -> None:
        self._console.print(Text(line))

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(Text(title, style="bold underline"))

    def warning(self, text: str) -> None:
        self._console.print(Text(f"  Warning: {text}", style="yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def status(self, value: str) -> Text:
        return Text(value, style=STATUS_STYLES.get(value, ""))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        if title:
            self.section(title)
        grid = Table(show_edge=False, box=None, pad_edge=False, header_style="bold")
        for header in headers:
            grid.add_column(header, overflow="fold")
        for row in rows:
            grid.add_row(*(cell if isinstance(cell, Text) else _plain(cell) for cell in row))
        self._console.print(grid)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(Text(f"  $ {step}"))

    def ok(self, label: str) -> None:
        line = Text("  OK    ", style="green")
        line.append(label)
        self._console.print(line)

    def fail(self, label: str) -> None:
        line = Text("  FAIL  ", style="bold red")
        line.append(label)
        self._console.print(line)


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: IO[str] | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


def emit_payload(
    payload: Mapping[str, Any], output_format: str, *, stream: IO[str] | None = None
) -> None:
    """Write a structured payload as JSON or YAML."""
    out = stream if stream is not None else sys.stdout
    if output_format == "yaml":
        out.write(yaml.safe_dump(_jsonable(payload), sort_keys=True, allow_unicode=True))
        return
    out.write(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    out.write("\n")


def _jsonable(value: Any) -> Any:
    # Round-trip through JSON so YAML sees plain dicts, lists, and scalars only.
    return json.loads(json.dumps(value, ensure_ascii=False))


def _plain(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


__all__ = [
    "OUTPUT_FORMATS",
    "STATUS_STYLES",
    "CLIRenderer",
    "create_renderer",
    "emit_payload",
]
