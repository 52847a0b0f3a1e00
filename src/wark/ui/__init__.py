"""UI package exports for the CLI and its rendering layer."""

from wark.ui.cli import CLIError, CommandSession, build_parser, main, run_cli
from wark.ui.render import OUTPUT_FORMATS, CLIRenderer, create_renderer, emit_payload

__all__ = [
    "CLIError",
    "CLIRenderer",
    "CommandSession",
    "OUTPUT_FORMATS",
    "build_parser",
    "create_renderer",
    "emit_payload",
    "main",
    "run_cli",
]
