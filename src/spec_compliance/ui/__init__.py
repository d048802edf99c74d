"""UI package exports for the command-line interface and its text rendering."""

from spec_compliance.ui.cli import CLIError, build_parser, main, run_cli
from spec_compliance.ui.render import CLIRenderer, create_renderer, format_score

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "format_score",
    "main",
    "run_cli",
]
