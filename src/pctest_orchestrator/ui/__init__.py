"""UI package exports for the CLI and plain-text rendering."""

from pctest_orchestrator.ui.cli import CLIError, build_parser, exit_code_for_status, main, run_cli
from pctest_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "exit_code_for_status",
    "main",
    "run_cli",
]
