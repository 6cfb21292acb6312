"""UI package exports for the CLI router, rendering and terminal prompts."""

from forge_agent.ui.cli import CLIError, build_parser, run_cli
from forge_agent.ui.prompts import TerminalPrompts
from forge_agent.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "TerminalPrompts",
    "build_parser",
    "create_renderer",
    "run_cli",
]
