"""Output rendering for the forge CLI.

File: src/forge_agent/ui/render.py
Last updated: 2026-10-19

Purpose
- Provide a thin rendering layer over ``rich`` for CLI output and run events.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

What should be included in this file
- CLIRenderer with methods for common output patterns and a run event sink.
- Factory function to create a renderer with appropriate settings.

Functional requirements
- Diff lines are coloured by their leading marker when colour is allowed.
- Status events are shown only in verbose mode; log lines always are.
- Output must stay readable when colour is disabled or stdout is not a terminal.

Non-functional requirements
- Rendering never raises into the pipeline; the event channel isolates subscribers.
"""

from __future__ import annotations

import os
import sys
from typing import IO, TYPE_CHECKING, Final

from rich.console import Console
from rich.style import Style
from rich.text import Text

from forge_agent.observability.events import RunEvent, RunEventKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from forge_agent.observability.events import RunEventChannel

_HEADING_STYLE: Final[Style] = Style(bold=True)
_DIM_STYLE: Final[Style] = Style(dim=True)
_WARNING_STYLE: Final[Style] = Style(color="yellow")
_OK_STYLE: Final[Style] = Style(color="green", bold=True)
_FAIL_STYLE: Final[Style] = Style(color="red", bold=True)
_ADDED_STYLE: Final[Style] = Style(color="green")
_REMOVED_STYLE: Final[Style] = Style(color="red")
_HUNK_STYLE: Final[Style] = Style(color="cyan")
_FILE_STYLE: Final[Style] = Style(bold=True)


def _color_allowed(no_color_flag: bool, stream: IO[str] | None = None) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    target = stream if stream is not None else sys.stdout
    return hasattr(target, "isatty") and target.isatty()


def diff_line_style(line: str) -> Style | None:
    if line.startswith(("+++", "---")):
        return _FILE_STYLE
    if line.startswith("@@"):
        return _HUNK_STYLE
    if line.startswith("+"):
        return _ADDED_STYLE
    if line.startswith("-"):
        return _REMOVED_STYLE
    return None


class CLIRenderer:
    """Thin CLI output renderer backed by a ``rich`` console.

    Produces plain text when colour is disabled, so output stays deterministic
    under ``NO_COLOR``, ``--no-color`` and pipes.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        file: IO[str] | None = None,
    ) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color, file)
        self._console = Console(
            file=file,
            no_color=not self._color,
            color_system="auto" if self._color else None,
            highlight=False,
            markup=False,
            emoji=False,
            soft_wrap=True,
        )
        self._stream_open = False
        self._stream_tail = ""

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        """Print a heading line."""

        self._console.print(Text(text, style=_HEADING_STYLE))

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        self._console.print(f"{key}: {value}")

    def text(self, line: str) -> None:
        """Print a plain text line."""

        self._console.print(Text(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._console.print()
        self._console.print(Text(title, style=_HEADING_STYLE))

    def warning(self, text: str) -> None:
        self._console.print(Text(f"  Warning: {text}", style=_WARNING_STYLE))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def numbered(self, entries: Sequence[str]) -> None:
        width = len(str(len(entries)))
        for index, entry in enumerate(entries, start=1):
            self._console.print(Text(f"  {str(index).rjust(width)}. {entry}"))

    def ok(self, label: str) -> None:
        line = Text("  OK  ", style=_OK_STYLE)
        line.append(label)
        self._console.print(line)

    def fail(self, label: str) -> None:
        line = Text("  FAIL  ", style=_FAIL_STYLE)
        line.append(label)
        self._console.print(line)

    def diff(self, lines: Sequence[str]) -> None:
        """Print preview lines, colouring additions, removals and hunk headers."""

        for line in lines:
            self._console.print(Text(line, style=diff_line_style(line) or ""))

    # ------------------------------------------------------------------
    # Run events
    # ------------------------------------------------------------------

    def attach(self, events: RunEventChannel) -> int:
        """Subscribe to every event kind; returns the subscription token."""

        return events.subscribe(None, self.handle_event)

    def handle_event(self, event: RunEvent) -> None:
        kind = event.kind
        if kind is RunEventKind.STATUS:
            if self.verbose:
                self._console.print(Text(f"[{event.text}]", style=_DIM_STYLE))
        elif kind is RunEventKind.LOG:
            self._close_stream()
            self.text(event.text)
        elif kind is RunEventKind.DIFF:
            self._close_stream()
            self.diff(event.lines)
        elif kind is RunEventKind.STREAM_START:
            self._close_stream()
            if event.text:
                self.section(event.text.capitalize() + ":")
            self._stream_open = True
            self._stream_tail = ""
        elif kind is RunEventKind.STREAM_APPEND:
            self._stream_open = True
            self._console.print(Text(event.text), end="")
            if event.text:
                self._stream_tail = event.text
        elif kind is RunEventKind.STREAM_END:
            self._close_stream()

    def _close_stream(self) -> None:
        if not self._stream_open:
            return
        if self._stream_tail and not self._stream_tail.endswith("\n"):
            self._console.print()
        self._stream_open = False
        self._stream_tail = ""


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, file: IO[str] | None = None
) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose, file=file)


__all__ = ["CLIRenderer", "create_renderer", "diff_line_style"]
