"""Terminal implementations of the confirmation, file picker and validation choice collaborators."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Final

from forge_agent.control_plane.collaborators import FileSelection

if TYPE_CHECKING:
    from forge_agent.ui.render import CLIRenderer
    from forge_agent.verification_plane.discovery import ValidationOption

MAX_LISTED_FILES: Final[int] = 30
_YES: Final[frozenset[str]] = frozenset({"y", "yes"})
_CANCEL: Final[frozenset[str]] = frozenset({"q", "quit", "cancel"})

InputFn = Callable[[str], str]


def parse_file_selection(
    answer: str, listed: Sequence[str], preselected: Sequence[str]
) -> FileSelection:
    """Interpret a picker answer: blank keeps the preselection, numbers index ``listed``."""

    text = answer.strip()
    if text.lower() in _CANCEL:
        return FileSelection(cancelled=True)
    if not text:
        if not preselected:
            return FileSelection(cancelled=True)
        return FileSelection(files=tuple(preselected))

    chosen: list[str] = []
    for token in text.replace(",", " ").split():
        if token.isdigit():
            index = int(token) - 1
            if 0 <= index < len(listed):
                chosen.append(listed[index])
            continue
        chosen.append(token)
    files = tuple(dict.fromkeys(chosen))
    return FileSelection(files=files, cancelled=not files)


class TerminalPrompts:
    """Blocking ``input()`` prompts run off the event loop.

    With ``interactive`` false the file picker reports "no UI" and confirmations are
    declined, so nothing is written without an explicit ``--yes``.
    """

    def __init__(
        self,
        renderer: CLIRenderer,
        *,
        interactive: bool | None = None,
        input_fn: InputFn = input,
    ) -> None:
        self._renderer = renderer
        self._interactive = sys.stdin.isatty() if interactive is None else interactive
        self._input = input_fn

    @property
    def interactive(self) -> bool:
        return self._interactive

    async def confirm(self, message: str) -> bool:
        if not self._interactive:
            self._renderer.text(f"{message} [y/N] n (non-interactive)")
            return False
        answer = await self._ask(f"{message} [y/N] ")
        return answer.strip().lower() in _YES

    async def request_file_selection(
        self, all_files: Sequence[str], preselected: Sequence[str]
    ) -> FileSelection | None:
        if not self._interactive:
            return None
        picked = set(preselected)
        remaining = [path for path in all_files if path not in picked]
        listed = [*preselected, *remaining][:MAX_LISTED_FILES]
        self._renderer.section("Select files to update:")
        self._renderer.numbered(listed)
        if len(all_files) > len(listed):
            self._renderer.text(f"  ... {len(all_files) - len(listed)} more (type a path)")
        hint = f"Enter keeps {', '.join(preselected)}" if preselected else "Enter cancels"
        answer = await self._ask(f"Numbers or paths ({hint}, q to cancel): ")
        return parse_file_selection(answer, listed, preselected)

    async def choose(self, options: Sequence[ValidationOption]) -> ValidationOption | None:
        if not self._interactive or not options:
            return None
        self._renderer.section("Choose a validation command:")
        self._renderer.numbered(
            [option.label if option.is_skip else f"{option.label}: {option.command}" for option in options]
        )
        answer = (await self._ask("Number (Enter for 1): ")).strip()
        if not answer:
            return options[0]
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return options[int(answer) - 1]
        return None

    async def _ask(self, prompt: str) -> str:
        try:
            return await asyncio.to_thread(self._input, prompt)
        except EOFError:
            return ""


__all__ = ["MAX_LISTED_FILES", "TerminalPrompts", "parse_file_selection"]
