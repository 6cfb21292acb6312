"""Per-workspace session state carried across runs, and the per-run state slot."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from forge_agent.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from forge_agent.domain.models import FileUpdate
    from forge_agent.synthesis_plane.clarification import (
        DisambiguationOption,
        PendingClarification,
        PendingProposal,
    )
    from forge_agent.synthesis_plane.intent import HistoryItem

SUPERSEDED_REASON = "superseded by a new run"


@dataclass(slots=True)
class RunState:
    """Mutable bookkeeping for one run; discarded when the run ends."""

    token: CancellationToken = field(default_factory=CancellationToken)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_ns: int = field(default_factory=time.monotonic_ns)
    decisions: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    applied_updates: list[FileUpdate] = field(default_factory=list)

    @property
    def elapsed_ms(self) -> int:
        return max(0, (time.monotonic_ns() - self.started_ns) // 1_000_000)

    @property
    def files_changed(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(update.path for update in self.applied_updates))


class SessionContext:
    """State that outlives a single run.

    At most one of pending clarification, pending proposal and pending
    disambiguation is set; every setter clears the other two.
    """

    def __init__(self, *, session_id: str | None = None) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.last_active_file: str | None = None
        self.last_manual_selection: tuple[str, ...] = ()
        self.history: list[HistoryItem] = []
        self._pending_clarification: PendingClarification | None = None
        self._pending_proposal: PendingProposal | None = None
        self._pending_disambiguation: tuple[DisambiguationOption, ...] = ()
        self._active_run: RunState | None = None

    @property
    def pending_clarification(self) -> PendingClarification | None:
        return self._pending_clarification

    @property
    def pending_proposal(self) -> PendingProposal | None:
        return self._pending_proposal

    @property
    def pending_disambiguation(self) -> tuple[DisambiguationOption, ...]:
        return self._pending_disambiguation

    @property
    def has_pending(self) -> bool:
        return (
            self._pending_clarification is not None
            or self._pending_proposal is not None
            or bool(self._pending_disambiguation)
        )

    def clear_pending(self) -> None:
        self._pending_clarification = None
        self._pending_proposal = None
        self._pending_disambiguation = ()

    def set_pending_clarification(self, pending: PendingClarification) -> None:
        self.clear_pending()
        self._pending_clarification = pending

    def set_pending_proposal(self, proposal: PendingProposal) -> None:
        self.clear_pending()
        self._pending_proposal = proposal

    def set_pending_disambiguation(self, options: tuple[DisambiguationOption, ...]) -> None:
        self.clear_pending()
        self._pending_disambiguation = tuple(options)

    @property
    def active_run(self) -> RunState | None:
        return self._active_run

    def begin_run(self) -> RunState:
        """Abort any in-flight run and install a fresh ``RunState``."""

        previous = self._active_run
        if previous is not None:
            previous.token.cancel(SUPERSEDED_REASON)
        state = RunState()
        self._active_run = state
        return state

    def end_run(self, state: RunState) -> None:
        if self._active_run is state:
            self._active_run = None

    def cancel_active(self, reason: str = "run stopped") -> bool:
        state = self._active_run
        if state is None:
            return False
        state.token.cancel(reason)
        self._active_run = None
        return True

    def remember_turn(self, instruction: str, reply: str | None, *, max_items: int = 20) -> None:
        self.history.append({"role": "user", "content": instruction})
        if reply:
            self.history.append({"role": "assistant", "content": reply})
        if len(self.history) > max_items:
            del self.history[: len(self.history) - max_items]


__all__ = ["RunState", "SessionContext"]
