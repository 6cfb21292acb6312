"""
forge-agent — line diff engine

File: src/forge_agent/diffing.py
Last updated: 2026-10-19

Purpose
- Longest-common-subsequence line diff, change summaries and compact previews.

Functional requirements
- ``line_diff`` output reconstructs both inputs: ``' '``/``'+'`` lines give the new
  text, ``' '``/``'-'`` lines give the old text.
- Ties during backtracking consume an insertion before a deletion, so output is
  deterministic for a given pair of inputs.
- Previews keep only changed-line windows padded with context and mark gaps with ``...``.

Non-functional requirements
- Pure functions with no knowledge of files, models or the event channel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence

DEFAULT_CONTEXT_LINES: Final[int] = 3
DEFAULT_PREVIEW_MAX_LINES: Final[int] = 240
GAP_MARKER: Final[str] = "..."

_LINE_SPLIT: Final[re.Pattern[str]] = re.compile(r"\r?\n")


@dataclass(frozen=True, slots=True)
class ChangeSummary:
    """Added/removed line counts for one file."""

    added: int
    removed: int

    @property
    def total(self) -> int:
        return self.added + self.removed


def split_lines(text: str) -> list[str]:
    """Split on ``\\n`` or ``\\r\\n``; an empty string is one empty line."""

    return _LINE_SPLIT.split(text)


def lcs_table(a: Sequence[str], b: Sequence[str]) -> list[list[int]]:
    """Return the ``(len(a)+1) x (len(b)+1)`` LCS length table."""

    rows = len(a)
    cols = len(b)
    table = [[0] * (cols + 1) for _ in range(rows + 1)]
    for i in range(1, rows + 1):
        left = a[i - 1]
        current = table[i]
        previous = table[i - 1]
        for j in range(1, cols + 1):
            if left == b[j - 1]:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
    return table


def lcs_length(a: Sequence[str], b: Sequence[str]) -> int:
    return lcs_table(a, b)[len(a)][len(b)]


def line_diff(a: Sequence[str], b: Sequence[str]) -> list[str]:
    """Return signed diff lines turning ``a`` into ``b``."""

    table = lcs_table(a, b)
    i = len(a)
    j = len(b)
    reversed_lines: list[str] = []

    while i > 0 or j > 0:
        if i > 0 and j > 0 and a[i - 1] == b[j - 1]:
            reversed_lines.append(f" {a[i - 1]}")
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or table[i][j - 1] >= table[i - 1][j]):
            reversed_lines.append(f"+{b[j - 1]}")
            j -= 1
        else:
            reversed_lines.append(f"-{a[i - 1]}")
            i -= 1

    reversed_lines.reverse()
    return reversed_lines


def change_summary(a: Sequence[str], b: Sequence[str]) -> ChangeSummary | None:
    """Return added/removed counts, or ``None`` when nothing changed."""

    common = lcs_length(a, b)
    added = len(b) - common
    removed = len(a) - common
    if added == 0 and removed == 0:
        return None
    return ChangeSummary(added=added, removed=removed)


def describe_change(original: str, updated: str, label: str) -> str | None:
    """Return ``"Changed N lines (+a / -r) in label."`` or ``None`` for a no-op."""

    summary = change_summary(split_lines(original), split_lines(updated))
    if summary is None:
        return None
    return f"Changed {summary.total} lines (+{summary.added} / -{summary.removed}) in {label}."


def preview_with_context(
    diff: Sequence[str],
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[str]:
    """Compress ``diff`` to changed-line windows padded by ``context_lines``."""

    if context_lines < 0:
        raise ValueError("context_lines must be >= 0")

    ranges: list[list[int]] = []
    for index, line in enumerate(diff):
        if line.startswith(" "):
            continue
        start = max(0, index - context_lines)
        end = min(len(diff) - 1, index + context_lines)
        if ranges and start <= ranges[-1][1] + 1:
            ranges[-1][1] = max(ranges[-1][1], end)
        else:
            ranges.append([start, end])

    output: list[str] = []
    for position, (start, end) in enumerate(ranges):
        if position > 0:
            output.append(GAP_MARKER)
        output.extend(diff[start : end + 1])
    return output


def inline_preview(
    original: str,
    updated: str,
    label: str,
    *,
    max_lines: int = DEFAULT_PREVIEW_MAX_LINES,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[str] | None:
    """Return a labelled, truncated contextual diff, or ``None`` if nothing changed."""

    if max_lines <= 0:
        raise ValueError("max_lines must be > 0")

    diff = line_diff(split_lines(original), split_lines(updated))
    compact = preview_with_context(diff, context_lines)
    if not compact:
        return None

    shown = compact[:max_lines]
    lines = [f"Diff preview ({label}):", *shown]
    hidden = len(compact) - len(shown)
    if hidden > 0:
        lines.append(f"... ({hidden} more lines)")
    return lines


def apply_signed_diff(diff: Sequence[str], *, side: str) -> list[str]:
    """Rebuild one side of a diff: ``side="new"`` keeps ``' '``/``'+'`` lines."""

    if side not in {"old", "new"}:
        raise ValueError("side must be 'old' or 'new'")
    keep = "+" if side == "new" else "-"
    return [line[1:] for line in diff if line[:1] in {" ", keep}]


__all__ = [
    "DEFAULT_CONTEXT_LINES",
    "DEFAULT_PREVIEW_MAX_LINES",
    "GAP_MARKER",
    "ChangeSummary",
    "apply_signed_diff",
    "change_summary",
    "describe_change",
    "inline_preview",
    "lcs_length",
    "lcs_table",
    "line_diff",
    "preview_with_context",
    "split_lines",
]
