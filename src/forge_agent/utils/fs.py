"""
forge-agent — filesystem utilities

File: src/forge_agent/utils/fs.py
Last updated: 2026-10-19

Purpose
- Safe filesystem helpers for writing model-produced file content into a workspace.

Functional requirements
- Writes go through a temp file in the destination directory and replace in one step,
  so a crash never leaves a half-written source file behind.
- Containment checks resolve symlinks before comparing against the workspace root.

Non-functional requirements
- Standard library only and cross-platform behavior where feasible.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "read_text_or_empty",
    "write_text_creating_parents",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The parent directory must exist. The temp file lives next to the target so the
    final ``os.replace`` never crosses a filesystem boundary.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".forge-tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        _copy_mode(target, temp_path)
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def write_text_creating_parents(path: PathLike, text: str, *, encoding: str = "utf-8") -> None:
    """Create missing parent directories, then atomically replace ``path`` with ``text``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, text, encoding=encoding)


def read_text_or_empty(path: PathLike, *, encoding: str = "utf-8") -> str:
    """Return file text, or ``""`` when the file does not exist yet."""

    target = Path(path)
    if not target.exists():
        return ""
    return target.read_text(encoding=encoding, errors="replace")


def is_within(child: PathLike, parent: PathLike) -> bool:
    """
    Return ``True`` if ``child`` resolves inside resolved ``parent``.

    ``child`` does not need to exist; its deepest existing ancestor is resolved so
    symlinked directories cannot smuggle a new file outside the root.
    """

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    resolved_child = Path(child).resolve(strict=False)
    return _is_relative_to(resolved_child, resolved_parent)


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _copy_mode(source: Path, destination: Path) -> None:
    try:
        mode = source.stat().st_mode
    except OSError:
        return
    with contextlib.suppress(OSError):
        os.chmod(destination, mode & 0o7777)


def _fsync_directory(path: Path) -> None:
    """Best-effort directory fsync; some platforms do not support it."""

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
