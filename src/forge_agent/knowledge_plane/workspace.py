"""
forge-agent — workspace listing and project context

File: src/forge_agent/knowledge_plane/workspace.py
Last updated: 2026-10-19

Purpose
- Enumerate workspace files and harvest a deterministic project context (package
  manager, frameworks, active file) used to ground prompts.

Functional requirements
- Listing walks the tree in sorted order, bounded by depth and file count, and never
  descends into blocked directories (VCS metadata, dependency caches, build output).
- Paths are returned workspace-relative with forward slashes.
- Context harvesting never calls a model.

Non-functional requirements
- Unreadable directories and malformed manifests are skipped, not raised.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Final

BLOCKED_DIRECTORIES: Final[frozenset[str]] = frozenset(
    {
        ".git",
        "node_modules",
        "dist",
        "build",
        "out",
        "coverage",
        ".next",
        ".nuxt",
        ".svelte-kit",
        ".vite",
        ".cache",
        "__pycache__",
        ".venv",
        "venv",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        ".tox",
        ".forge",
    }
)

DEFAULT_LIST_DEPTH: Final[int] = 4
DEFAULT_LIST_LIMIT: Final[int] = 2000
PREVIEW_MAX_FILE_BYTES: Final[int] = 200_000

_FRONTEND_FRAMEWORKS: Final[tuple[tuple[str, str], ...]] = (
    ("next", "next"),
    ("react", "react"),
    ("vue", "vue"),
    ("nuxt", "nuxt"),
    ("@angular/core", "angular"),
    ("svelte", "svelte"),
    ("solid-js", "solid"),
    ("astro", "astro"),
)
_BACKEND_FRAMEWORKS: Final[tuple[tuple[str, str], ...]] = (
    ("@nestjs/core", "nestjs"),
    ("express", "express"),
    ("fastify", "fastify"),
    ("koa", "koa"),
    ("@hapi/hapi", "hapi"),
    ("hono", "hono"),
)
_PYTHON_BACKEND_FRAMEWORKS: Final[tuple[tuple[str, str], ...]] = (
    ("django", "django"),
    ("fastapi", "fastapi"),
    ("flask", "flask"),
    ("aiohttp", "aiohttp"),
    ("starlette", "starlette"),
)
_LOCKFILES: Final[tuple[tuple[str, str], ...]] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("uv.lock", "uv"),
    ("poetry.lock", "poetry"),
)


def is_blocked_path(relative_path: str) -> bool:
    """True when any segment of ``relative_path`` names a blocked directory."""

    parts = PurePosixPath(relative_path.replace("\\", "/")).parts
    return any(part.lower() in BLOCKED_DIRECTORIES for part in parts)


def list_workspace_files(
    root: str | os.PathLike[str],
    max_depth: int = DEFAULT_LIST_DEPTH,
    max_files: int = DEFAULT_LIST_LIMIT,
) -> list[str]:
    """List files under ``root`` in sorted walk order, bounded by depth and count."""

    root_path = Path(root)
    if max_files <= 0 or not root_path.is_dir():
        return []

    results: list[str] = []
    for current_dir, dir_names, file_names in os.walk(root_path, topdown=True, followlinks=False):
        current = Path(current_dir)
        depth = len(current.relative_to(root_path).parts)
        if depth >= max_depth:
            dir_names[:] = []
        else:
            dir_names[:] = sorted(
                name for name in dir_names if name.lower() not in BLOCKED_DIRECTORIES
            )

        for file_name in sorted(file_names):
            results.append((current / file_name).relative_to(root_path).as_posix())
            if len(results) >= max_files:
                return results
    return results


def read_file_preview(
    root: str | os.PathLike[str], relative_path: str, max_chars: int
) -> str | None:
    """Return up to ``max_chars`` of a small text file, or ``None`` when unusable."""

    full_path = Path(root) / relative_path
    try:
        stat = full_path.stat()
    except OSError:
        return None
    if not full_path.is_file() or stat.st_size == 0 or stat.st_size > PREVIEW_MAX_FILE_BYTES:
        return None
    try:
        content = full_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    if len(content) > max_chars:
        return f"{content[:max_chars]}\n... (truncated)"
    return content


@dataclass(frozen=True, slots=True)
class ProjectContext:
    """Deterministic snapshot of the workspace used to ground prompts."""

    workspace_root: str
    active_file: str | None = None
    files: tuple[str, ...] = ()
    package_manager: str | None = None
    frontend_framework: str | None = None
    backend_framework: str | None = None
    manifests: tuple[str, ...] = field(default_factory=tuple)

    def prompt_dict(self) -> dict[str, str | None]:
        return {
            "workspaceRoot": self.workspace_root,
            "activeEditorFile": self.active_file,
            "packageManager": self.package_manager,
            "frontendFramework": self.frontend_framework,
            "backendFramework": self.backend_framework,
        }

    def prompt_json(self) -> str:
        return json.dumps(self.prompt_dict(), indent=2, sort_keys=True)


def harvest_project_context(
    root: str | os.PathLike[str],
    *,
    active_file: str | None = None,
    max_depth: int = 2,
    max_files: int = DEFAULT_LIST_LIMIT,
) -> ProjectContext:
    """Inspect manifests and lockfiles under ``root`` without calling a model."""

    root_path = Path(root)
    files = tuple(list_workspace_files(root_path, max_depth, max_files))
    manifests: list[str] = []

    package_manager: str | None = None
    frontend: str | None = None
    backend: str | None = None

    package_json = _package_json_for(root_path, files, active_file)
    if package_json is not None:
        manifest_path, payload = package_json
        manifests.append(manifest_path)
        declared = payload.get("packageManager")
        if isinstance(declared, str) and declared.strip():
            package_manager = declared.split("@", 1)[0] or None
        if package_manager is None:
            package_manager = _lockfile_manager((root_path / manifest_path).parent)
        deps = _merged_dependencies(payload)
        frontend = _first_match(deps, _FRONTEND_FRAMEWORKS)
        backend = _first_match(deps, _BACKEND_FRAMEWORKS)

    pyproject = root_path / "pyproject.toml"
    if pyproject.is_file():
        manifests.append("pyproject.toml")
        if package_manager is None:
            package_manager = _lockfile_manager(root_path) or "pip"
        if backend is None:
            backend = _first_match(_pyproject_dependencies(pyproject), _PYTHON_BACKEND_FRAMEWORKS)

    return ProjectContext(
        workspace_root=str(root_path),
        active_file=active_file,
        files=files,
        package_manager=package_manager,
        frontend_framework=frontend,
        backend_framework=backend,
        manifests=tuple(manifests),
    )


def _package_json_for(
    root: Path, files: tuple[str, ...], active_file: str | None
) -> tuple[str, Mapping[str, object]] | None:
    candidates: list[str] = []
    if active_file:
        directory = PurePosixPath(active_file.replace("\\", "/")).parent
        while True:
            candidate = (directory / "package.json").as_posix()
            if (root / candidate).is_file():
                candidates.append(candidate)
                break
            if directory == directory.parent or str(directory) in {"", "."}:
                break
            directory = directory.parent
    if (root / "package.json").is_file():
        candidates.append("package.json")
    nested = [path for path in files if PurePosixPath(path).name == "package.json"]
    if len(nested) == 1:
        candidates.append(nested[0])

    for candidate in candidates:
        try:
            payload = json.loads((root / candidate).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        if isinstance(payload, dict):
            return candidate, payload
    return None


def _merged_dependencies(payload: Mapping[str, object]) -> set[str]:
    names: set[str] = set()
    for key in ("dependencies", "devDependencies"):
        section = payload.get(key)
        if isinstance(section, Mapping):
            names.update(str(name) for name in section)
    return names


def _pyproject_dependencies(path: Path) -> set[str]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return set()
    project = data.get("project")
    raw: list[object] = []
    if isinstance(project, Mapping):
        deps = project.get("dependencies")
        if isinstance(deps, list):
            raw.extend(deps)
    names: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        name = item.strip()
        for separator in ("[", "<", ">", "=", "!", "~", ";", " "):
            name = name.split(separator, 1)[0]
        if name:
            names.add(name.lower())
    return names


def _lockfile_manager(directory: Path) -> str | None:
    for lockfile, manager in _LOCKFILES:
        if (directory / lockfile).is_file():
            return manager
    return None


def _first_match(names: set[str], table: tuple[tuple[str, str], ...]) -> str | None:
    for dependency, label in table:
        if dependency in names:
            return label
    return None


__all__ = [
    "BLOCKED_DIRECTORIES",
    "DEFAULT_LIST_DEPTH",
    "DEFAULT_LIST_LIMIT",
    "PREVIEW_MAX_FILE_BYTES",
    "ProjectContext",
    "harvest_project_context",
    "is_blocked_path",
    "list_workspace_files",
    "read_file_preview",
]
