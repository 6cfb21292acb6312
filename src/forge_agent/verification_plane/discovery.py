"""
forge-agent — validation command discovery

File: src/forge_agent/verification_plane/discovery.py
Last updated: 2026-10-19

Purpose
- Find the project's own validation commands (test, typecheck, lint, build) without running them.

Functional requirements
- ``package.json`` scripts run through the detected package manager prefix.
- ``pyproject.toml`` tool tables map to pytest, mypy and ruff.
- ``.pre-commit-config.yaml`` adds a lint run when it declares hooks.
- A Python tree with nothing else configured falls back to a byte-compile build check.
- Configured commands replace discovery entirely.

Non-functional requirements
- Pure inspection of manifests; malformed files are skipped, never raised.
- Result order is deterministic: test, typecheck, lint, build, then anything else.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import sys
import tomllib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final

import yaml

from forge_agent.knowledge_plane.workspace import harvest_project_context

PRIORITY: Final[tuple[str, ...]] = ("test", "typecheck", "lint", "build")
SKIP_VALIDATION_LABEL: Final[str] = "Skip validation"

_SCRIPT_PREFIXES: Final[Mapping[str, str]] = {
    "yarn": "yarn",
    "pnpm": "pnpm",
    "bun": "bun run",
}
_DEFAULT_SCRIPT_PREFIX: Final[str] = "npm run"
_PACKAGE_SCRIPTS: Final[tuple[str, ...]] = ("test", "lint", "typecheck", "build")
_CONFIGURED_LABEL = re.compile(r"^(?P<label>[A-Za-z][\w-]*):\s+(?P<command>\S.*)$")
_COMPILEALL_EXCLUDE: Final[str] = r"(^|/)(\.[^/]+|node_modules|__pycache__|build|dist)(/|$)"


@dataclass(frozen=True, slots=True)
class ValidationOption:
    """One named validation command, run from ``cwd`` relative to the workspace root."""

    label: str
    command: str
    cwd: str = "."

    def __post_init__(self) -> None:
        if not self.label.strip():
            raise ValueError("ValidationOption.label must be non-empty")

    @property
    def is_skip(self) -> bool:
        return self.label == SKIP_VALIDATION_LABEL and not self.command

    @property
    def argv(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.command))


SKIP_VALIDATION: Final[ValidationOption] = ValidationOption(SKIP_VALIDATION_LABEL, "")


def script_prefix(package_manager: str | None) -> str:
    if package_manager is None:
        return _DEFAULT_SCRIPT_PREFIX
    return _SCRIPT_PREFIXES.get(package_manager, _DEFAULT_SCRIPT_PREFIX)


def package_script_options(
    package_json: Mapping[str, object], package_manager: str | None, *, cwd: str = "."
) -> list[ValidationOption]:
    scripts = package_json.get("scripts")
    if not isinstance(scripts, Mapping):
        return []
    prefix = script_prefix(package_manager)
    return [
        ValidationOption(name, f"{prefix} {name}", cwd)
        for name in _PACKAGE_SCRIPTS
        if isinstance(scripts.get(name), str) and str(scripts[name]).strip()
    ]


def pyproject_options(root: Path) -> list[ValidationOption]:
    path = root / "pyproject.toml"
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return []
    tool = data.get("tool")
    tool = tool if isinstance(tool, Mapping) else {}

    options: list[ValidationOption] = []
    if "pytest" in tool or (root / "tests").is_dir() or (root / "pytest.ini").is_file():
        options.append(ValidationOption("test", "pytest -q"))
    if "mypy" in tool:
        mypy = tool["mypy"]
        files = mypy.get("files") if isinstance(mypy, Mapping) else None
        if isinstance(files, str):
            target = files
        elif isinstance(files, list) and files:
            target = " ".join(shlex.quote(str(item)) for item in files)
        else:
            target = "src" if (root / "src").is_dir() else "."
        options.append(ValidationOption("typecheck", f"mypy {target}"))
    if "ruff" in tool:
        options.append(ValidationOption("lint", "ruff check ."))
    return options


def pre_commit_options(root: Path) -> list[ValidationOption]:
    path = root / ".pre-commit-config.yaml"
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return []
    if not isinstance(payload, Mapping):
        return []
    repos = payload.get("repos")
    if not isinstance(repos, list) or not any(
        isinstance(repo, Mapping) and repo.get("hooks") for repo in repos
    ):
        return []
    return [ValidationOption("lint", "pre-commit run --all-files")]


def compileall_fallback(root: Path, files: Iterable[str]) -> list[ValidationOption]:
    if not any(PurePosixPath(path).suffix == ".py" for path in files):
        return []
    argv = (sys.executable, "-m", "compileall", "-q", "-x", _COMPILEALL_EXCLUDE, ".")
    return [ValidationOption("build", shlex.join(argv))]


def parse_configured_commands(commands: Sequence[str]) -> list[ValidationOption]:
    """``"label: command"`` entries keep their label; bare commands are numbered."""

    options: list[ValidationOption] = []
    for index, raw in enumerate(commands, start=1):
        text = raw.strip()
        if not text:
            continue
        match = _CONFIGURED_LABEL.match(text)
        if match is not None:
            options.append(ValidationOption(match["label"], match["command"].strip()))
        else:
            options.append(ValidationOption(f"command {index}", text))
    return options


def order_validation_options(options: Iterable[ValidationOption]) -> list[ValidationOption]:
    indexed = list(enumerate(options))

    def _rank(item: tuple[int, ValidationOption]) -> tuple[int, int]:
        index, option = item
        try:
            return PRIORITY.index(option.label), index
        except ValueError:
            return len(PRIORITY), index

    return [option for _, option in sorted(indexed, key=_rank)]


def discover_validation_commands(
    root: str | os.PathLike[str], *, configured: Sequence[str] = ()
) -> list[ValidationOption]:
    root_path = Path(root)
    if configured:
        return parse_configured_commands(configured)

    context = harvest_project_context(root_path)
    found: list[ValidationOption] = []
    package_manifest = next(
        (path for path in context.manifests if PurePosixPath(path).name == "package.json"), None
    )
    if package_manifest is not None:
        try:
            payload = json.loads((root_path / package_manifest).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            payload = None
        if isinstance(payload, Mapping):
            cwd = PurePosixPath(package_manifest).parent.as_posix()
            found.extend(package_script_options(payload, context.package_manager, cwd=cwd))
    found.extend(pyproject_options(root_path))
    found.extend(pre_commit_options(root_path))

    seen: set[str] = set()
    unique: list[ValidationOption] = []
    for option in found:
        if option.label in seen:
            continue
        seen.add(option.label)
        unique.append(option)

    if not unique:
        unique = compileall_fallback(root_path, context.files)
    return order_validation_options(unique)


__all__ = [
    "PRIORITY",
    "SKIP_VALIDATION",
    "SKIP_VALIDATION_LABEL",
    "ValidationOption",
    "compileall_fallback",
    "discover_validation_commands",
    "order_validation_options",
    "package_script_options",
    "parse_configured_commands",
    "pre_commit_options",
    "pyproject_options",
    "script_prefix",
]
