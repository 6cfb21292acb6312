"""
forge-agent — runtime config loader.

File: src/forge_agent/config/loader.py
Last updated: 2026-10-19

Purpose
- Load effective settings from defaults, the selected profile, ``forge.toml``,
  ``FORGE_*`` environment variables and CLI overrides.

Functional requirements
- Precedence: CLI > env > file > profile overlay > defaults. A value the user sets
  explicitly always beats the profile default for the same option.
- Profile selection: explicit argument > ``FORGE_PROFILE`` > ``[agent] profile`` > balanced.
- Redacted deterministic dump of the effective config.

Non-functional requirements
- Loading is deterministic; environment bindings are derived from the defaults.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from forge_agent.config.schema import (
    DEFAULT_PROFILE,
    ConfigValidationError,
    ForgeSettings,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    profile_overlay,
    validate_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "forge.toml"
ENV_PREFIX: Final[str] = "FORGE_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})

_ValueType = Literal["str", "int", "float", "bool", "str_list"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: _ValueType


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config mapping."""

    resolved_path = _resolve_config_path(config_path, repo_root)
    env_map = dict(os.environ if environ is None else environ)
    cli_map = dict(cli_overrides or {})

    file_payload = _load_toml_file(resolved_path, required=config_path is not None)
    file_check, file_issues = validate_config(file_payload, partial=True)
    if file_check is None:
        raise ConfigValidationError(file_issues)

    base = default_config()
    if "profiles" in file_payload:
        base["profiles"] = merge_config(base["profiles"], file_payload["profiles"])

    selected = _resolve_profile(
        profile=profile, cli_overrides=cli_map, environ=env_map, file_payload=file_payload
    )
    merged = merge_config(base, profile_overlay(base, selected))
    merged = merge_config(merged, file_payload)
    merged = merge_config(merged, _collect_env_overrides(merged, env_map))
    merged = merge_config(merged, _materialize_cli_overrides(cli_map))
    merged["agent"]["profile"] = selected
    return assert_valid_config(merged)


def load_settings(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ForgeSettings:
    """Resolve config into the immutable settings object used for one run."""

    return ForgeSettings.from_config(
        load_config(
            config_path,
            repo_root=repo_root,
            profile=profile,
            cli_overrides=cli_overrides,
            environ=environ,
        )
    )


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return an indented JSON dump of the redacted effective config."""

    return json.dumps(dump_redacted(config), sort_keys=True, indent=2, ensure_ascii=False)


def _resolve_config_path(config_path: str | Path | None, repo_root: str | Path | None) -> Path:
    if config_path is not None:
        return Path(config_path).expanduser().resolve()
    base = Path(repo_root) if repo_root is not None else Path.cwd()
    return (base / DEFAULT_CONFIG_FILE).resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc
    return parsed


def _resolve_profile(
    *,
    profile: str | None,
    cli_overrides: Mapping[str, object],
    environ: Mapping[str, str],
    file_payload: Mapping[str, object],
) -> str:
    candidates: list[object] = [profile, cli_overrides.get("profile")]
    candidates.append(environ.get(f"{ENV_PREFIX}PROFILE"))
    agent = file_payload.get("agent")
    if isinstance(agent, Mapping):
        candidates.append(agent.get("profile"))

    for candidate in candidates:
        if candidate is None:
            continue
        if not isinstance(candidate, str):
            raise ConfigLoadError("profile must be a string")
        selected = candidate.strip()
        if selected:
            return selected
    return DEFAULT_PROFILE


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        _set_nested(overrides, binding.path, _coerce_env(raw, binding, env_name))
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}
    for path, value in _iter_scalar_paths(config):
        if path[0] == "profiles" or path == ("agent", "profile"):
            continue
        kind = _kind_for_value(value)
        if kind is None:
            continue
        bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)
    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> _ValueType | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    if isinstance(value, list):
        return "str_list"
    return None


def _coerce_env(raw: str, binding: _Binding, env_name: str) -> object:
    value = raw.strip()
    dotted = ".".join(binding.path)
    if binding.value_type == "str":
        return value
    if binding.value_type == "str_list":
        return [item.strip() for item in value.split(",") if item.strip()]
    if binding.value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be an integer") from exc
    if binding.value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {dotted} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{env_name} -> {dotted} must be a boolean (1/0/true/false/yes/no/on/off)")


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if len(path) < 2:
            raise ConfigLoadError(f"invalid CLI override key {key!r}; expected section.field")
        _set_nested(payload, path, cli_overrides[key])
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "load_settings",
]
