"""
forge-agent — configuration schema and validation.

File: src/forge_agent/config/schema.py
Last updated: 2026-10-19

Purpose
- Define built-in defaults, the auto/balanced/manual profile overlays and strict
  validation rules, and resolve a validated mapping into ``ForgeSettings``.

Functional requirements
- Validate payloads and return structured issues (field path + message).
- Partial validation for profile overlays; full validation for effective config.
- Reject embedded secret values; provider credentials are referenced via ``*_env``.

Non-functional requirements
- Deterministic merge order and issue order so errors are easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from forge_agent.security.redaction import redact_structure

BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("auto", "balanced", "manual")
DEFAULT_PROFILE: Final[str] = "balanced"
CLARIFY_GATES: Final[tuple[str, ...]] = ("always", "very-unclear")
PROVIDER_KINDS: Final[tuple[str, ...]] = ("openai",)
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")

_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "apikey",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
    "token",
)

_RuleKind = Literal["bool", "int", "float", "str", "enum", "env", "str_list"]


@dataclass(frozen=True, slots=True)
class _Rule:
    kind: _RuleKind
    minimum: float | None = None
    choices: tuple[str, ...] = ()
    allow_empty: bool = False


_SECTION_RULES: Final[dict[str, dict[str, _Rule]]] = {
    "agent": {
        "profile": _Rule("str"),
        "enable_multi_file": _Rule("bool"),
        "skip_confirmations": _Rule("bool"),
        "skip_create_file_picker": _Rule("bool"),
        "intent_use_llm": _Rule("bool"),
        "enable_git_workflow": _Rule("bool"),
    },
    "clarify": {
        "before_edit": _Rule("bool"),
        "only_if": _Rule("enum", choices=CLARIFY_GATES),
        "max_rounds": _Rule("int", minimum=1),
        "max_questions": _Rule("int", minimum=1),
        "suggest_answers": _Rule("bool"),
        "confirm_suggestions": _Rule("bool"),
        "auto_assume": _Rule("bool"),
    },
    "updates": {
        "max_files_per_update": _Rule("int", minimum=1),
        "max_update_chars": _Rule("int", minimum=1000),
        "json_max_retries": _Rule("int", minimum=0),
    },
    "validation": {
        "auto": _Rule("bool"),
        "auto_fix": _Rule("bool"),
        "auto_fix_max_retries": _Rule("int", minimum=0),
        "verify_after": _Rule("bool"),
        "timeout_seconds": _Rule("float", minimum=1),
        "max_output_chars": _Rule("int", minimum=1000),
        "commands": _Rule("str_list"),
    },
    "memory": {
        "enabled": _Rule("bool"),
        "max_entries": _Rule("int", minimum=1),
        "max_chars": _Rule("int", minimum=500),
        "compaction_target_entries": _Rule("int", minimum=1),
        "include_compacted": _Rule("bool"),
    },
    "context": {
        "chat_history_max_messages": _Rule("int", minimum=0),
        "chat_history_max_chars": _Rule("int", minimum=0),
        "retrieval_rank_enabled": _Rule("bool"),
    },
    "summaries": {
        "plan": _Rule("bool"),
        "action_purpose": _Rule("bool"),
        "human": _Rule("bool"),
    },
    "observability": {
        "log_level": _Rule("enum", choices=LOG_LEVELS),
        "log_dir": _Rule("str"),
        "log_to_stdout": _Rule("bool"),
        "trace_enabled": _Rule("bool"),
    },
    "provider": {
        "kind": _Rule("enum", choices=PROVIDER_KINDS),
        "model": _Rule("str"),
        "api_key_env": _Rule("env"),
        "base_url": _Rule("str", allow_empty=True),
        "timeout_seconds": _Rule("float", minimum=1),
        "max_retries": _Rule("int", minimum=0),
        "max_input_tokens": _Rule("int", minimum=0),
    },
}

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "agent": {
        "profile": DEFAULT_PROFILE,
        "enable_multi_file": True,
        "skip_confirmations": False,
        "skip_create_file_picker": False,
        "intent_use_llm": False,
        "enable_git_workflow": False,
    },
    "clarify": {
        "before_edit": True,
        "only_if": "very-unclear",
        "max_rounds": 3,
        "max_questions": 6,
        "suggest_answers": False,
        "confirm_suggestions": True,
        "auto_assume": True,
    },
    "updates": {
        "max_files_per_update": 6,
        "max_update_chars": 60000,
        "json_max_retries": 3,
    },
    "validation": {
        "auto": True,
        "auto_fix": True,
        "auto_fix_max_retries": 2,
        "verify_after": True,
        "timeout_seconds": 600.0,
        "max_output_chars": 20000,
        "commands": [],
    },
    "memory": {
        "enabled": True,
        "max_entries": 30,
        "max_chars": 20000,
        "compaction_target_entries": 15,
        "include_compacted": True,
    },
    "context": {
        "chat_history_max_messages": 8,
        "chat_history_max_chars": 8000,
        "retrieval_rank_enabled": True,
    },
    "summaries": {
        "plan": True,
        "action_purpose": False,
        "human": True,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".forge/logs",
        "log_to_stdout": False,
        "trace_enabled": True,
    },
    "provider": {
        "kind": "openai",
        "model": "gpt-4.1-mini",
        "api_key_env": "OPENAI_API_KEY",
        "base_url": "",
        "timeout_seconds": 120.0,
        "max_retries": 2,
        "max_input_tokens": 0,
    },
    "profiles": {
        "auto": {
            "agent": {
                "enable_multi_file": True,
                "skip_confirmations": True,
                "skip_create_file_picker": True,
                "intent_use_llm": True,
            },
            "validation": {"auto": True, "auto_fix": True, "auto_fix_max_retries": 3},
            "clarify": {
                "before_edit": True,
                "only_if": "always",
                "auto_assume": True,
                "suggest_answers": True,
                "confirm_suggestions": False,
                "max_questions": 6,
                "max_rounds": 3,
            },
        },
        "balanced": {},
        "manual": {
            "agent": {
                "enable_multi_file": False,
                "skip_confirmations": False,
                "skip_create_file_picker": False,
                "intent_use_llm": True,
            },
            "validation": {"auto": False, "auto_fix": False},
            "clarify": {
                "before_edit": True,
                "only_if": "always",
                "auto_assume": False,
                "suggest_answers": False,
                "confirm_suggestions": True,
                "max_questions": 4,
                "max_rounds": 2,
            },
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class ProviderSettings:
    kind: str
    model: str
    api_key_env: str
    base_url: str | None
    timeout_seconds: float
    max_retries: int
    # 0 in config; trimming is off when None.
    max_input_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class ForgeSettings:
    """Immutable, fully-defaulted settings resolved once per run."""

    profile: str
    enable_multi_file: bool
    skip_confirmations: bool
    skip_create_file_picker: bool
    intent_use_llm: bool
    enable_git_workflow: bool
    clarify_before_edit: bool
    clarify_only_if: str
    clarify_max_rounds: int
    clarify_max_questions: int
    clarify_suggest_answers: bool
    clarify_confirm_suggestions: bool
    clarify_auto_assume: bool
    max_files_per_update: int
    max_update_chars: int
    json_max_retries: int
    auto_validation: bool
    auto_fix_validation: bool
    auto_fix_max_retries: int
    verify_after_validation: bool
    validation_timeout_seconds: float
    validation_max_output_chars: int
    validation_commands: tuple[str, ...]
    enable_memory: bool
    memory_max_entries: int
    memory_max_chars: int
    memory_compaction_target_entries: int
    memory_include_compacted: bool
    chat_history_max_messages: int
    chat_history_max_chars: int
    retrieval_rank_enabled: bool
    plan_summary_enabled: bool
    action_purpose_enabled: bool
    human_summary_enabled: bool
    log_level: str
    log_dir: str
    log_to_stdout: bool
    trace_enabled: bool
    provider: ProviderSettings

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ForgeSettings:
        """Build settings from a mapping that already passed ``assert_valid_config``."""

        agent = config["agent"]
        clarify = config["clarify"]
        updates = config["updates"]
        validation = config["validation"]
        memory = config["memory"]
        context = config["context"]
        summaries = config["summaries"]
        observability = config["observability"]
        provider = config["provider"]
        return cls(
            profile=str(agent["profile"]),
            enable_multi_file=agent["enable_multi_file"],
            skip_confirmations=agent["skip_confirmations"],
            skip_create_file_picker=agent["skip_create_file_picker"],
            intent_use_llm=agent["intent_use_llm"],
            enable_git_workflow=agent["enable_git_workflow"],
            clarify_before_edit=clarify["before_edit"],
            clarify_only_if=clarify["only_if"],
            clarify_max_rounds=clarify["max_rounds"],
            clarify_max_questions=clarify["max_questions"],
            clarify_suggest_answers=clarify["suggest_answers"],
            clarify_confirm_suggestions=clarify["confirm_suggestions"],
            clarify_auto_assume=clarify["auto_assume"],
            max_files_per_update=updates["max_files_per_update"],
            max_update_chars=updates["max_update_chars"],
            json_max_retries=updates["json_max_retries"],
            auto_validation=validation["auto"],
            auto_fix_validation=validation["auto_fix"],
            auto_fix_max_retries=validation["auto_fix_max_retries"],
            verify_after_validation=validation["verify_after"],
            validation_timeout_seconds=float(validation["timeout_seconds"]),
            validation_max_output_chars=validation["max_output_chars"],
            validation_commands=tuple(validation["commands"]),
            enable_memory=memory["enabled"],
            memory_max_entries=memory["max_entries"],
            memory_max_chars=memory["max_chars"],
            memory_compaction_target_entries=memory["compaction_target_entries"],
            memory_include_compacted=memory["include_compacted"],
            chat_history_max_messages=context["chat_history_max_messages"],
            chat_history_max_chars=context["chat_history_max_chars"],
            retrieval_rank_enabled=context["retrieval_rank_enabled"],
            plan_summary_enabled=summaries["plan"],
            action_purpose_enabled=summaries["action_purpose"],
            human_summary_enabled=summaries["human"],
            log_level=observability["log_level"],
            log_dir=observability["log_dir"],
            log_to_stdout=observability["log_to_stdout"],
            trace_enabled=observability["trace_enabled"],
            provider=ProviderSettings(
                kind=provider["kind"],
                model=provider["model"],
                api_key_env=provider["api_key_env"],
                base_url=provider["base_url"] or None,
                timeout_seconds=float(provider["timeout_seconds"]),
                max_retries=provider["max_retries"],
                max_input_tokens=provider["max_input_tokens"] or None,
            ),
        )


def default_config() -> dict[str, Any]:
    """Return a deep copy of built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def default_settings() -> ForgeSettings:
    return ForgeSettings.from_config(assert_valid_config(default_config()))


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def profile_overlay(config: Mapping[str, object], profile: str) -> dict[str, Any]:
    """Return the named overlay from ``config['profiles']``."""

    selected = profile.strip()
    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay = profiles.get(selected)
    if overlay is None:
        known = ", ".join(sorted(str(name) for name in profiles))
        raise ConfigValidationError(
            (
                ConfigValidationIssue(
                    "profiles", f"profile {selected!r} is not defined; known: {known}"
                ),
            )
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return _deep_copy_mapping(overlay)


def validate_config(
    config: Mapping[str, object] | object, *, partial: bool = False
) -> tuple[dict[str, Any] | None, tuple[ConfigValidationIssue, ...]]:
    """Validate ``config`` and return ``(normalized, issues)``."""

    issues = _IssueCollector()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {type(config).__name__}")
        return None, issues.items()

    normalized = _validate_root(config, issues, partial=partial)
    if issues.has_issues:
        return None, issues.items()
    return normalized, ()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    normalized, issues = validate_config(config)
    if normalized is None:
        raise ConfigValidationError(issues)
    return normalized


def dump_redacted(config: Mapping[str, object]) -> dict[str, Any]:
    """Return a redacted copy suitable for ``forge config show`` and logs."""

    redacted = redact_structure(dict(config))
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(
    payload: Mapping[str, object], issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = set(_SECTION_RULES) | {"profiles"}
    _reject_unknown_keys(payload, allowed, "", issues)

    out: dict[str, Any] = {}
    for section in sorted(_SECTION_RULES):
        raw = payload.get(section)
        if raw is None:
            if not partial:
                issues.add(section, "missing required section")
            continue
        if not isinstance(raw, Mapping):
            issues.add(section, f"expected object, got {type(raw).__name__}")
            continue
        out[section] = _validate_section(raw, section, issues, partial=partial)

    profiles = payload.get("profiles")
    if profiles is not None:
        out["profiles"] = _validate_profiles(profiles, issues)

    if not partial and not issues.has_issues:
        _validate_cross_fields(out, issues)
    return out


def _validate_section(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    rules = _SECTION_RULES[path]
    _reject_unknown_keys(payload, set(rules), path, issues)
    out: dict[str, Any] = {}
    for key in sorted(rules):
        key_path = _join(path, key)
        if key not in payload:
            if not partial:
                issues.add(key_path, "missing required field")
            continue
        parsed = _coerce(payload[key], rules[key], key_path, issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_profiles(value: object, issues: _IssueCollector) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        issues.add("profiles", f"expected object, got {type(value).__name__}")
        return {}
    out: dict[str, Any] = {}
    for name in sorted(value):
        path = _join("profiles", str(name))
        if not isinstance(name, str) or not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(path, "profile names must match [a-z][a-z0-9_-]*")
            continue
        overlay = value[name]
        if not isinstance(overlay, Mapping):
            issues.add(path, "profile overlay must be an object")
            continue
        if "profiles" in overlay:
            issues.add(_join(path, "profiles"), "profile overlays cannot nest profiles")
            continue
        nested = _IssueCollector()
        normalized = _validate_root(overlay, nested, partial=True)
        for item in nested.items():
            issues.add(_join(path, item.path), item.message)
        out[name] = normalized
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    memory = config.get("memory", {})
    target = memory.get("compaction_target_entries")
    maximum = memory.get("max_entries")
    if isinstance(target, int) and isinstance(maximum, int) and target > maximum:
        issues.add(
            "memory.compaction_target_entries",
            "must be <= memory.max_entries",
        )


def _coerce(value: object, rule: _Rule, path: str, issues: _IssueCollector) -> object | None:
    if rule.kind == "bool":
        if isinstance(value, bool):
            return value
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    if rule.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            issues.add(path, f"expected integer, got {type(value).__name__}")
            return None
        if rule.minimum is not None and value < rule.minimum:
            issues.add(path, f"must be >= {int(rule.minimum)}")
            return None
        return value
    if rule.kind == "float":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            issues.add(path, f"expected number, got {type(value).__name__}")
            return None
        parsed = float(value)
        if not math.isfinite(parsed):
            issues.add(path, "must be finite")
            return None
        if rule.minimum is not None and parsed < rule.minimum:
            issues.add(path, f"must be >= {rule.minimum}")
            return None
        return parsed
    if rule.kind == "str_list":
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            issues.add(path, "expected a list of strings")
            return None
        return [item.strip() for item in value if item.strip()]

    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text and not rule.allow_empty:
        issues.add(path, "must not be empty")
        return None
    if rule.kind == "enum" and text not in rule.choices:
        expected = ", ".join(sorted(rule.choices))
        issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
        return None
    if rule.kind == "env" and not _ENV_NAME_PATTERN.fullmatch(text):
        issues.add(path, "must be an env var name (example: OPENAI_API_KEY)")
        return None
    return text


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(str(item) for item in payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = key.strip().lower().replace("-", "_")
    if normalized.endswith("_env"):
        return False
    return any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES)


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {str(key): copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CLARIFY_GATES",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "DEFAULT_PROFILE",
    "ForgeSettings",
    "ProviderSettings",
    "assert_valid_config",
    "default_config",
    "default_settings",
    "dump_redacted",
    "merge_config",
    "profile_overlay",
    "validate_config",
]
