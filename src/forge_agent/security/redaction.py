"""
forge-agent — secret detection and redaction

File: src/forge_agent/security/redaction.py
Last updated: 2026-10-19

Purpose
- Scrub API keys, bearer tokens and credential assignments from text and nested
  structures before they reach a log line, a trace entry or the memory file.

Functional requirements
- Rules apply in a fixed order; redaction is idempotent for already-redacted input.
- Callers can ask whether anything was redacted so trace entries can be flagged.

Non-functional requirements
- Never raise on unexpected input types; unknown values are returned untouched.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class SecretFinding:
    """One secret-like match discovered during scanning."""

    rule: str
    start: int
    end: int


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="bearer_token",
        pattern=re.compile(r"(?i)(\bbearer\s+)([A-Za-z0-9\-._~+/]{8,}=*)"),
        sensitive_group=2,
    ),
    _TextRule(
        name="secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|refresh[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/-]{6,}=*)"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,255}\b")),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9_-]{16,255}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
)


def scan_for_secrets(text: str) -> tuple[SecretFinding, ...]:
    """Return secret-like matches in deterministic (start, end, rule) order."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    findings: list[SecretFinding] = []
    for rule in _TEXT_RULES:
        for match in rule.pattern.finditer(text):
            sample = match.group(rule.sensitive_group or 0)
            if sample == REDACTED_VALUE:
                continue
            start, end = match.span(rule.sensitive_group or 0)
            findings.append(SecretFinding(rule=rule.name, start=start, end=end))
    findings.sort(key=lambda item: (item.start, item.end, item.rule))
    return tuple(findings)


def contains_secret(text: str) -> bool:
    return bool(scan_for_secrets(text))


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Redact secret-like substrings. Idempotent for stable inputs."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")

    redacted = text
    for rule in _TEXT_RULES:
        redacted = _apply_rule(redacted, rule, replacement)
    return redacted


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    # Env var *names* are references, not secret values.
    if normalized.endswith("_env"):
        return False
    return any(term in normalized for term in SENSITIVE_KEY_TERMS)


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Return a deep-redacted copy; values under sensitive keys are replaced whole."""

    return _redact(value, key=None, replacement=replacement, depth=0)


def _redact(value: object, *, key: str | None, replacement: str, depth: int) -> object:
    if depth > 32:
        return replacement
    if key is not None and isinstance(value, str) and value and is_sensitive_key(key):
        return replacement
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        return {
            str(item_key): _redact(
                item_value, key=str(item_key), replacement=replacement, depth=depth + 1
            )
            for item_key, item_value in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            _redact(item, key=None, replacement=replacement, depth=depth + 1) for item in value
        ]
    return value


def _apply_rule(text: str, rule: _TextRule, replacement: str) -> str:
    if rule.sensitive_group is None:
        return rule.pattern.sub(replacement, text)

    group = rule.sensitive_group

    def _replace(match: re.Match[str]) -> str:
        if match.group(group) == replacement:
            return match.group(0)
        start, end = match.span(group)
        offset = match.start(0)
        whole = match.group(0)
        return whole[: start - offset] + replacement + whole[end - offset :]

    return rule.pattern.sub(_replace, text)


def _normalize_key(key: str) -> str:
    spaced = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key)
    return _NON_ALNUM.sub("_", spaced.lower()).strip("_")


__all__ = [
    "REDACTED_VALUE",
    "SENSITIVE_KEY_TERMS",
    "SecretFinding",
    "contains_secret",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
