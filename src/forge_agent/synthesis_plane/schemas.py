"""JSON schemas for every structured model response, with retry hints and safe fallbacks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final


@dataclass(frozen=True, slots=True)
class JsonContract:
    """A named schema plus the compact hint and empty fallback used by strict retries."""

    name: str
    schema: Mapping[str, Any]
    hint: str
    fallback: str


def _string_array() -> dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}}


FILE_SELECTION_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"files": _string_array()},
    "required": ["files"],
    "additionalProperties": False,
}

FILE_UPDATE_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "files": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
                "required": ["path", "content"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["files"],
    "additionalProperties": False,
}

INTENT_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "intent": {"type": "string", "enum": ["edit", "question", "fix"]},
        "confidence": {"type": "number"},
    },
    "required": ["intent"],
    "additionalProperties": False,
}

CLARIFICATION_SCHEMA: Final[dict[str, Any]] = {
    "oneOf": [
        {
            "type": "object",
            "properties": {"kind": {"const": "proceed"}},
            "required": ["kind"],
            "additionalProperties": False,
        },
        {
            "type": "object",
            "properties": {"kind": {"const": "clarification"}, "questions": _string_array()},
            "required": ["kind", "questions"],
            "additionalProperties": False,
        },
    ]
}

CLARIFICATION_SUGGEST_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"answers": _string_array(), "plan": _string_array()},
    "required": ["answers", "plan"],
    "additionalProperties": False,
}

DISAMBIGUATION_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "options": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"label": {"type": "string"}, "instruction": {"type": "string"}},
                "required": ["label"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["options"],
    "additionalProperties": False,
}

PLAN_SUMMARY_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"plan": _string_array()},
    "required": ["plan"],
    "additionalProperties": False,
}

VERIFICATION_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["pass", "fail"]},
        "issues": _string_array(),
        "confidence": {"type": "string", "enum": ["low", "medium", "high"]},
    },
    "required": ["status", "issues"],
    "additionalProperties": False,
}

RETRIEVAL_RANK_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"ordered": _string_array()},
    "required": ["ordered"],
    "additionalProperties": False,
}

MEMORY_SUMMARY_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {"bullets": _string_array()},
    "required": ["bullets"],
    "additionalProperties": False,
}


FILE_SELECTION: Final = JsonContract(
    "file_selection", FILE_SELECTION_SCHEMA, '{"files":["path1","path2"]}', '{"files":[]}'
)
FILE_UPDATE: Final = JsonContract(
    "file_update",
    FILE_UPDATE_SCHEMA,
    '{"files":[{"path":"...","content":"..."}]}',
    '{"files":[]}',
)
INTENT: Final = JsonContract(
    "intent", INTENT_SCHEMA, '{"intent":"edit|question|fix","confidence":0.5}', '{"intent":"edit"}'
)
CLARIFICATION: Final = JsonContract(
    "clarification",
    CLARIFICATION_SCHEMA,
    '{"kind":"proceed"} or {"kind":"clarification","questions":["..."]}',
    '{"kind":"proceed"}',
)
CLARIFICATION_SUGGESTION: Final = JsonContract(
    "clarification_suggestion",
    CLARIFICATION_SUGGEST_SCHEMA,
    '{"answers":["..."],"plan":["..."]}',
    '{"answers":[],"plan":[]}',
)
DISAMBIGUATION: Final = JsonContract(
    "disambiguation",
    DISAMBIGUATION_SCHEMA,
    '{"options":[{"label":"...","instruction":"..."}]}',
    '{"options":[]}',
)
PLAN_SUMMARY: Final = JsonContract(
    "plan_summary", PLAN_SUMMARY_SCHEMA, '{"plan":["step1","step2"]}', '{"plan":[]}'
)
VERIFICATION: Final = JsonContract(
    "verification",
    VERIFICATION_SCHEMA,
    '{"status":"pass|fail","issues":["..."],"confidence":"low|medium|high"}',
    '{"status":"pass","issues":[]}',
)
RETRIEVAL_RANK: Final = JsonContract(
    "retrieval_rank", RETRIEVAL_RANK_SCHEMA, '{"ordered":["path1","path2"]}', '{"ordered":[]}'
)
MEMORY_SUMMARY: Final = JsonContract(
    "memory_summary", MEMORY_SUMMARY_SCHEMA, '{"bullets":["..."]}', '{"bullets":[]}'
)


__all__ = [
    "CLARIFICATION",
    "CLARIFICATION_SCHEMA",
    "CLARIFICATION_SUGGESTION",
    "CLARIFICATION_SUGGEST_SCHEMA",
    "DISAMBIGUATION",
    "DISAMBIGUATION_SCHEMA",
    "FILE_SELECTION",
    "FILE_SELECTION_SCHEMA",
    "FILE_UPDATE",
    "FILE_UPDATE_SCHEMA",
    "INTENT",
    "INTENT_SCHEMA",
    "JsonContract",
    "MEMORY_SUMMARY",
    "MEMORY_SUMMARY_SCHEMA",
    "PLAN_SUMMARY",
    "PLAN_SUMMARY_SCHEMA",
    "RETRIEVAL_RANK",
    "RETRIEVAL_RANK_SCHEMA",
    "VERIFICATION",
    "VERIFICATION_SCHEMA",
]
