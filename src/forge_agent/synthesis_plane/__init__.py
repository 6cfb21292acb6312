"""
forge-agent — synthesis plane

File: src/forge_agent/synthesis_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Synthesis plane: model providers, the structured-output retry client, intent
  classification, clarification, update orchestration, question answering and summaries.

Functional requirements
- Must be provider-agnostic through adapters.

Non-functional requirements
- Importing the package must not pull in the stage modules; import them directly.
"""

from forge_agent.synthesis_plane.json_retry import (
    DEFAULT_MAX_JSON_RETRIES,
    JsonParseError,
    JsonRetryClient,
)
from forge_agent.synthesis_plane.schemas import JsonContract

__all__ = [
    "DEFAULT_MAX_JSON_RETRIES",
    "JsonContract",
    "JsonParseError",
    "JsonRetryClient",
]
