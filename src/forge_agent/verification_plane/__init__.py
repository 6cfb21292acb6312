"""
forge-agent — verification plane public API.

File: src/forge_agent/verification_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Export the command executor, validation discovery, the auto-fix loop and the verifier.

Functional requirements
- Validation commands are the project's own; nothing here installs or builds.

Non-functional requirements
- Keep import-time behavior deterministic and lightweight.
"""

from forge_agent.verification_plane.commands import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)
from forge_agent.verification_plane.discovery import (
    SKIP_VALIDATION,
    ValidationOption,
    discover_validation_commands,
    order_validation_options,
)
from forge_agent.verification_plane.validation import (
    LoopReport,
    ValidationAutoFixLoop,
    ValidationRunner,
    run_validation_first_fix,
)
from forge_agent.verification_plane.verifier import Verifier

__all__ = [
    "SKIP_VALIDATION",
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "LoopReport",
    "ValidationAutoFixLoop",
    "ValidationOption",
    "ValidationRunner",
    "Verifier",
    "discover_validation_commands",
    "order_validation_options",
    "run_validation_first_fix",
]
