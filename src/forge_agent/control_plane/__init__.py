"""
forge-agent — control plane

File: src/forge_agent/control_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Public surface of the run pipeline: the coordinator, its session state and the
  host collaborator contracts.
"""

from forge_agent.control_plane.collaborators import (
    ConfirmationUI,
    FileSelection,
    FileSelectionUI,
    GitCLI,
    GitError,
    ValidationChoiceUI,
    VersionControl,
)
from forge_agent.control_plane.coordinator import (
    RunCoordinator,
    RunReport,
    StageError,
    build_commit_message,
    format_duration,
)
from forge_agent.control_plane.session import RunState, SessionContext

__all__ = [
    "ConfirmationUI",
    "FileSelection",
    "FileSelectionUI",
    "GitCLI",
    "GitError",
    "RunCoordinator",
    "RunReport",
    "RunState",
    "SessionContext",
    "StageError",
    "ValidationChoiceUI",
    "VersionControl",
    "build_commit_message",
    "format_duration",
]
