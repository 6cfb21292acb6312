"""
forge-agent — knowledge plane

File: src/forge_agent/knowledge_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Knowledge plane: workspace listing, project context, file search and targeting,
  relevance ranking, and persistent run memory.

Functional requirements
- Must serve the clarification, targeting and update stages with deterministic context.

Non-functional requirements
- Must stay lightweight on a single machine; no index is persisted besides memory.
"""

from forge_agent.knowledge_plane.file_search import (
    extract_explicit_paths,
    extract_keywords,
    extract_mentioned_files,
    find_file_by_basename,
    find_files_by_keywords,
)
from forge_agent.knowledge_plane.memory import (
    MemoryOptions,
    MemoryState,
    MemoryStore,
    memory_file_path,
    render_memory_context,
)
from forge_agent.knowledge_plane.retrieval import (
    RelevanceRanker,
    RetrievalResult,
    SourceSnippet,
    collect_relevant_snippets,
)
from forge_agent.knowledge_plane.targeting import (
    FileTargetResolver,
    PathPolicyError,
    TargetResolution,
    compute_auto_selection,
    disambiguate_candidate_paths,
    resolve_workspace_path,
    should_allow_new_files,
    suggest_files_for_instruction,
)
from forge_agent.knowledge_plane.workspace import (
    BLOCKED_DIRECTORIES,
    ProjectContext,
    harvest_project_context,
    is_blocked_path,
    list_workspace_files,
    read_file_preview,
)

__all__ = [
    "BLOCKED_DIRECTORIES",
    "FileTargetResolver",
    "MemoryOptions",
    "MemoryState",
    "MemoryStore",
    "PathPolicyError",
    "ProjectContext",
    "RelevanceRanker",
    "RetrievalResult",
    "SourceSnippet",
    "TargetResolution",
    "collect_relevant_snippets",
    "compute_auto_selection",
    "disambiguate_candidate_paths",
    "extract_explicit_paths",
    "extract_keywords",
    "extract_mentioned_files",
    "find_file_by_basename",
    "find_files_by_keywords",
    "harvest_project_context",
    "is_blocked_path",
    "list_workspace_files",
    "memory_file_path",
    "read_file_preview",
    "render_memory_context",
    "resolve_workspace_path",
    "should_allow_new_files",
    "suggest_files_for_instruction",
]
