"""Instruction-driven file search: keywords, mentioned files and explicit path tokens."""

from __future__ import annotations

import os
import re
from pathlib import Path, PurePosixPath
from typing import Final

from forge_agent.knowledge_plane.workspace import is_blocked_path

KEYWORD_SEARCH_LIMIT: Final[int] = 3
KEYWORD_MAX_HITS: Final[int] = 5
KEYWORD_MAX_FILE_BYTES: Final[int] = 200_000

_STOPWORDS: Final[frozenset[str]] = frozenset(
    {
        "the",
        "a",
        "an",
        "and",
        "or",
        "to",
        "of",
        "for",
        "in",
        "on",
        "with",
        "add",
        "create",
        "update",
        "change",
        "fix",
        "make",
        "file",
        "files",
        "app",
    }
)

_ALLOWED_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {
        "py",
        "pyi",
        "ts",
        "tsx",
        "js",
        "jsx",
        "mjs",
        "cjs",
        "json",
        "md",
        "mdx",
        "rst",
        "css",
        "scss",
        "sass",
        "less",
        "html",
        "htm",
        "yml",
        "yaml",
        "toml",
        "ini",
        "cfg",
        "txt",
        "sh",
        "svg",
        "png",
        "jpg",
        "jpeg",
        "gif",
        "webp",
        "ico",
    }
)

_LIBRARY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "react",
        "react-dom",
        "vue",
        "vuejs",
        "angular",
        "svelte",
        "sveltekit",
        "next",
        "nextjs",
        "nuxt",
        "nuxtjs",
        "vite",
        "astro",
        "solid",
        "ember",
        "node",
        "express",
        "nestjs",
    }
)

_KEYWORD_SPLIT: Final[re.Pattern[str]] = re.compile(r"[^a-zA-Z0-9_-]+")
_BASENAME_SPLIT: Final[re.Pattern[str]] = re.compile(r"[^a-zA-Z0-9._-]+")
_EXPLICIT_PATH: Final[re.Pattern[str]] = re.compile(
    r"(?:^|[\s\"'`])([A-Za-z0-9._-]+(?:[\\/][A-Za-z0-9._-]+)*\.[A-Za-z0-9]{1,8})(?=$|[\s\"'`.,;:!?])"
)


def extract_keywords(instruction: str) -> list[str]:
    """Tokens longer than three characters that are not stopwords, in order."""

    return [
        token
        for token in (part.strip() for part in _KEYWORD_SPLIT.split(instruction))
        if len(token) > 3 and token.lower() not in _STOPWORDS
    ]


def extract_mentioned_files(instruction: str, files: list[str]) -> list[str]:
    """Files whose full path appears in the text, else files whose basename does."""

    lowered = instruction.lower()
    direct = [path for path in files if path.lower() in lowered]
    if direct:
        return direct
    return [
        path
        for path in files
        if (base := PurePosixPath(path).name.lower()) and base in lowered
    ]


def extract_explicit_paths(instruction: str) -> list[str]:
    """Path-like tokens with a known extension, even if the file does not exist yet."""

    found: dict[str, None] = {}
    for match in _EXPLICIT_PATH.finditer(instruction):
        raw = match.group(1)
        if not raw or "://" in raw:
            continue
        normalized = raw.replace("\\", "/")
        suffix = PurePosixPath(normalized).suffix.lower().lstrip(".")
        if suffix not in _ALLOWED_EXTENSIONS:
            continue
        if is_blocked_path(normalized):
            continue
        if PurePosixPath(normalized).stem.lower() in _LIBRARY_TOKENS:
            continue
        found.setdefault(normalized, None)
    return list(found)


def find_file_by_basename(instruction: str, files: list[str]) -> str | None:
    """First file whose basename starts with any token of the instruction."""

    for token in (part for part in _BASENAME_SPLIT.split(instruction) if part):
        lowered = token.lower()
        for path in files:
            if PurePosixPath(path).name.lower().startswith(lowered):
                return path
    return None


def find_files_by_keywords(
    instruction: str,
    root: str | os.PathLike[str],
    files: list[str],
    *,
    max_hits: int = KEYWORD_MAX_HITS,
    max_bytes: int = KEYWORD_MAX_FILE_BYTES,
) -> list[str]:
    """Files whose content mentions one of the first three keywords."""

    keywords = [keyword.lower() for keyword in extract_keywords(instruction)[:KEYWORD_SEARCH_LIMIT]]
    if not keywords:
        return []

    root_path = Path(root)
    hits: list[str] = []
    for relative in files:
        if len(hits) >= max_hits:
            break
        full_path = root_path / relative
        try:
            if not full_path.is_file() or full_path.stat().st_size > max_bytes:
                continue
            content = full_path.read_text(encoding="utf-8", errors="replace").lower()
        except OSError:
            continue
        if any(keyword in content for keyword in keywords):
            hits.append(relative)
    return hits


__all__ = [
    "KEYWORD_MAX_FILE_BYTES",
    "KEYWORD_MAX_HITS",
    "KEYWORD_SEARCH_LIMIT",
    "extract_explicit_paths",
    "extract_keywords",
    "extract_mentioned_files",
    "find_file_by_basename",
    "find_files_by_keywords",
]
