from __future__ import annotations

from pathlib import Path

from forge_agent.knowledge_plane.file_search import (
    extract_explicit_paths,
    extract_keywords,
    extract_mentioned_files,
    find_file_by_basename,
    find_files_by_keywords,
)
from tests.fakes import write_files

FILES = ["src/app.py", "src/utils/io.py", "tests/test_app.py", "README.md"]


def test_keywords_skip_short_tokens_and_stopwords() -> None:
    assert extract_keywords("Add a retry helper to the client file") == ["retry", "helper", "client"]


def test_mentioned_files_prefer_full_paths() -> None:
    assert extract_mentioned_files("look at src/app.py please", FILES) == ["src/app.py"]
    assert extract_mentioned_files("what is in io.py", FILES) == ["src/utils/io.py"]
    assert extract_mentioned_files("nothing here", FILES) == []


def test_explicit_paths_filter_urls_libraries_and_blocked_dirs() -> None:
    text = (
        "update src/new_module.py and docs\\guide.md, not https://example.com/x.js, "
        "react.js, node_modules/a/b.js or notes.xyz"
    )
    assert extract_explicit_paths(text) == ["src/new_module.py", "docs/guide.md"]


def test_explicit_paths_are_unique_and_ordered() -> None:
    assert extract_explicit_paths("a.py then b.py then a.py.") == ["a.py", "b.py"]


def test_find_file_by_basename_prefix() -> None:
    assert find_file_by_basename("open READ", FILES) == "README.md"
    assert find_file_by_basename("zzz", FILES) is None


def test_keyword_content_search(tmp_path: Path) -> None:
    write_files(
        tmp_path,
        {
            "src/client.py": "def retry_request():\n    ...\n",
            "src/other.py": "VALUE = 1\n",
            "src/big.py": "retry" + "x" * 300,
        },
    )
    files = ["src/client.py", "src/other.py", "src/big.py", "src/missing.py"]

    assert find_files_by_keywords("make the retry smarter", tmp_path, files) == [
        "src/client.py",
        "src/big.py",
    ]
    assert find_files_by_keywords("make the retry smarter", tmp_path, files, max_bytes=100) == [
        "src/client.py"
    ]
    assert find_files_by_keywords("make the retry smarter", tmp_path, files, max_hits=1) == [
        "src/client.py"
    ]
    assert find_files_by_keywords("a to b", tmp_path, files) == []
