from __future__ import annotations

import json
from pathlib import Path

from forge_agent.knowledge_plane.workspace import (
    harvest_project_context,
    is_blocked_path,
    list_workspace_files,
    read_file_preview,
)
from tests.fakes import write_files


def test_blocked_paths() -> None:
    assert is_blocked_path("node_modules/react/index.js")
    assert is_blocked_path("pkg\\__pycache__\\mod.pyc")
    assert is_blocked_path(".forge/memory.json")
    assert not is_blocked_path("src/build_tools.py")


def test_listing_is_sorted_and_skips_blocked_directories(tmp_path: Path) -> None:
    write_files(
        tmp_path,
        {
            "b.py": "",
            "a.py": "",
            "src/app.py": "",
            ".git/config": "",
            "node_modules/x/index.js": "",
            "src/deep/er/still/hidden.py": "",
        },
    )

    assert list_workspace_files(tmp_path, max_depth=2) == ["a.py", "b.py", "src/app.py"]
    assert list_workspace_files(tmp_path, max_files=2) == ["a.py", "b.py"]
    assert "src/deep/er/still/hidden.py" in list_workspace_files(tmp_path)
    assert list_workspace_files(tmp_path / "missing") == []


def test_read_file_preview(tmp_path: Path) -> None:
    write_files(tmp_path, {"long.txt": "x" * 50, "empty.txt": ""})
    assert read_file_preview(tmp_path, "long.txt", 10) == "x" * 10 + "\n... (truncated)"
    assert read_file_preview(tmp_path, "long.txt", 100) == "x" * 50
    assert read_file_preview(tmp_path, "empty.txt", 10) is None
    assert read_file_preview(tmp_path, "missing.txt", 10) is None


def test_harvest_detects_node_stack(tmp_path: Path) -> None:
    package = {"dependencies": {"react": "^18"}, "devDependencies": {"express": "^4"}}
    write_files(tmp_path, {"package.json": json.dumps(package), "yarn.lock": "", "src/App.tsx": ""})

    context = harvest_project_context(tmp_path, active_file="src/App.tsx")

    assert context.package_manager == "yarn"
    assert context.frontend_framework == "react"
    assert context.backend_framework == "express"
    assert context.manifests == ("package.json",)
    assert "src/App.tsx" in context.files
    assert json.loads(context.prompt_json())["activeEditorFile"] == "src/App.tsx"


def test_harvest_prefers_declared_package_manager(tmp_path: Path) -> None:
    write_files(tmp_path, {"package.json": json.dumps({"packageManager": "pnpm@9.1.0"})})
    assert harvest_project_context(tmp_path).package_manager == "pnpm"


def test_harvest_detects_python_stack(tmp_path: Path) -> None:
    write_files(
        tmp_path,
        {
            "pyproject.toml": '[project]\nname = "svc"\ndependencies = ["FastAPI>=0.110", "pydantic"]\n',
            "uv.lock": "",
        },
    )

    context = harvest_project_context(tmp_path)

    assert context.package_manager == "uv"
    assert context.backend_framework == "fastapi"
    assert context.frontend_framework is None
    assert context.manifests == ("pyproject.toml",)


def test_harvest_empty_workspace(tmp_path: Path) -> None:
    context = harvest_project_context(tmp_path)
    assert context.files == ()
    assert context.package_manager is None
