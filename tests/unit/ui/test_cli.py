"""
forge-agent — CLI router tests

File: tests/unit/ui/test_cli.py
Last updated: 2026-10-19

Purpose
- Exercise argument parsing, command handlers and exit-code mapping in-process.

Functional requirements
- No model calls: only commands and instructions that never reach the provider.
"""

from __future__ import annotations

import io
import json
import sys
from collections import deque
from pathlib import Path

import pytest

from forge_agent.control_plane import RunCoordinator, RunReport
from forge_agent.domain.models import Intent, ValidationResult
from forge_agent.main import ExitCode
from forge_agent.synthesis_plane.json_retry import JsonParseError, JsonRetryClient
from forge_agent.synthesis_plane.providers.base import ProviderAuthenticationError
from forge_agent.ui.cli import (
    build_parser,
    chat_loop,
    exit_code_for,
    report_payload,
    run_cli,
)
from forge_agent.ui.render import create_renderer
from tests.fakes import ScriptedProvider, make_settings, write_files


@pytest.fixture(autouse=True)
def _no_forge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FORGE_PROFILE", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def _configure_commands(root: Path, *commands: str) -> None:
    rendered = ", ".join(json.dumps(command) for command in commands)
    write_files(root, {"forge.toml": f"[validation]\ncommands = [{rendered}]\n"})


def test_parser_routes_subcommands() -> None:
    parser = build_parser()

    args = parser.parse_args(["run", "add", "a", "flag", "--yes", "--json", "--active-file", "a.py"])
    assert args.command == "run"
    assert args.instruction == ["add", "a", "flag"]
    assert args.yes and args.json
    assert args.active_file == "a.py"

    assert parser.parse_args(["memory", "clear"]).action == "clear"
    with pytest.raises(SystemExit):
        parser.parse_args([])
    with pytest.raises(SystemExit):
        parser.parse_args(["memory", "purge"])


def test_config_show_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["config", "show", "--json", "--repo-root", str(tmp_path), "--profile", "manual"])

    payload = _json_out(capsys)
    assert code == ExitCode.SUCCESS
    assert payload["command"] == "config"
    assert payload["active_profile"] == "manual"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["agent"]["enable_multi_file"] is False


def test_invalid_config_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    write_files(tmp_path, {"forge.toml": "[agent\n"})

    code = run_cli(["config", "show", "--repo-root", str(tmp_path)])

    assert code == ExitCode.CONFIG_ERROR
    assert capsys.readouterr().err.startswith("error: invalid TOML")


def test_missing_repo_root(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = run_cli(["memory", "show", "--repo-root", str(tmp_path / "missing")])

    assert code == ExitCode.CONFIG_ERROR
    assert "repo root is not a directory" in capsys.readouterr().err


def test_validate_list_and_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _configure_commands(tmp_path, f"test: {sys.executable} -c pass")

    assert run_cli(["validate", "--list", "--json", "--repo-root", str(tmp_path)]) == 0
    listed = _json_out(capsys)
    assert listed["options"] == [
        {"label": "test", "command": f"{sys.executable} -c pass", "cwd": "."}
    ]

    assert run_cli(["validate", "--json", "--repo-root", str(tmp_path)]) == ExitCode.SUCCESS
    result = _json_out(capsys)
    assert result["ok"] is True
    assert result["label"] == "test"


def test_validate_failure_exit_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _configure_commands(tmp_path, f"test: {sys.executable} -c 'raise SystemExit(1)'")

    code = run_cli(["validate", "--repo-root", str(tmp_path), "--no-color"])

    assert code == ExitCode.VALIDATION_FAILED
    assert "FAIL  test" in capsys.readouterr().out


def test_memory_show_and_clear(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["memory", "show", "--repo-root", str(tmp_path)]) == 0
    assert "No memory recorded." in capsys.readouterr().out

    assert run_cli(["memory", "show", "--json", "--repo-root", str(tmp_path)]) == 0
    assert _json_out(capsys)["memory"] is None

    assert run_cli(["memory", "clear", "--repo-root", str(tmp_path)]) == 0
    assert "Memory cleared." in capsys.readouterr().out


def test_run_question_without_a_model(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n", "README.md": "# demo\n"})

    code = run_cli(["run", "how many files are in here?", "--json", "--repo-root", str(tmp_path)])

    payload = _json_out(capsys)
    assert code == ExitCode.SUCCESS
    assert payload["outcome"] == "completed"
    assert payload["intent"] == "question"
    assert payload["answer"] == "This project has 2 files (depth-limited scan)."
    assert (tmp_path / ".forge" / "memory.json").is_file()
    assert list((tmp_path / ".forge" / "logs").glob("*/forge.jsonl"))


def test_exit_code_for_reports() -> None:
    assert exit_code_for(RunReport("completed")) == ExitCode.SUCCESS
    assert exit_code_for(RunReport("no_changes")) == ExitCode.SUCCESS
    failed = ValidationResult(ok=False, output="boom", command="pytest -q", label="test")
    assert exit_code_for(RunReport("completed", validation=failed)) == ExitCode.VALIDATION_FAILED
    auth = ProviderAuthenticationError("bad key")
    assert exit_code_for(RunReport("error", error=auth)) == ExitCode.PROVIDER_ERROR
    parse = JsonParseError("File update", 2, None)
    assert exit_code_for(RunReport("error", error=parse)) == ExitCode.PROVIDER_ERROR
    assert exit_code_for(RunReport("error", error=OSError("disk"))) == ExitCode.INTERNAL_ERROR


def test_report_payload() -> None:
    report = RunReport("completed", intent=Intent.QUESTION, answer="hi", run_id="r1")

    payload = report_payload(report)

    assert payload["run_id"] == "r1"
    assert payload["intent"] == "question"
    assert payload["validation"] is None
    assert payload["files_changed"] == []
    assert json.dumps(payload)


async def test_chat_loop_handles_commands_and_instructions(tmp_path: Path) -> None:
    write_files(tmp_path, {"src/app.py": "x = 1\n", "README.md": "# demo\n"})
    buffer = io.StringIO()
    renderer = create_renderer(no_color=True, file=buffer)
    coordinator = RunCoordinator(tmp_path, make_settings(), JsonRetryClient(ScriptedProvider()))
    renderer.attach(coordinator.events)
    answers = deque(
        ["/help", "", "/active src/app.py", "/pending", "/memory", "how many files are in here?"]
    )

    def _input(prompt: str) -> str:
        if not answers:
            raise EOFError
        return answers.popleft()

    code = await chat_loop(coordinator, renderer, input_fn=_input)

    output = buffer.getvalue().splitlines()
    assert code == ExitCode.SUCCESS
    assert "  /exit            leave the session" in output
    assert "Active file: src/app.py" in output
    assert "Nothing pending." in output
    assert "No memory recorded." in output
    assert "This project has 2 files (depth-limited scan)." in output
    assert coordinator.session.last_active_file == "src/app.py"


async def test_chat_loop_exit_command(tmp_path: Path) -> None:
    renderer = create_renderer(no_color=True, file=io.StringIO())
    coordinator = RunCoordinator(tmp_path, make_settings(), JsonRetryClient(ScriptedProvider()))

    assert await chat_loop(coordinator, renderer, input_fn=lambda prompt: "/exit") == 0
