"""
forge-agent — validation runner and auto-fix loop tests

File: tests/unit/verification_plane/test_validation.py
Last updated: 2026-10-19

Purpose
- Drive the validate -> fix -> validate cycle with a scripted executor and a
  scripted fixer so every terminal state is reached deterministically.

Functional requirements
- No subprocesses and no provider calls except the scripted verifier.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from forge_agent.config.schema import ForgeSettings
from forge_agent.domain.models import FileUpdate, VerificationStatus
from forge_agent.observability.events import RunEventChannel
from forge_agent.observability.trace import TraceRecorder
from forge_agent.synthesis_plane.json_retry import JsonRetryClient
from forge_agent.synthesis_plane.updates import ApplyReport, AutoFixOutcome
from forge_agent.verification_plane.commands import CommandResult
from forge_agent.verification_plane.discovery import SKIP_VALIDATION, ValidationOption
from forge_agent.verification_plane.validation import (
    AUTO_FIX_DISABLED,
    PASSED_AFTER_AUTO_FIX,
    RERUNNING_VALIDATION,
    STILL_FAILING,
    VALIDATION_ALREADY_PASSING,
    VALIDATION_FAILED,
    VALIDATION_PASSED,
    ValidationAutoFixLoop,
    ValidationRunner,
    build_fix_context,
    output_tail,
    run_validation_first_fix,
)
from forge_agent.verification_plane.verifier import Verifier
from tests.fakes import ScriptedExecutor, ScriptedProvider, as_json, command_result, make_settings

PYTEST = ("pytest", "-q")
FAIL = command_result(PYTEST, 1, "FAILED test_a\n")
PASS = command_result(PYTEST, 0, "1 passed\n")


class FakeChooser:
    def __init__(self, pick: int | None) -> None:
        self._pick = pick
        self.offered: list[ValidationOption] = []

    async def choose(self, options: Sequence[ValidationOption]) -> ValidationOption | None:
        self.offered = list(options)
        return None if self._pick is None else options[self._pick]


class FakeFixer:
    """Stands in for the update orchestrator's auto-fix entry point."""

    def __init__(self, *outcomes: AutoFixOutcome) -> None:
        self._outcomes = deque(outcomes)
        self.contexts: list[str] = []

    async def attempt_auto_fix(
        self,
        instruction: str,
        validation_output: str,
        files: Sequence[str],
        *,
        history: Any = None,
        token: Any = None,
    ) -> AutoFixOutcome:
        self.contexts.append(validation_output)
        return self._outcomes.popleft() if len(self._outcomes) > 1 else self._outcomes[0]


def _changed(path: str = "a.py") -> AutoFixOutcome:
    update = FileUpdate(path, f"/repo/{path}", "x = 1\n", "x = 2\n")
    return AutoFixOutcome(updates=[update], report=ApplyReport(written=(path,)))


def _settings(**overrides: Any) -> ForgeSettings:
    base: dict[str, Any] = {"validation_commands": ("test: pytest -q",)}
    base.update(overrides)
    return make_settings(**base)


def _runner(
    root: Path, executor: ScriptedExecutor, settings: ForgeSettings, **kwargs: Any
) -> tuple[ValidationRunner, RunEventChannel]:
    events = RunEventChannel()
    return ValidationRunner(root, settings, events=events, executor=executor, **kwargs), events


def _loop(
    root: Path,
    results: Sequence[CommandResult],
    fixer: FakeFixer,
    *,
    verifier: Verifier | None = None,
    **overrides: Any,
) -> tuple[ValidationAutoFixLoop, ValidationRunner, ScriptedExecutor, RunEventChannel]:
    settings = _settings(**overrides)
    executor = ScriptedExecutor({"pytest -q": list(results)})
    runner, events = _runner(root, executor, settings)
    loop = ValidationAutoFixLoop(runner, fixer, settings, events=events, verifier=verifier)  # type: ignore[arg-type]
    return loop, runner, executor, events


async def test_no_commands_counts_as_passing(tmp_path: Path) -> None:
    runner, _ = _runner(tmp_path, ScriptedExecutor(), make_settings())
    result = await runner.run()
    assert result.ok
    assert result.output == ""


async def test_run_all_keeps_going_after_a_failure(tmp_path: Path) -> None:
    executor = ScriptedExecutor(
        {"pytest -q": FAIL, "ruff check .": command_result(("ruff", "check", "."), 0, "ok\n")}
    )
    settings = _settings(validation_commands=("lint: ruff check .", "test: pytest -q"))
    runner, events = _runner(tmp_path, executor, settings)

    result = await runner.run()

    assert not result.ok
    assert result.output == "FAILED test_a\nok\n"
    assert result.command == "pytest -q && ruff check ."
    assert result.label == "test, lint"
    assert executor.command_lines == ["pytest -q", "ruff check ."]
    assert executor.specs[0].cwd == str(tmp_path)
    assert executor.specs[0].timeout_seconds == settings.validation_timeout_seconds
    assert events.log_lines()[:2] == ("Running validation: test", "> pytest -q")


async def test_manual_choice_runs_one_option(tmp_path: Path) -> None:
    executor = ScriptedExecutor({"ruff check .": command_result(("ruff", "check", "."), 0)})
    settings = _settings(
        auto_validation=False, validation_commands=("test: pytest -q", "lint: ruff check .")
    )
    chooser = FakeChooser(1)
    runner, _ = _runner(tmp_path, executor, settings, chooser=chooser)

    result = await runner.run()

    assert result.ok
    assert result.label == "lint"
    assert chooser.offered[-1] == SKIP_VALIDATION
    assert executor.command_lines == ["ruff check ."]


async def test_manual_skip(tmp_path: Path) -> None:
    settings = _settings(auto_validation=False)
    runner, events = _runner(tmp_path, ScriptedExecutor(), settings, chooser=FakeChooser(1))

    result = await runner.run()

    assert result.ok
    assert events.log_lines() == ("Validation skipped.",)


async def test_execution_errors_fail_and_are_traced(tmp_path: Path) -> None:
    broken = CommandResult(PYTEST, None, "", "", 1, error="pytest: not found")
    trace = TraceRecorder()
    trace.start()
    runner, events = _runner(tmp_path, ScriptedExecutor({"pytest -q": broken}), _settings(), trace=trace)

    result = await runner.run()

    assert not result.ok
    assert "Validation error: pytest: not found" in events.log_lines()
    (entry,) = trace.stop()
    assert entry.kind == "validation"
    assert entry.title == "Validation: test (exit None)"


async def test_passing_validation_needs_no_fix(tmp_path: Path) -> None:
    fixer = FakeFixer(_changed())
    loop, _, _, events = _loop(tmp_path, [PASS], fixer)

    report = await loop.run("rename foo")

    assert report.passed
    assert report.attempts == 0
    assert fixer.contexts == []
    assert VALIDATION_PASSED in events.log_lines()


async def test_fix_then_pass(tmp_path: Path) -> None:
    fixer = FakeFixer(_changed())
    loop, _, executor, events = _loop(tmp_path, [FAIL, PASS], fixer)

    report = await loop.run("rename foo", files=["a.py"])

    assert report.passed
    assert report.attempts == 1
    assert report.files_changed == ("a.py",)
    assert fixer.contexts == ["FAILED test_a"]
    assert len(executor.specs) == 2
    logs = events.log_lines()
    assert "Auto-fix attempt 1 of 2..." in logs
    assert RERUNNING_VALIDATION in logs
    assert PASSED_AFTER_AUTO_FIX in logs
    assert VALIDATION_PASSED not in logs


async def test_partial_auto_fix_write_is_carried_into_the_report(tmp_path: Path) -> None:
    updates = [
        FileUpdate("a.py", "/repo/a.py", "x = 1\n", "x = 2\n"),
        FileUpdate("b.py", "/repo/b.py", "y = 1\n", "y = 2\n"),
    ]
    fix_report = ApplyReport(written=("a.py",), failed="b.py", error="Write error: b.py")
    fixer = FakeFixer(AutoFixOutcome(updates=updates, report=fix_report))
    loop, _, _, _ = _loop(tmp_path, [FAIL, PASS], fixer)

    report = await loop.run("rename foo", files=["a.py", "b.py"])

    assert report.passed
    assert report.partial_apply
    assert report.files_changed == ("a.py",)


async def test_complete_auto_fix_write_is_not_partial(tmp_path: Path) -> None:
    loop, _, _, _ = _loop(tmp_path, [FAIL, PASS], FakeFixer(_changed()))

    report = await loop.run("rename foo", files=["a.py"])

    assert not report.partial_apply


async def test_no_progress_stops_the_loop(tmp_path: Path) -> None:
    fixer = FakeFixer(AutoFixOutcome())
    loop, _, executor, events = _loop(tmp_path, [FAIL], fixer)

    report = await loop.run("rename foo")

    assert not report.passed
    assert report.attempts == 1
    assert report.updates == ()
    assert len(executor.specs) == 1
    assert events.log_lines()[-1] == STILL_FAILING


async def test_budget_bounds_the_attempts(tmp_path: Path) -> None:
    fixer = FakeFixer(_changed())
    loop, _, executor, _ = _loop(tmp_path, [FAIL], fixer, auto_fix_max_retries=2)

    report = await loop.run("rename foo")

    assert report.attempts == 2
    assert len(fixer.contexts) == 2
    assert len(executor.specs) == 3


async def test_disabled_auto_fix_reports_failure(tmp_path: Path) -> None:
    loop, _, _, events = _loop(tmp_path, [FAIL], FakeFixer(_changed()), auto_fix_validation=False)

    report = await loop.run("rename foo")

    assert loop.budget == 0
    assert report.attempts == 0
    assert events.log_lines()[-2:] == ("FAILED test_a", VALIDATION_FAILED)


async def test_verification_issues_feed_the_next_fix(tmp_path: Path) -> None:
    provider = ScriptedProvider(
        {
            "verification": [
                as_json({"status": "fail", "issues": ["missing test"], "confidence": "high"}),
                as_json({"status": "pass", "issues": []}),
            ]
        }
    )
    fixer = FakeFixer(_changed())
    loop, _, _, events = _loop(
        tmp_path,
        [PASS],
        fixer,
        verifier=Verifier(JsonRetryClient(provider)),
        verify_after_validation=True,
    )

    report = await loop.run("add tests", change_summary="Changed 1 line")

    assert report.passed
    assert report.attempts == 1
    assert report.verification is not None
    assert report.verification.status is VerificationStatus.PASS
    assert fixer.contexts == ["1 passed\n\nVerification issues:\n- missing test"]
    assert "Verification: fail (high confidence)\n- missing test" in events.log_lines()
    prompt = provider.last_request("verification").messages[-1].content
    assert "Changed 1 line" in prompt


async def test_verification_failure_without_budget_is_a_warning(tmp_path: Path) -> None:
    provider = ScriptedProvider(
        {"verification": as_json({"status": "fail", "issues": ["missing test"]})}
    )
    loop, _, _, events = _loop(
        tmp_path,
        [PASS],
        FakeFixer(_changed()),
        verifier=Verifier(JsonRetryClient(provider)),
        verify_after_validation=True,
        auto_fix_max_retries=0,
    )

    report = await loop.run("add tests")

    assert report.passed
    assert report.verification is not None and report.verification.failed
    assert "Verification warning: missing test" in events.log_lines()


async def test_fix_mode_skips_the_loop_when_already_passing(tmp_path: Path) -> None:
    fixer = FakeFixer(_changed())
    loop, runner, _, events = _loop(tmp_path, [PASS], fixer)

    report = await run_validation_first_fix(loop, runner, "fix it", events=events)

    assert report.passed
    assert fixer.contexts == []
    assert events.log_lines()[-1] == VALIDATION_ALREADY_PASSING


async def test_fix_mode_without_budget(tmp_path: Path) -> None:
    loop, runner, _, events = _loop(
        tmp_path, [FAIL], FakeFixer(_changed()), auto_fix_validation=False
    )

    report = await run_validation_first_fix(loop, runner, "fix it", events=events)

    assert not report.passed
    assert events.log_lines()[-1] == AUTO_FIX_DISABLED


async def test_fix_mode_reuses_the_first_result(tmp_path: Path) -> None:
    fixer = FakeFixer(_changed())
    loop, runner, executor, events = _loop(tmp_path, [FAIL, PASS], fixer)

    report = await run_validation_first_fix(loop, runner, "fix it", events=events)

    assert report.passed
    assert report.attempts == 1
    assert len(executor.specs) == 2


def test_output_helpers() -> None:
    text = "\n".join(f"line {index}" for index in range(45))
    tail = output_tail(text)
    assert tail.splitlines()[0] == "... (5 earlier lines)"
    assert tail.splitlines()[-1] == "line 44"
    assert output_tail("a\nb\n") == "a\nb"
    assert build_fix_context("  ") == "(no validation output)"
