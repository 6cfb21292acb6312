from __future__ import annotations

from collections.abc import Callable, Sequence

import pytest

import forge_agent.ui.cli as cli_module
from forge_agent.config.loader import ConfigLoadError
from forge_agent.config.schema import ConfigValidationError
from forge_agent.main import ExitCode, cli_entrypoint
from forge_agent.synthesis_plane.providers.base import ProviderAuthenticationError


def _raising(exc: BaseException) -> Callable[[Sequence[str] | None], int]:
    def _run_cli(argv: Sequence[str] | None = None) -> int:
        raise exc

    return _run_cli


def _wrapped_provider_error() -> RuntimeError:
    try:
        raise ProviderAuthenticationError("bad key", provider="openai")
    except ProviderAuthenticationError as cause:
        try:
            raise RuntimeError("request failed") from cause
        except RuntimeError as wrapper:
            return wrapper


def test_exit_codes_pass_through(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: 1)
    assert cli_entrypoint([]) == ExitCode.VALIDATION_FAILED

    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: 7)
    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR


@pytest.mark.parametrize(
    ("code", "expected"),
    [(0, ExitCode.SUCCESS), (2, ExitCode.CONFIG_ERROR), (None, ExitCode.SUCCESS)],
)
def test_system_exit_codes(
    monkeypatch: pytest.MonkeyPatch, code: int | None, expected: ExitCode
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(SystemExit(code)))
    assert cli_entrypoint([]) == expected


def test_system_exit_message(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(SystemExit("fatal: nope")))
    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    assert capsys.readouterr().err == "fatal: nope\n"


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigLoadError("config file not found: forge.toml"), ExitCode.CONFIG_ERROR),
        (ConfigValidationError([]), ExitCode.CONFIG_ERROR),
        (FileNotFoundError("missing"), ExitCode.CONFIG_ERROR),
        (ProviderAuthenticationError("bad key", provider="openai"), ExitCode.PROVIDER_ERROR),
        (ModuleNotFoundError("No module named 'openai'", name="openai"), ExitCode.PROVIDER_ERROR),
        (ModuleNotFoundError("No module named 'yaml'", name="yaml"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exception_routing(
    monkeypatch: pytest.MonkeyPatch, exc: BaseException, expected: ExitCode
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(exc))
    assert cli_entrypoint([]) == expected


def test_routing_follows_the_cause_chain(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(_wrapped_provider_error()))

    assert cli_entrypoint([]) == ExitCode.PROVIDER_ERROR
    assert capsys.readouterr().err == "request failed\n"


def test_unexpected_errors_print_a_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(RuntimeError("boom")))

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    err = capsys.readouterr().err
    assert err.startswith("Traceback")
    assert "RuntimeError: boom" in err


def test_keyboard_interrupt(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(KeyboardInterrupt()))

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    assert capsys.readouterr().err == "interrupted\n"


def test_help_exits_cleanly(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "forge run" in capsys.readouterr().out
