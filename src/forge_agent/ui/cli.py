"""Command-line interface router for forge-agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import uuid
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from forge_agent.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_redacted,
    load_config,
    load_settings,
)
from forge_agent.control_plane import GitCLI, RunCoordinator, SessionContext
from forge_agent.knowledge_plane.memory import MemoryOptions, MemoryStore
from forge_agent.main import ExitCode
from forge_agent.observability.events import RunEventChannel
from forge_agent.observability.logging import (
    LoggingConfig,
    setup_structured_logging,
    shutdown_logging,
)
from forge_agent.observability.trace import TraceRecorder
from forge_agent.synthesis_plane.json_retry import JsonParseError, JsonRetryClient
from forge_agent.synthesis_plane.providers import build_provider
from forge_agent.synthesis_plane.providers.base import ProviderError
from forge_agent.ui.prompts import TerminalPrompts
from forge_agent.ui.render import CLIRenderer, create_renderer
from forge_agent.verification_plane import ValidationRunner

if TYPE_CHECKING:
    from forge_agent.config.schema import ForgeSettings
    from forge_agent.control_plane import RunReport
    from forge_agent.observability.logging import StructuredLoggingHandle

EXIT_COMMANDS: Final[frozenset[str]] = frozenset({"/exit", "/quit"})
CHAT_HELP: Final[tuple[str, ...]] = (
    "/active <path>   set the active file (empty to clear)",
    "/memory          show project memory",
    "/pending         show the pending clarification or proposal",
    "/exit            leave the session",
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="forge",
        description=(
            "forge-agent — instruction-driven code editing for a local workspace.\n\n"
            "Common workflows:\n"
            '  forge run "add a --verbose flag"   Run one instruction\n'
            "  forge chat                          Interactive session\n"
            "  forge validate                      Run the project's checks\n"
            "  forge memory show                   Show project memory\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Workspace root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to forge TOML config (default: <repo-root>/forge.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Built-in or configured profile name (auto, balanced, manual).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show status updates and trace titles.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run one instruction against the workspace",
        description=(
            "Classify the instruction, then answer it, fix validation failures, or edit files.\n\n"
            "Examples:\n"
            '  forge run "rename the config loader to load_settings"\n'
            '  forge run "fix the failing tests" --yes\n'
            '  forge run "what does main.py do?" --json\n'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("instruction", nargs="+", help="Instruction text")
    run_parser.add_argument("--active-file", default=None, help="File the instruction refers to")
    run_parser.add_argument(
        "--yes", "-y", action="store_true", default=False, help="Apply changes without confirmation"
    )
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run)

    # chat ----------------------------------------------------------------
    chat_parser = subparsers.add_parser(
        "chat",
        parents=[common],
        help="Interactive session; clarifications carry across turns",
    )
    chat_parser.add_argument("--active-file", default=None, help="Initial active file")
    chat_parser.add_argument(
        "--yes", "-y", action="store_true", default=False, help="Apply changes without confirmation"
    )
    chat_parser.set_defaults(handler=_cmd_chat)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Run the discovered validation commands",
    )
    validate_parser.add_argument(
        "--list", action="store_true", default=False, help="List commands without running them"
    )
    validate_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    validate_parser.set_defaults(handler=_cmd_validate)

    # memory --------------------------------------------------------------
    memory_parser = subparsers.add_parser(
        "memory",
        parents=[common],
        help="Show or clear project memory",
    )
    memory_parser.add_argument("action", choices=("show", "clear"))
    memory_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    memory_parser.set_defaults(handler=_cmd_memory)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration",
    )
    config_parser.add_argument("action", choices=("show",))
    config_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args, _confirmation_overrides(args))
    as_json = _flag(args, "json")
    renderer = _get_renderer(args, stderr=as_json)
    instruction = " ".join(args.instruction).strip()
    if not instruction:
        raise CLIError("instruction must not be empty", exit_code=int(ExitCode.CONFIG_ERROR))

    session = SessionContext()
    coordinator = _build_coordinator(settings, repo_root, renderer, session=session)
    handle = _start_logging(settings, repo_root, session.session_id)
    try:
        report = asyncio.run(
            run_interruptible(
                coordinator, instruction, active_file=_optional_str(args.active_file)
            )
        )
    finally:
        shutdown_logging(handle)

    if as_json:
        _emit_json(report_payload(report))
    else:
        render_report(renderer, report)
    return exit_code_for(report)


def _cmd_chat(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args, _confirmation_overrides(args))
    renderer = _get_renderer(args)
    session = SessionContext()
    coordinator = _build_coordinator(settings, repo_root, renderer, session=session)
    handle = _start_logging(settings, repo_root, session.session_id)
    try:
        return asyncio.run(
            chat_loop(coordinator, renderer, active_file=_optional_str(args.active_file))
        )
    finally:
        shutdown_logging(handle)


def _cmd_validate(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args)
    as_json = _flag(args, "json")
    renderer = _get_renderer(args, stderr=as_json)
    events = RunEventChannel()
    runner = ValidationRunner(repo_root, settings, events=events)
    options = runner.options()

    if _flag(args, "list"):
        if as_json:
            _emit_json(
                {
                    "command": "validate",
                    "options": [
                        {"label": option.label, "command": option.command, "cwd": option.cwd}
                        for option in options
                    ],
                }
            )
            return int(ExitCode.SUCCESS)
        if not options:
            renderer.text("No validation commands found.")
        for option in options:
            renderer.kv(option.label, option.command)
        return int(ExitCode.SUCCESS)

    if not options:
        renderer.text("No validation commands found.")
        if as_json:
            _emit_json({"command": "validate", "ok": True, "label": "", "command_line": ""})
        return int(ExitCode.SUCCESS)

    renderer.attach(events)
    handle = _start_logging(settings, repo_root, uuid.uuid4().hex[:12])
    try:
        result = asyncio.run(runner.run_all(options))
    finally:
        shutdown_logging(handle)

    if as_json:
        _emit_json(
            {
                "command": "validate",
                "ok": result.ok,
                "label": result.label,
                "command_line": result.command,
            }
        )
    elif result.ok:
        renderer.ok(result.label)
    else:
        renderer.fail(result.label)
    return int(ExitCode.SUCCESS if result.ok else ExitCode.VALIDATION_FAILED)


def _cmd_memory(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    settings = _load_settings(args)
    renderer = _get_renderer(args)
    store = MemoryStore(repo_root, MemoryOptions.from_settings(settings))

    if args.action == "clear":
        if not store.clear():
            raise CLIError(f"could not remove {store.path}", exit_code=int(ExitCode.INTERNAL_ERROR))
        renderer.text("Memory cleared.")
        return int(ExitCode.SUCCESS)

    if _flag(args, "json"):
        state = store.load_state()
        _emit_json(
            {
                "command": "memory",
                "path": str(store.path),
                "memory": state.to_dict() if state is not None else None,
            }
        )
        return int(ExitCode.SUCCESS)

    context = store.load_context()
    if not context:
        renderer.text("No memory recorded.")
        return int(ExitCode.SUCCESS)
    renderer.kv("Memory file", store.path)
    renderer.blank()
    renderer.text(context)
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        config = load_config(
            config_path, repo_root=repo_root, profile=_optional_str(getattr(args, "profile", None))
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc
    redacted = dump_redacted(config)
    profile = config["agent"]["profile"]

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile)
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Run helpers
# ---------------------------------------------------------------------------


async def run_interruptible(
    coordinator: RunCoordinator, instruction: str, *, active_file: str | None = None
) -> RunReport:
    """Run one instruction; Ctrl-C cancels the run instead of killing the process."""

    loop = asyncio.get_running_loop()
    installed = False
    with suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel)
        installed = True
    try:
        return await coordinator.run(instruction, active_file=active_file)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def chat_loop(
    coordinator: RunCoordinator,
    renderer: CLIRenderer,
    *,
    active_file: str | None = None,
    input_fn: Callable[[str], str] = input,
) -> int:
    """Read instructions until EOF or ``/exit``; returns the last run's exit code."""

    session = coordinator.session
    exit_code = int(ExitCode.SUCCESS)
    renderer.heading("forge chat: type an instruction, /help for commands, /exit to quit.")
    while True:
        try:
            line = await asyncio.to_thread(input_fn, "forge> ")
        except EOFError:
            renderer.blank()
            return exit_code
        text = line.strip()
        if not text:
            continue
        if text in EXIT_COMMANDS:
            return exit_code
        if text == "/help":
            renderer.items(CHAT_HELP, prefix="")
            continue
        if text == "/active" or text.startswith("/active "):
            active_file = text[len("/active") :].strip() or None
            session.last_active_file = active_file
            renderer.kv("Active file", active_file or "(none)")
            continue
        if text == "/memory":
            memory = coordinator.memory
            context = memory.load_context() if memory is not None else None
            renderer.text(context or "No memory recorded.")
            continue
        if text == "/pending":
            _render_pending(renderer, session)
            continue

        report = await run_interruptible(coordinator, text, active_file=active_file)
        render_report(renderer, report)
        exit_code = exit_code_for(report)


def exit_code_for(report: RunReport) -> int:
    if report.outcome == "error":
        if isinstance(report.error, (ProviderError, JsonParseError)):
            return int(ExitCode.PROVIDER_ERROR)
        return int(ExitCode.INTERNAL_ERROR)
    if report.validation_failed:
        return int(ExitCode.VALIDATION_FAILED)
    return int(ExitCode.SUCCESS)


def report_payload(report: RunReport) -> dict[str, object]:
    return {
        "command": "run",
        "run_id": report.run_id,
        "outcome": report.outcome,
        "intent": report.intent.value if report.intent is not None else None,
        "files_changed": list(report.files_changed),
        "partial_apply": report.partial_apply,
        "validation": report.validation.to_dict() if report.validation is not None else None,
        "verification": (
            report.verification.to_dict() if report.verification is not None else None
        ),
        "answer": report.answer,
        "error_stage": report.error_stage,
        "messages": list(report.messages),
        "elapsed_ms": report.elapsed_ms,
    }


def render_report(renderer: CLIRenderer, report: RunReport) -> None:
    if report.files_changed:
        renderer.section("Files changed:")
        renderer.items(report.files_changed)
    if report.validation is not None and report.validation.label:
        if report.validation.ok:
            renderer.ok(report.validation.label)
        else:
            renderer.fail(report.validation.label)
    if report.outcome == "error" and report.error_stage:
        renderer.fail(f"{report.error_stage} stage")
    if renderer.verbose and report.trace:
        renderer.section("Trace:")
        renderer.items([f"[{entry.kind.value}] {entry.title}" for entry in report.trace])


def _render_pending(renderer: CLIRenderer, session: SessionContext) -> None:
    pending = session.pending_clarification
    if pending is not None:
        renderer.text("Waiting for answers to:")
        renderer.items(pending.questions)
        return
    proposal = session.pending_proposal
    if proposal is not None:
        renderer.text("Proposed plan awaiting confirmation:")
        renderer.items(proposal.plan or proposal.answers)
        return
    if session.pending_disambiguation:
        renderer.text("Choose one of:")
        renderer.numbered([option.label for option in session.pending_disambiguation])
        return
    renderer.text("Nothing pending.")


def _build_coordinator(
    settings: ForgeSettings,
    repo_root: Path,
    renderer: CLIRenderer,
    *,
    session: SessionContext,
) -> RunCoordinator:
    try:
        provider = build_provider(settings.provider)
    except ProviderError as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.PROVIDER_ERROR)) from exc
    client = JsonRetryClient(
        provider,
        trace=TraceRecorder(enabled=settings.trace_enabled),
        max_retries=settings.json_max_retries,
    )
    events = RunEventChannel()
    renderer.attach(events)
    prompts = TerminalPrompts(renderer)
    return RunCoordinator(
        repo_root,
        settings,
        client,
        session=session,
        events=events,
        picker=prompts,
        confirmer=prompts,
        validation_chooser=prompts,
        version_control=GitCLI(repo_root) if settings.enable_git_workflow else None,
    )


def _start_logging(
    settings: ForgeSettings, repo_root: Path, run_id: str
) -> StructuredLoggingHandle:
    log_dir = Path(settings.log_dir).expanduser()
    if not log_dir.is_absolute():
        log_dir = repo_root / log_dir
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=log_dir,
            level=settings.log_level,
            log_to_stdout=settings.log_to_stdout,
        )
    )


def _confirmation_overrides(args: argparse.Namespace) -> dict[str, object]:
    return {"agent.skip_confirmations": True} if _flag(args, "yes") else {}


def _load_settings(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> ForgeSettings:
    try:
        return load_settings(
            _optional_str(getattr(args, "config_path", None)),
            repo_root=_repo_root(args),
            profile=_optional_str(getattr(args, "profile", None)),
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace, *, stderr: bool = False) -> CLIRenderer:
    """Create a CLI renderer from the parsed namespace; JSON modes render to stderr."""

    return create_renderer(
        no_color=_flag(args, "no_color"),
        verbose=_flag(args, "verbose"),
        file=sys.stderr if stderr else None,
    )


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _optional_str(getattr(args, "repo_root", None)) or "."
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=int(ExitCode.CONFIG_ERROR))
    return candidate


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=int(ExitCode.CONFIG_ERROR))
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    value = getattr(args, name, False)
    return bool(value)


__all__ = [
    "CLIError",
    "build_parser",
    "chat_loop",
    "exit_code_for",
    "render_report",
    "report_payload",
    "run_cli",
    "run_interruptible",
]
