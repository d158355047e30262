"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TextIO

from .activity.models import ActivityState, StateSource
from .config import AppConfig, load_config, resolve_hook_state_dir
from .errors import ExitCode, TermNexusError, user_facing_error
from .events import AgentStatusEvent, SessionTerminatedEvent
from .hooks.state_file import STATE_ALIASES, write_state
from .logging import configure_logging, default_log_path
from .orchestrator import Orchestrator
from .terminal.models import SessionConfig, SessionKind

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
SEND_DELAY_SECONDS = 0.5

OrchestratorFactory = Callable[[AppConfig], Orchestrator]


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _duration_type(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--duration must be a number of seconds") from exc
    if seconds <= 0:
        raise argparse.ArgumentTypeError("--duration must be positive")
    return seconds


def _hook_state_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in STATE_ALIASES:
        accepted = ", ".join(sorted(STATE_ALIASES))
        raise argparse.ArgumentTypeError(f"invalid state {value!r}; must be one of: {accepted}")
    return normalized


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termnexus")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Run one session and print activity status as JSON lines")
    run_parser.add_argument("--cwd", type=Path, required=True)
    run_parser.add_argument("--branch", default=None, help="Run inside a new worktree on this branch")
    run_parser.add_argument("--agent", default=None, help="Agent id to launch inside the shell")
    run_parser.add_argument("--send", action="append", default=[], help="Line to type into the session")
    run_parser.add_argument("--duration", type=_duration_type, default=None)

    commands.add_parser("cleanup", help="Remove orphaned worktrees and retry pending deletions")

    worktrees_parser = commands.add_parser("worktrees", help="List worktrees of a repository")
    worktrees_parser.add_argument("repo", type=Path)

    hook_parser = commands.add_parser("hook-state", help="Record an agent hook state for a session")
    hook_parser.add_argument("state", type=_hook_state_type)
    hook_parser.add_argument("session_id")
    hook_parser.add_argument("--state-dir", type=Path, default=None)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


async def run_session(orchestrator: Orchestrator, namespace: argparse.Namespace, out: TextIO) -> int:
    logger = py_logging.getLogger(__name__)
    cwd = namespace.cwd.expanduser().resolve()
    if not cwd.is_dir():
        raise TermNexusError(
            f"Working directory not found: {cwd}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Pass an existing directory to --cwd.",
        )
    if namespace.agent:
        orchestrator.catalog.require(namespace.agent)

    exited = asyncio.Event()
    session_ids: list[str] = []

    def print_status(event: AgentStatusEvent) -> None:
        out.write(json.dumps(event.status.to_dict()) + "\n")
        out.flush()

    def on_terminated(event: SessionTerminatedEvent) -> None:
        if event.session_id in session_ids:
            exited.set()

    orchestrator.bus.agent_status_updated.subscribe(print_status)
    orchestrator.bus.session_terminated.subscribe(on_terminated)

    await orchestrator.initialize()
    try:
        config = SessionConfig(
            kind=SessionKind.ISOLATED if namespace.branch else SessionKind.ATTACHED,
            working_directory=str(cwd),
            branch=namespace.branch,
            agent_id=namespace.agent,
        )
        created = await orchestrator.registry.create_session(
            config,
            cols=orchestrator.config.default_cols,
            rows=orchestrator.config.default_rows,
        )
        if not created.success or created.session is None:
            raise TermNexusError(
                "Failed to create session.",
                code=ExitCode.PROCESS_ERROR,
                hint=created.error or "Inspect logs for details.",
            )
        session_id = created.session.id
        session_ids.append(session_id)
        logger.info("Headless session started id=%s cwd=%s", session_id, created.session.working_directory)

        for line in namespace.send:
            await asyncio.sleep(SEND_DELAY_SECONDS)
            orchestrator.registry.write_to_session(session_id, line + "\r")
            orchestrator.tracker.set_activity_state(session_id, ActivityState.WORKING, StateSource.PATTERN)

        try:
            await asyncio.wait_for(exited.wait(), timeout=namespace.duration)
        except asyncio.TimeoutError:
            logger.debug("Run duration elapsed id=%s", session_id)

        status = orchestrator.tracker.get_status(session_id)
        if status is not None:
            print_status(AgentStatusEvent(status=status))
        result = await orchestrator.registry.terminate_session(session_id)
        if result.error:
            logger.warning("Session teardown incomplete id=%s error=%s", session_id, result.error)
    finally:
        orchestrator.shutdown()
    return int(ExitCode.SUCCESS)


def run_cleanup(orchestrator: Orchestrator, out: TextIO) -> int:
    provisioner = orchestrator.provisioner
    reclaimed = provisioner.initialize()
    for path in reclaimed:
        out.write(f"removed\t{path}\n")
    for path in provisioner.pending_deletions:
        out.write(f"pending\t{path}\n")
    provisioner.shutdown()
    return int(ExitCode.SUCCESS)


def run_worktrees(orchestrator: Orchestrator, repo: Path, out: TextIO) -> int:
    provisioner = orchestrator.provisioner
    if not provisioner.is_git_repo(repo):
        raise TermNexusError(
            f"Not a git repository: {repo}",
            code=ExitCode.GIT_ERROR,
            hint="Pass the path of a git checkout.",
        )
    for info in provisioner.list_worktrees(repo):
        out.write(f"{info.path}\t{info.branch}\t{info.head}\n")
    return int(ExitCode.SUCCESS)


def run_hook_state(config: AppConfig, namespace: argparse.Namespace) -> int:
    state_dir = namespace.state_dir.expanduser() if namespace.state_dir else resolve_hook_state_dir(config)
    try:
        write_state(state_dir, namespace.session_id, namespace.state)
    except OSError as exc:
        raise TermNexusError(
            "Failed to write hook state.",
            code=ExitCode.RUNTIME_ERROR,
            hint=str(exc),
        ) from exc
    return int(ExitCode.SUCCESS)


def run_cli_flow(
    namespace: argparse.Namespace,
    config: AppConfig,
    *,
    orchestrator_factory: OrchestratorFactory = Orchestrator,
    out: TextIO | None = None,
) -> int:
    stream = out or sys.stdout
    if namespace.command == "hook-state":
        return run_hook_state(config, namespace)
    orchestrator = orchestrator_factory(config)
    if namespace.command == "run":
        return asyncio.run(run_session(orchestrator, namespace, stream))
    if namespace.command == "cleanup":
        return run_cleanup(orchestrator, stream)
    if namespace.command == "worktrees":
        return run_worktrees(orchestrator, namespace.repo, stream)
    raise TermNexusError(
        f"Unknown command: {namespace.command}",
        code=ExitCode.INVALID_ARGS,
        hint="Run with --help to list commands.",
    )


def main(
    argv: Sequence[str] | None = None,
    *,
    orchestrator_factory: OrchestratorFactory = Orchestrator,
    out: TextIO | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    config = load_config(namespace.config)
    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level or config.log_level, log_file=log_path)

    try:
        logger.debug("Starting CLI command=%s", namespace.command)
        return run_cli_flow(namespace, config, orchestrator_factory=orchestrator_factory, out=out)
    except TermNexusError as exc:
        logger.error(
            "Handled TermNexusError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return int(ExitCode.RUNTIME_ERROR)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        hint = f"Inspect logs: {log_path}"
        print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
