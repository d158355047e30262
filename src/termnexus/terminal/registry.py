"""Session creation, lookup and teardown."""

from __future__ import annotations

import asyncio
import logging as py_logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from termnexus.agents import AgentCatalog
from termnexus.errors import describe_failure
from termnexus.events import EventBus, SessionCreatedEvent
from termnexus.terminal.models import (
    OperationResult,
    SessionConfig,
    SessionCreateResult,
    SessionInfo,
    SessionKind,
)
from termnexus.terminal.pty_backend import DEFAULT_COLS, DEFAULT_ROWS, ProcessHost
from termnexus.terminal.session import DEFAULT_OUTPUT_LIMIT, DEFAULT_TERMINATE_TIMEOUT, Session
from termnexus.worktree.provisioner import WorktreeProvisioner

if TYPE_CHECKING:
    from termnexus.hooks.manager import SessionHookManager

logger = py_logging.getLogger(__name__)

SESSION_ID_ENV = "TERMNEXUS_SESSION_ID"
STATE_DIR_ENV = "TERMNEXUS_STATE_DIR"


def _same_path(left: str | None, right: str) -> bool:
    if not left:
        return False
    return Path(left).resolve(strict=False) == Path(right).resolve(strict=False)


class SessionRegistry:
    """Single authority mapping session id to ``Session``.

    An entry exists from successful creation until ``terminate_session``
    completes. Isolated sessions own their worktree for exactly that span.
    """

    def __init__(
        self,
        *,
        host: ProcessHost,
        provisioner: WorktreeProvisioner,
        bus: EventBus,
        catalog: AgentCatalog | None = None,
        hooks: SessionHookManager | None = None,
        hook_state_dir: str | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._host = host
        self._provisioner = provisioner
        self._bus = bus
        self._catalog = catalog or AgentCatalog()
        self._hooks = hooks
        self._hook_state_dir = hook_state_dir
        self._output_limit = output_limit
        self._terminate_timeout = terminate_timeout
        self._id_factory = id_factory
        self._sessions: dict[str, Session] = {}

    async def initialize(self) -> list[str]:
        return await asyncio.to_thread(self._provisioner.initialize)

    def shutdown(self) -> None:
        self.terminate_all()
        self._provisioner.shutdown()

    async def create_session(
        self,
        config: SessionConfig,
        *,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        restored: bool = False,
        auto_start: bool = True,
        worktree_path: str | None = None,
    ) -> SessionCreateResult:
        agent = self._catalog.get(config.agent_id)
        if config.agent_id and agent is None:
            return SessionCreateResult(success=False, error=f"Unknown agent: {config.agent_id}")

        session_id = config.explicit_id or self._id_factory()
        if session_id in self._sessions:
            return SessionCreateResult(success=False, error=f"Session already exists: {session_id}")

        cwd = config.working_directory
        owns_worktree = False
        if config.kind == SessionKind.ISOLATED and worktree_path is None:
            if not config.branch:
                return SessionCreateResult(success=False, error="Isolated sessions require a branch.")
            created = await asyncio.to_thread(self._provisioner.create_worktree, cwd, config.branch)
            if not created.success:
                logger.error("Session aborted; worktree failed repo=%s branch=%s", cwd, config.branch)
                return SessionCreateResult(success=False, error=created.error)
            worktree_path = created.path
            owns_worktree = True
        if worktree_path is not None:
            cwd = worktree_path

        env = {SESSION_ID_ENV: session_id}
        if self._hook_state_dir:
            env[STATE_DIR_ENV] = self._hook_state_dir

        hooks_configured = False
        if self._hooks is not None and agent is not None:
            try:
                hooks_configured = self._hooks.setup(session_id, cwd, agent)
            except Exception as exc:
                logger.error("Session aborted; hook setup failed id=%s error=%s", session_id, exc)
                self._hooks.cleanup(session_id)
                if owns_worktree and worktree_path is not None:
                    await asyncio.to_thread(self._provisioner.remove_worktree, worktree_path)
                return SessionCreateResult(success=False, error=describe_failure(exc, "Failed to configure agent hooks"))

        session = Session(
            session_id,
            kind=config.kind,
            working_directory=cwd,
            host=self._host,
            bus=self._bus,
            branch=config.branch,
            worktree_path=worktree_path,
            agent=agent,
            shell=config.shell,
            env=env,
            output_limit=self._output_limit,
            terminate_timeout=self._terminate_timeout,
        )
        self._sessions[session_id] = session

        if auto_start:
            try:
                await session.start(cols=cols, rows=rows, restored=restored)
            except Exception as exc:
                await self._discard(session, release_worktree=owns_worktree)
                return SessionCreateResult(success=False, error=describe_failure(exc, "Failed to start session"))

        info = session.to_info()
        logger.info(
            "Created session id=%s kind=%s cwd=%s agent=%s",
            session_id,
            config.kind.value,
            cwd,
            session.agent_id,
        )
        self._bus.session_created.emit(SessionCreatedEvent(session=info, hooks_configured=hooks_configured))
        return SessionCreateResult(success=True, session=info, hooks_configured=hooks_configured)

    async def start_session(
        self,
        session_id: str,
        *,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        restored: bool = False,
    ) -> OperationResult:
        session = self._sessions.get(session_id)
        if session is None:
            return OperationResult(success=False, error=f"Session not found: {session_id}")
        try:
            await session.start(cols=cols, rows=rows, restored=restored)
        except Exception as exc:
            return OperationResult(success=False, error=describe_failure(exc, "Failed to start session"))
        return OperationResult(success=True)

    async def restore_session(self, info: SessionInfo, *, auto_start: bool = True) -> SessionCreateResult:
        """Recreate a session from a saved projection, reusing its id and worktree."""
        worktree = info.worktree_path if info.worktree_path and Path(info.worktree_path).is_dir() else None
        kind = SessionKind.ISOLATED if worktree else SessionKind.ATTACHED
        config = SessionConfig(
            kind=kind,
            working_directory=info.working_directory,
            branch=info.branch,
            agent_id=info.agent_id,
            explicit_id=info.id,
        )
        if info.worktree_path and worktree is None:
            logger.warning("Saved worktree is gone; restoring attached session=%s path=%s", info.id, info.worktree_path)
        return await self.create_session(config, restored=True, auto_start=auto_start, worktree_path=worktree)

    async def terminate_session(self, session_id: str) -> OperationResult:
        session = self._sessions.get(session_id)
        if session is None:
            return OperationResult(success=False, error=f"Session not found: {session_id}")

        await session.terminate_async()
        if self._hooks is not None:
            self._hooks.cleanup(session_id)

        error = ""
        if session.worktree_path:
            removed = await asyncio.to_thread(self._provisioner.remove_worktree, session.worktree_path)
            if not removed.success:
                error = removed.error
                logger.warning("Worktree cleanup incomplete session=%s error=%s", session_id, removed.error)

        self._sessions.pop(session_id, None)
        logger.info("Terminated session id=%s", session_id)
        return OperationResult(success=True, error=error)

    async def terminate_sessions_for_worktree(self, worktree_path: str) -> int:
        targets = [info.id for info in self.find_sessions_by_worktree_path(worktree_path)]
        for session_id in targets:
            await self.terminate_session(session_id)
        return len(targets)

    def terminate_all(self) -> None:
        for session_id, session in list(self._sessions.items()):
            try:
                session.terminate()
            except Exception:
                logger.exception("Failed to terminate session id=%s", session_id)
            if self._hooks is not None:
                self._hooks.cleanup(session_id)
        self._sessions.clear()

    def write_to_session(self, session_id: str, data: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.write(data)
        return True

    def resize_session(self, session_id: str, cols: int, rows: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.resize(cols, rows)
        return True

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_session_info(self, session_id: str) -> SessionInfo | None:
        session = self._sessions.get(session_id)
        return session.to_info() if session else None

    def list_sessions(self) -> list[SessionInfo]:
        return [self._sessions[key].to_info() for key in sorted(self._sessions)]

    def find_sessions_by_worktree_path(self, worktree_path: str) -> list[SessionInfo]:
        return [
            session.to_info()
            for session in self._sessions.values()
            if _same_path(session.worktree_path, worktree_path)
        ]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def _discard(self, session: Session, *, release_worktree: bool) -> None:
        self._sessions.pop(session.id, None)
        if self._hooks is not None:
            self._hooks.cleanup(session.id)
        if release_worktree and session.worktree_path:
            await asyncio.to_thread(self._provisioner.remove_worktree, session.worktree_path)
        logger.warning("Discarded session after start failure id=%s", session.id)
