"""One logical terminal bound to a single PTY process."""

from __future__ import annotations

import asyncio
import logging as py_logging
import time
from collections import deque
from collections.abc import Callable

from termnexus.agents import AgentConfig
from termnexus.errors import ExitCode, TermNexusError
from termnexus.events import EventBus, SessionOutputEvent, SessionTerminatedEvent, SessionUpdatedEvent
from termnexus.terminal.models import SessionInfo, SessionKind, SessionStatus
from termnexus.terminal.pty_backend import DEFAULT_COLS, DEFAULT_ROWS, ProcessHandle, ProcessHost, SpawnOptions

logger = py_logging.getLogger(__name__)

DEFAULT_OUTPUT_LIMIT = 1024 * 1024
DEFAULT_TERMINATE_TIMEOUT = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class OutputBuffer:
    """Append-only text buffer that drops its oldest characters past ``limit``."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, data: str) -> None:
        if not data:
            return
        if len(data) >= self.limit:
            self._chunks.clear()
            data = data[-self.limit :]
            self._size = 0
        self._chunks.append(data)
        self._size += len(data)
        while self._size > self.limit:
            overflow = self._size - self.limit
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow

    def text(self) -> str:
        return "".join(self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

    def __len__(self) -> int:
        return self._size


class Session:
    """State machine ``initializing -> running -> terminated`` (or ``error``).

    Output and exit signals of the underlying process are republished on the
    event bus. ``write`` and ``resize`` are ignored unless the session is
    running.
    """

    def __init__(
        self,
        session_id: str,
        *,
        kind: SessionKind,
        working_directory: str,
        host: ProcessHost,
        bus: EventBus,
        branch: str | None = None,
        worktree_path: str | None = None,
        agent: AgentConfig | None = None,
        shell: str | None = None,
        env: dict[str, str] | None = None,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT,
        created_at: int | None = None,
    ) -> None:
        self.id = session_id
        self.kind = kind
        self.working_directory = working_directory
        self.branch = branch
        self.worktree_path = worktree_path
        self.agent = agent
        self.shell = shell
        self.env = dict(env or {})
        self.created_at = created_at if created_at is not None else _now_ms()
        self.status = SessionStatus.INITIALIZING
        self.pid: int | None = None
        self.exit_code: int | None = None
        self.terminate_timeout = terminate_timeout
        self._host = host
        self._bus = bus
        self._buffer = OutputBuffer(output_limit)
        self._handle: ProcessHandle | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._exit_waiters: list[asyncio.Future[int | None]] = []
        self._exited = False

    @property
    def agent_id(self) -> str | None:
        return self.agent.id if self.agent else None

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def to_info(self) -> SessionInfo:
        return SessionInfo(
            id=self.id,
            kind=self.kind,
            working_directory=self.working_directory,
            status=self.status,
            created_at=self.created_at,
            branch=self.branch,
            worktree_path=self.worktree_path,
            pid=self.pid,
            agent_id=self.agent_id,
            agent_name=self.agent.name if self.agent else None,
            agent_icon=self.agent.icon if self.agent else None,
        )

    def buffered_output(self) -> str:
        return self._buffer.text()

    async def start(
        self,
        *,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        restored: bool = False,
    ) -> SessionInfo:
        if self.status != SessionStatus.INITIALIZING:
            raise TermNexusError(
                f"Session already started: {self.id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Create a new session instead of restarting this one.",
            )
        options = SpawnOptions(
            cwd=self.working_directory,
            shell=self.shell,
            agent=self.agent,
            env=self.env,
            cols=cols,
            rows=rows,
            restored=restored,
        )
        try:
            handle = await self._host.spawn(options)
        except Exception:
            self.status = SessionStatus.ERROR
            logger.error("Session start failed session=%s cwd=%s", self.id, self.working_directory)
            self._emit_updated()
            raise

        self._handle = handle
        self.pid = handle.pid
        self._unsubscribers.append(handle.on_output(self._on_output))
        self._unsubscribers.append(handle.on_exit(self._on_exit))
        self.status = SessionStatus.RUNNING
        logger.info("Session running session=%s pid=%s cwd=%s", self.id, self.pid, self.working_directory)
        self._emit_updated()
        return self.to_info()

    def write(self, data: str) -> None:
        if not self.is_running or self.pid is None:
            return
        self._host.write(self.pid, data)

    def resize(self, cols: int, rows: int) -> None:
        if not self.is_running or self.pid is None:
            return
        self._host.resize(self.pid, cols, rows)

    def terminate(self) -> None:
        if self.status != SessionStatus.RUNNING:
            return
        self.status = SessionStatus.TERMINATED
        if self.pid is not None:
            self._host.kill(self.pid)
        logger.debug("Session terminate requested session=%s pid=%s", self.id, self.pid)
        self._emit_updated()

    async def terminate_async(self, timeout: float | None = None) -> None:
        """Kill the process and wait for its exit, at most ``timeout`` seconds."""
        if self._handle is None or self._exited:
            self.terminate()
            return
        waiter: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()
        self._exit_waiters.append(waiter)
        self.terminate()
        limit = self.terminate_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(waiter, timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Session did not exit in time session=%s pid=%s timeout=%ss", self.id, self.pid, limit)
        finally:
            if waiter in self._exit_waiters:
                self._exit_waiters.remove(waiter)

    def _on_output(self, data: str) -> None:
        self._buffer.append(data)
        self._bus.session_output.emit(SessionOutputEvent(session_id=self.id, data=data))

    def _on_exit(self, exit_code: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        self.exit_code = exit_code
        self.status = SessionStatus.TERMINATED
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        logger.info("Session exited session=%s pid=%s exit_code=%s", self.id, self.pid, exit_code)
        self._bus.session_terminated.emit(SessionTerminatedEvent(session_id=self.id, exit_code=exit_code))
        for waiter in list(self._exit_waiters):
            if not waiter.done():
                waiter.set_result(exit_code)

    def _emit_updated(self) -> None:
        self._bus.session_updated.emit(SessionUpdatedEvent(session=self.to_info()))
