"""Pseudo-terminal process host for shells and agent CLIs."""

from __future__ import annotations

import asyncio
import logging as py_logging
import os
import signal
import subprocess
import sys
import threading
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Protocol

from termnexus.agents import AgentConfig, build_launch_command
from termnexus.errors import ExitCode, TermNexusError

logger = py_logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
READ_CHUNK = 4096
TERM_NAME = "xterm-256color"


class PtyProcess(Protocol):
    """Minimal surface the host needs from a PTY child.

    ``read`` blocks until data is available and raises ``EOFError`` once the
    child side is closed.
    """

    pid: int

    def read(self, size: int) -> str: ...

    def write(self, data: str) -> None: ...

    def setwinsize(self, rows: int, cols: int) -> None: ...

    def isalive(self) -> bool: ...

    def kill(self, force: bool = False) -> None: ...

    def close(self) -> int | None: ...


PtySpawn = Callable[[list[str], str | None, dict[str, str], tuple[int, int]], PtyProcess]
OutputListener = Callable[[str], None]
ExitListener = Callable[[int | None], None]


class _PexpectProcess:
    def __init__(self, child: object) -> None:
        import pexpect

        self._pexpect = pexpect
        self._child = child
        self.pid: int = child.pid

    def read(self, size: int) -> str:
        try:
            return self._child.read_nonblocking(size=size, timeout=None)
        except self._pexpect.EOF as exc:
            raise EOFError(str(exc)) from exc

    def write(self, data: str) -> None:
        self._child.send(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self._child.setwinsize(rows, cols)

    def isalive(self) -> bool:
        return bool(self._child.isalive())

    def kill(self, force: bool = False) -> None:
        self._child.kill(signal.SIGKILL if force else signal.SIGHUP)

    def close(self) -> int | None:
        with suppress(Exception):
            self._child.close(force=True)
        if self._child.exitstatus is not None:
            return int(self._child.exitstatus)
        if self._child.signalstatus is not None:
            return 128 + int(self._child.signalstatus)
        return None


class _WinptyProcess:
    def __init__(self, process: object) -> None:
        self._process = process
        self.pid: int = process.pid

    def read(self, size: int) -> str:
        return self._process.read(size)

    def write(self, data: str) -> None:
        self._process.write(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self._process.setwinsize(rows, cols)

    def isalive(self) -> bool:
        return bool(self._process.isalive())

    def kill(self, force: bool = False) -> None:
        self._process.terminate(force=force)

    def close(self) -> int | None:
        with suppress(Exception):
            self._process.close(force=True)
        status = getattr(self._process, "exitstatus", None)
        return int(status) if status is not None else None


def _spawn_with_pexpect(
    command: list[str], cwd: str | None, env: dict[str, str], dimensions: tuple[int, int]
) -> PtyProcess:
    try:
        import pexpect
    except ImportError as exc:
        raise TermNexusError(
            "pexpect backend is unavailable.",
            code=ExitCode.UNSUPPORTED_PLATFORM,
            hint="Install termnexus with its POSIX dependencies (pexpect).",
        ) from exc

    child = pexpect.spawn(
        command[0],
        command[1:],
        cwd=cwd,
        env=env,
        encoding="utf-8",
        codec_errors="replace",
        dimensions=dimensions,
    )
    return _PexpectProcess(child)


def _spawn_with_pywinpty(
    command: list[str], cwd: str | None, env: dict[str, str], dimensions: tuple[int, int]
) -> PtyProcess:
    try:
        from winpty import PtyProcess as WinPtyProcess
    except ImportError as exc:
        raise TermNexusError(
            "pywinpty backend is unavailable.",
            code=ExitCode.UNSUPPORTED_PLATFORM,
            hint="Install termnexus with its Windows dependencies (pywinpty).",
        ) from exc

    process = WinPtyProcess.spawn(subprocess.list2cmdline(command), cwd=cwd, env=env, dimensions=dimensions)
    return _WinptyProcess(process)


def default_spawn() -> PtySpawn:
    if sys.platform == "win32":
        return _spawn_with_pywinpty
    return _spawn_with_pexpect


def default_shell() -> str:
    if sys.platform == "win32":
        root = os.environ.get("SystemRoot", "C:\\Windows")
        return "\\".join([root, "System32", "WindowsPowerShell", "v1.0", "powershell.exe"])
    return os.environ.get("SHELL") or "/bin/bash"


def build_shell_command(shell: str) -> list[str]:
    name = PurePath(shell.replace("\\", "/")).name.lower()
    if "powershell" in name or name.startswith("pwsh"):
        return [shell, "-NoLogo"]
    if name == "cmd.exe":
        return [shell]
    return [shell, "--login"]


def _validate_size(cols: int, rows: int) -> None:
    if cols <= 0 or rows <= 0:
        raise TermNexusError(
            f"Invalid PTY size: {cols}x{rows}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Use positive terminal row/column values.",
        )


@dataclass
class SpawnOptions:
    cwd: str
    shell: str | None = None
    agent: AgentConfig | None = None
    env: dict[str, str] = field(default_factory=dict)
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    restored: bool = False


class ProcessHandle:
    """One spawned PTY child.

    Output and exit notifications are delivered on the event loop thread, in
    the order the child produced them.
    """

    def __init__(
        self,
        process: PtyProcess,
        *,
        command: tuple[str, ...],
        cwd: str,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.pid = process.pid
        self.command = command
        self.cwd = cwd
        self.process = process
        self.exited = False
        self.exit_code: int | None = None
        self._loop = loop
        self._output_listeners: list[OutputListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._reader: threading.Thread | None = None
        self.timers: list[asyncio.TimerHandle] = []

    def on_output(self, listener: OutputListener) -> Callable[[], None]:
        self._output_listeners.append(listener)
        return lambda: _discard(self._output_listeners, listener)

    def on_exit(self, listener: ExitListener) -> Callable[[], None]:
        self._exit_listeners.append(listener)
        return lambda: _discard(self._exit_listeners, listener)

    def start_reader(self) -> None:
        self._reader = threading.Thread(target=self._pump, name=f"pty-reader-{self.pid}", daemon=True)
        self._reader.start()

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers.clear()

    def _pump(self) -> None:
        while True:
            try:
                chunk = self.process.read(READ_CHUNK)
            except EOFError:
                break
            except OSError as exc:
                logger.debug("PTY read ended pid=%s error=%s", self.pid, exc)
                break
            if chunk and not self._post(self._dispatch_output, chunk):
                return
        exit_code = self.process.close()
        self._post(self._dispatch_exit, exit_code)

    def _post(self, callback: Callable[..., None], *args: object) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed; dropping PTY event pid=%s", self.pid)
            return False
        return True

    def _dispatch_output(self, data: str) -> None:
        for listener in list(self._output_listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("Output listener failed pid=%s", self.pid)

    def _dispatch_exit(self, exit_code: int | None) -> None:
        if self.exited:
            return
        self.exited = True
        self.exit_code = exit_code
        self.cancel_timers()
        logger.debug("PTY exited pid=%s exit_code=%s", self.pid, exit_code)
        for listener in list(self._exit_listeners):
            try:
                listener(exit_code)
            except Exception:
                logger.exception("Exit listener failed pid=%s", self.pid)


def _discard(items: list[Callable[..., None]], item: Callable[..., None]) -> None:
    with suppress(ValueError):
        items.remove(item)


class ProcessHost:
    """Owns every PTY child spawned by the application, keyed by pid."""

    def __init__(
        self,
        spawn: PtySpawn | None = None,
        *,
        settle_delay: float = 0.1,
        kill_grace: float = 2.0,
        shell: str | None = None,
    ) -> None:
        self._spawn = spawn or default_spawn()
        self.settle_delay = settle_delay
        self.kill_grace = kill_grace
        self._shell = shell
        self._processes: dict[int, ProcessHandle] = {}

    def default_shell(self) -> str:
        return self._shell or default_shell()

    async def spawn(self, options: SpawnOptions) -> ProcessHandle:
        _validate_size(options.cols, options.rows)
        command = build_shell_command(options.shell or self.default_shell())
        env = {**os.environ, **options.env, "TERM": TERM_NAME}
        loop = asyncio.get_running_loop()
        logger.debug("Spawning PTY command=%s cwd=%s size=%sx%s", command, options.cwd, options.cols, options.rows)

        try:
            process = await asyncio.to_thread(
                self._spawn, command, options.cwd or None, env, (options.rows, options.cols)
            )
        except TermNexusError:
            raise
        except Exception as exc:
            logger.error("PTY spawn failed command=%s cwd=%s error=%s", command, options.cwd, exc)
            raise TermNexusError(
                "Failed to start PTY process.",
                code=ExitCode.PROCESS_ERROR,
                hint=str(exc) or "Check shell installation and working directory.",
            ) from exc

        handle = ProcessHandle(process, command=tuple(command), cwd=options.cwd, loop=loop)
        self._processes[handle.pid] = handle
        handle.on_exit(lambda _code, pid=handle.pid: self._forget(pid))
        handle.start_reader()

        if options.agent is not None and options.agent.is_ai_agent:
            launch = build_launch_command(options.agent, restored=options.restored)
            handle.timers.append(loop.call_later(self.settle_delay, self.write, handle.pid, launch + "\r"))
            logger.info("Scheduled agent launch pid=%s agent=%s", handle.pid, options.agent.id)
        return handle

    def get(self, pid: int) -> ProcessHandle | None:
        return self._processes.get(pid)

    @property
    def pids(self) -> list[int]:
        return sorted(self._processes)

    def write(self, pid: int, data: str) -> None:
        handle = self._processes.get(pid)
        if handle is None:
            return
        try:
            handle.process.write(data)
        except OSError as exc:
            logger.debug("Write to exiting PTY ignored pid=%s error=%s", pid, exc)

    def resize(self, pid: int, cols: int, rows: int) -> None:
        _validate_size(cols, rows)
        handle = self._processes.get(pid)
        if handle is None:
            return
        try:
            handle.process.setwinsize(rows, cols)
        except OSError as exc:
            logger.debug("Resize of exiting PTY ignored pid=%s error=%s", pid, exc)

    def kill(self, pid: int) -> bool:
        handle = self._processes.pop(pid, None)
        if handle is None:
            return False
        handle.cancel_timers()
        try:
            handle.process.kill()
        except (OSError, ProcessLookupError) as exc:
            logger.debug("Kill of exited PTY ignored pid=%s error=%s", pid, exc)
            return True
        if not handle.exited and self.kill_grace > 0:
            with suppress(RuntimeError):
                loop = asyncio.get_running_loop()
                handle.timers.append(loop.call_later(self.kill_grace, _force_kill, handle))
        logger.debug("Killed PTY pid=%s", pid)
        return True

    def kill_all(self) -> None:
        for pid in list(self._processes):
            self.kill(pid)

    def _forget(self, pid: int) -> None:
        self._processes.pop(pid, None)


def _force_kill(handle: ProcessHandle) -> None:
    if handle.exited:
        return
    with suppress(Exception):
        if handle.process.isalive():
            logger.warning("PTY ignored hangup; forcing kill pid=%s", handle.pid)
            handle.process.kill(force=True)
