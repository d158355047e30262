from __future__ import annotations

import asyncio
import queue
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

_CRITICAL_TEST_FILES = {
    "test_worktree_provisioner.py",
    "test_activity_tracker.py",
    "test_session_registry.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if "property" in path.parts:
            item.add_marker(pytest.mark.property)

        if name in _CRITICAL_TEST_FILES:
            item.add_marker(pytest.mark.critical_regression)


class FakePty:
    """PTY stand-in whose ``read`` blocks like a real terminal until fed or finished."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.writes: list[str] = []
        self.sizes: list[tuple[int, int]] = []
        self.kills: list[bool] = []
        self.closed = False
        self.ignore_hangup = False
        self.exit_status: int | None = 0
        self._chunks: queue.Queue[str | None] = queue.Queue()
        self._finished = False

    def feed(self, data: str) -> None:
        self._chunks.put(data)

    def finish(self, exit_status: int | None = 0) -> None:
        if self._finished:
            return
        self._finished = True
        self.exit_status = exit_status
        self._chunks.put(None)

    def read(self, size: int) -> str:
        del size
        item = self._chunks.get()
        if item is None:
            self._chunks.put(None)
            raise EOFError("closed")
        return item

    def write(self, data: str) -> None:
        self.writes.append(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self.sizes.append((rows, cols))

    def isalive(self) -> bool:
        return not self._finished

    def kill(self, force: bool = False) -> None:
        self.kills.append(force)
        if force or not self.ignore_hangup:
            self.finish(129 if not force else 137)

    def close(self) -> int | None:
        self.closed = True
        return self.exit_status


@dataclass
class SpawnCall:
    command: list[str]
    cwd: str | None
    env: dict[str, str]
    dimensions: tuple[int, int]


class FakeSpawner:
    def __init__(self) -> None:
        self.calls: list[SpawnCall] = []
        self.ptys: list[FakePty] = []
        self.error: Exception | None = None
        self._next_pid = 4000

    def __call__(
        self,
        command: list[str],
        cwd: str | None,
        env: dict[str, str],
        dimensions: tuple[int, int],
    ) -> FakePty:
        if self.error is not None:
            raise self.error
        self.calls.append(SpawnCall(list(command), cwd, dict(env), dimensions))
        self._next_pid += 1
        pty = FakePty(self._next_pid)
        self.ptys.append(pty)
        return pty

    @property
    def last(self) -> FakePty:
        return self.ptys[-1]

    def finish_all(self) -> None:
        for pty in self.ptys:
            pty.finish()


@pytest.fixture
def fake_spawn() -> Iterator[FakeSpawner]:
    spawner = FakeSpawner()
    yield spawner
    spawner.finish_all()


Eventually = Callable[[Callable[[], bool]], Awaitable[None]]


@pytest.fixture
def eventually() -> Eventually:
    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return wait
