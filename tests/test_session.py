from __future__ import annotations

import pytest

from termnexus.agents import AgentCatalog
from termnexus.errors import TermNexusError
from termnexus.events import EventBus
from termnexus.terminal.models import SessionKind, SessionStatus
from termnexus.terminal.pty_backend import ProcessHost
from termnexus.terminal.session import OutputBuffer, Session


def _session(fake_spawn, tmp_path, bus: EventBus | None = None, **kwargs: object) -> Session:
    host = ProcessHost(fake_spawn, shell="/bin/bash", kill_grace=0.0)
    return Session(
        "s1",
        kind=SessionKind.ATTACHED,
        working_directory=str(tmp_path),
        host=host,
        bus=bus or EventBus(),
        **kwargs,
    )


def test_output_buffer_keeps_only_the_newest_characters() -> None:
    buffer = OutputBuffer(limit=8)
    buffer.append("abcd")
    buffer.append("efgh")
    buffer.append("ij")

    assert buffer.text() == "cdefghij"
    assert len(buffer) == 8

    buffer.append("0123456789")
    assert buffer.text() == "23456789"

    buffer.clear()
    assert buffer.text() == ""


def test_output_buffer_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        OutputBuffer(limit=0)


@pytest.mark.asyncio
async def test_start_moves_session_to_running(fake_spawn, tmp_path) -> None:
    bus = EventBus()
    updates: list[SessionStatus] = []
    bus.session_updated.subscribe(lambda event: updates.append(event.session.status))
    session = _session(fake_spawn, tmp_path, bus)

    info = await session.start(cols=100, rows=30)

    assert info.status == SessionStatus.RUNNING
    assert info.pid == fake_spawn.last.pid
    assert updates == [SessionStatus.RUNNING]
    assert fake_spawn.calls[0].dimensions == (30, 100)


@pytest.mark.asyncio
async def test_start_twice_is_rejected(fake_spawn, tmp_path) -> None:
    session = _session(fake_spawn, tmp_path)
    await session.start()

    with pytest.raises(TermNexusError):
        await session.start()


@pytest.mark.asyncio
async def test_spawn_failure_marks_session_as_error(fake_spawn, tmp_path) -> None:
    fake_spawn.error = OSError("exec failed")
    bus = EventBus()
    updates: list[SessionStatus] = []
    bus.session_updated.subscribe(lambda event: updates.append(event.session.status))
    session = _session(fake_spawn, tmp_path, bus)

    with pytest.raises(TermNexusError):
        await session.start()

    assert session.status == SessionStatus.ERROR
    assert updates == [SessionStatus.ERROR]


@pytest.mark.asyncio
async def test_output_is_buffered_and_published(fake_spawn, tmp_path, eventually) -> None:
    bus = EventBus()
    published: list[tuple[str, str]] = []
    bus.session_output.subscribe(lambda event: published.append((event.session_id, event.data)))
    session = _session(fake_spawn, tmp_path, bus, output_limit=6)
    await session.start()

    fake_spawn.last.feed("hello ")
    fake_spawn.last.feed("world")

    await eventually(lambda: len(published) == 2)
    assert published == [("s1", "hello "), ("s1", "world")]
    assert session.buffered_output() == " world"


@pytest.mark.asyncio
async def test_process_exit_terminates_session_once(fake_spawn, tmp_path, eventually) -> None:
    bus = EventBus()
    terminated: list[int | None] = []
    bus.session_terminated.subscribe(lambda event: terminated.append(event.exit_code))
    session = _session(fake_spawn, tmp_path, bus)
    await session.start()

    fake_spawn.last.finish(0)

    await eventually(lambda: terminated == [0])
    assert session.status == SessionStatus.TERMINATED
    assert session.exit_code == 0


@pytest.mark.asyncio
async def test_write_and_resize_only_while_running(fake_spawn, tmp_path, eventually) -> None:
    session = _session(fake_spawn, tmp_path)
    session.write("early")
    await session.start()

    session.write("echo hi\r")
    session.resize(90, 20)
    pty = fake_spawn.last
    pty.finish(0)
    await eventually(lambda: session.status == SessionStatus.TERMINATED)
    session.write("late")

    assert pty.writes == ["echo hi\r"]
    assert pty.sizes == [(20, 90)]


@pytest.mark.asyncio
async def test_terminate_async_waits_for_exit(fake_spawn, tmp_path) -> None:
    bus = EventBus()
    statuses: list[SessionStatus] = []
    terminated: list[int | None] = []
    bus.session_updated.subscribe(lambda event: statuses.append(event.session.status))
    bus.session_terminated.subscribe(lambda event: terminated.append(event.exit_code))
    session = _session(fake_spawn, tmp_path, bus)
    await session.start()

    await session.terminate_async(timeout=2.0)

    assert statuses == [SessionStatus.RUNNING, SessionStatus.TERMINATED]
    assert terminated == [129]
    assert session.status == SessionStatus.TERMINATED


@pytest.mark.asyncio
async def test_terminate_async_gives_up_after_timeout(fake_spawn, tmp_path) -> None:
    session = _session(fake_spawn, tmp_path)
    await session.start()
    fake_spawn.last.ignore_hangup = True

    await session.terminate_async(timeout=0.05)

    assert session.status == SessionStatus.TERMINATED
    assert session.exit_code is None
    assert fake_spawn.last.kills == [False]


@pytest.mark.asyncio
async def test_terminate_before_start_is_a_no_op(fake_spawn, tmp_path) -> None:
    session = _session(fake_spawn, tmp_path)

    await session.terminate_async()

    assert session.status == SessionStatus.INITIALIZING
    assert fake_spawn.calls == []


@pytest.mark.asyncio
async def test_info_projection_carries_agent_metadata(fake_spawn, tmp_path) -> None:
    agent = AgentCatalog().require("aider")
    session = _session(fake_spawn, tmp_path, agent=agent, branch="topic")
    await session.start()

    payload = session.to_info().to_dict()

    assert payload["agent_id"] == "aider"
    assert payload["agent_name"] == "Aider"
    assert payload["branch"] == "topic"
    assert payload["status"] == "running"
    assert payload["kind"] == "attached"
