"""Polls per-session hook state files and publishes newer signals."""

from __future__ import annotations

import asyncio
import logging as py_logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from termnexus.activity.models import ActivityState, HookStateEvent
from termnexus.events import EventBus
from termnexus.hooks.state_file import read_state, state_file_path, write_state

logger = py_logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 1000


@dataclass
class _Watched:
    session_id: str
    path: Path
    last_timestamp: int = 0
    last_state: ActivityState | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class HookStateWatcher:
    """Reports a hook state only when its timestamp is strictly newer than the last one seen.

    The file seeded by ``watch_session`` counts as already seen.
    """

    def __init__(
        self,
        bus: EventBus,
        state_dir: str | Path,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self.state_dir = Path(state_dir)
        self.poll_interval_ms = poll_interval_ms
        self._clock = clock
        self._watched: dict[str, _Watched] = {}

    def initialize(self) -> None:
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Could not create hook state dir path=%s error=%s", self.state_dir, exc)

    def shutdown(self) -> None:
        for session_id in list(self._watched):
            self.unwatch_session(session_id)

    def is_watching(self, session_id: str) -> bool:
        return session_id in self._watched

    def watch_session(self, session_id: str) -> None:
        if session_id in self._watched:
            return
        path = state_file_path(self.state_dir, session_id)
        watched = _Watched(session_id=session_id, path=path)
        record = read_state(path)
        if record is None:
            try:
                write_state(self.state_dir, session_id, ActivityState.IDLE, timestamp=int(self._clock() * 1000))
            except OSError as exc:
                logger.debug("Could not seed hook state file=%s error=%s", path, exc)
            record = read_state(path)
        if record is not None:
            watched.last_timestamp = record.timestamp
            watched.last_state = record.state

        self._watched[session_id] = watched
        self._schedule(watched)
        logger.debug("Watching hook state session=%s file=%s", session_id, path)

    def unwatch_session(self, session_id: str) -> None:
        watched = self._watched.pop(session_id, None)
        if watched is None:
            return
        if watched.timer is not None:
            watched.timer.cancel()
            watched.timer = None
        try:
            watched.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Could not remove hook state file=%s error=%s", watched.path, exc)

    def poll(self, session_id: str) -> bool:
        """Read the state file once; True when a newer state was published."""
        watched = self._watched.get(session_id)
        if watched is None:
            return False
        record = read_state(watched.path)
        if record is None or record.timestamp <= watched.last_timestamp:
            return False
        watched.last_timestamp = record.timestamp
        watched.last_state = record.state
        logger.debug("Hook state changed session=%s state=%s", session_id, record.state.value)
        self._bus.hook_state_changed.emit(
            HookStateEvent(session_id=session_id, state=record.state, timestamp=record.timestamp)
        )
        return True

    def check_state(self, session_id: str) -> ActivityState | None:
        record = read_state(state_file_path(self.state_dir, session_id))
        return record.state if record else None

    def _schedule(self, watched: _Watched) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; hook polling is manual session=%s", watched.session_id)
            return
        watched.timer = loop.call_later(self.poll_interval_ms / 1000, self._tick, watched)

    def _tick(self, watched: _Watched) -> None:
        watched.timer = None
        if self._watched.get(watched.session_id) is not watched:
            return
        self.poll(watched.session_id)
        self._schedule(watched)
