"""Typed publish/subscribe channels shared by the session services."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from termnexus.activity.models import ActivityStatus, HookStateEvent
    from termnexus.terminal.models import SessionInfo

logger = py_logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SessionOutputEvent:
    session_id: str
    data: str


@dataclass(frozen=True)
class SessionTerminatedEvent:
    session_id: str
    exit_code: int | None


@dataclass(frozen=True)
class SessionUpdatedEvent:
    session: SessionInfo


@dataclass(frozen=True)
class SessionCreatedEvent:
    session: SessionInfo
    hooks_configured: bool = False


@dataclass(frozen=True)
class AgentStatusEvent:
    status: ActivityStatus


@dataclass(frozen=True)
class Subscription:
    channel: str
    unsubscribe: Callable[[], None]


class Channel(Generic[T]):
    """Ordered list of subscribers for one event kind.

    Subscribers run in registration order. A subscriber that raises is logged
    and skipped; the remaining subscribers still receive the event.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._subscribers.append(callback)
        return Subscription(channel=self.name, unsubscribe=lambda: self.unsubscribe(callback))

    def once(self, callback: Callable[[T], None]) -> Subscription:
        def wrapper(payload: T) -> None:
            self.unsubscribe(wrapper)
            callback(payload)

        return self.subscribe(wrapper)

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def emit(self, payload: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(payload)
            except Exception:
                logger.exception("Event subscriber failed channel=%s callback=%r", self.name, callback)

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)


class EventBus:
    def __init__(self) -> None:
        self.session_output: Channel[SessionOutputEvent] = Channel("session:output")
        self.session_terminated: Channel[SessionTerminatedEvent] = Channel("session:terminated")
        self.session_updated: Channel[SessionUpdatedEvent] = Channel("session:updated")
        self.session_created: Channel[SessionCreatedEvent] = Channel("session:created")
        self.agent_status_updated: Channel[AgentStatusEvent] = Channel("agent-status:updated")
        self.hook_state_changed: Channel[HookStateEvent] = Channel("hook-state:changed")

    def channels(self) -> list[Channel[object]]:
        return [
            self.session_output,
            self.session_terminated,
            self.session_updated,
            self.session_created,
            self.agent_status_updated,
            self.hook_state_changed,
        ]

    def clear(self) -> None:
        for channel in self.channels():
            channel.clear()
