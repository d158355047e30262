"""Per-session activity state tracking with hook arbitration and debounce."""

from __future__ import annotations

import asyncio
import logging as py_logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from termnexus.activity.analyzers import ActivityAnalyzer, AgentTranscriptAnalyzer, ShellAnalyzer
from termnexus.activity.models import ActivityState, ActivityStatus, HookStateEvent, StateSource
from termnexus.agents import AgentCatalog
from termnexus.events import (
    AgentStatusEvent,
    EventBus,
    SessionCreatedEvent,
    SessionOutputEvent,
    SessionTerminatedEvent,
    Subscription,
)

logger = py_logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 20 * 1024
DEFAULT_DEBOUNCE_MS = 300
DEFAULT_INACTIVITY_HOOKS_MS = 1500
DEFAULT_INACTIVITY_PATTERNS_MS = 3000
DEFAULT_HOOK_FRESHNESS_MS = 1000


def _wall_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _TrackedSession:
    session_id: str
    agent_id: str | None
    analyzer: ActivityAnalyzer
    status: ActivityStatus
    buffer: str = ""
    hook_active: bool = False
    last_hook_state_time: int = 0
    output_seq: int = 0
    debounce: asyncio.TimerHandle | None = field(default=None, repr=False)
    inactivity: asyncio.TimerHandle | None = field(default=None, repr=False)

    def cancel_inactivity(self) -> None:
        if self.inactivity is not None:
            self.inactivity.cancel()
            self.inactivity = None

    def cancel_timers(self) -> None:
        if self.debounce is not None:
            self.debounce.cancel()
            self.debounce = None
        self.cancel_inactivity()


class ActivityStateTracker:
    """Infers and publishes the activity state of every registered session.

    Pattern-derived state changes are ignored while a hook signal is fresh.
    Published snapshots are debounced per session, so a burst of output
    yields one ``agent_status_updated`` event carrying the final state.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        catalog: AgentCatalog | None = None,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        inactivity_hooks_ms: int = DEFAULT_INACTIVITY_HOOKS_MS,
        inactivity_patterns_ms: int = DEFAULT_INACTIVITY_PATTERNS_MS,
        hook_freshness_ms: int = DEFAULT_HOOK_FRESHNESS_MS,
        clock: Callable[[], int] = _wall_ms,
    ) -> None:
        self._bus = bus
        self._catalog = catalog or AgentCatalog()
        self.buffer_limit = buffer_limit
        self.debounce_ms = debounce_ms
        self.inactivity_hooks_ms = inactivity_hooks_ms
        self.inactivity_patterns_ms = inactivity_patterns_ms
        self.hook_freshness_ms = hook_freshness_ms
        self._clock = clock
        self._sessions: dict[str, _TrackedSession] = {}
        self._subscriptions: list[Subscription] = []

    def initialize(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._bus.session_output.subscribe(self._on_output),
            self._bus.session_terminated.subscribe(self._on_terminated),
            self._bus.hook_state_changed.subscribe(self.handle_hook_state_change),
            self._bus.session_created.subscribe(self._on_created),
        ]

    def shutdown(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        for tracked in self._sessions.values():
            tracked.cancel_timers()
        self._sessions.clear()

    def register_session(self, session_id: str, agent_id: str | None = None, hook_enabled: bool = False) -> None:
        previous = self._sessions.pop(session_id, None)
        if previous is not None:
            previous.cancel_timers()
        analyzer: ActivityAnalyzer
        if self._catalog.is_ai_agent(agent_id):
            analyzer = AgentTranscriptAnalyzer()
        else:
            analyzer = ShellAnalyzer()
        self._sessions[session_id] = _TrackedSession(
            session_id=session_id,
            agent_id=agent_id,
            analyzer=analyzer,
            status=ActivityStatus(
                session_id=session_id,
                activity_state=ActivityState.IDLE,
                last_activity_timestamp=self._clock(),
                state_source=StateSource.PATTERN,
                hook_available=hook_enabled,
            ),
            hook_active=hook_enabled,
        )
        logger.debug(
            "Tracking session=%s analyzer=%s hooks=%s",
            session_id,
            type(analyzer).__name__,
            hook_enabled,
        )

    def unregister_session(self, session_id: str) -> None:
        tracked = self._sessions.pop(session_id, None)
        if tracked is not None:
            tracked.cancel_timers()

    def is_registered(self, session_id: str) -> bool:
        return session_id in self._sessions

    def set_hook_active(self, session_id: str, active: bool) -> None:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return
        tracked.hook_active = active
        tracked.status.hook_available = active

    def is_hook_active(self, session_id: str) -> bool:
        tracked = self._sessions.get(session_id)
        return tracked.hook_active if tracked else False

    def get_status(self, session_id: str) -> ActivityStatus | None:
        tracked = self._sessions.get(session_id)
        return tracked.status.snapshot() if tracked else None

    def get_all_statuses(self) -> list[ActivityStatus]:
        return [self._sessions[key].status.snapshot() for key in sorted(self._sessions)]

    def handle_output(self, session_id: str, data: str) -> None:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return
        tracked.output_seq += 1

        tracked.buffer += data
        overflow = len(tracked.buffer) - self.buffer_limit
        if overflow > 0:
            tracked.buffer = tracked.buffer[overflow:]
            tracked.analyzer.discard_prefix(overflow)

        now = self._clock()
        hook_fresh = tracked.hook_active and now - tracked.last_hook_state_time < self.hook_freshness_ms
        result = tracked.analyzer.analyze(tracked.buffer)
        status = tracked.status
        changed = False

        if result.activity_state is not None and not hook_fresh and status.activity_state != result.activity_state:
            logger.debug(
                "Pattern state session=%s from=%s to=%s confidence=%s",
                session_id,
                status.activity_state.value,
                result.activity_state.value,
                result.confidence,
            )
            status.activity_state = result.activity_state
            status.state_source = StateSource.PATTERN
            status.last_activity_timestamp = now
            changed = True

        if result.task_summary is not None:
            status.task_summary = result.task_summary
            changed = True
        if result.file_changes:
            status.add_file_changes(result.file_changes)
            changed = True
        if result.error_message is not None:
            status.error_message = result.error_message
            changed = True

        if changed:
            self._schedule_update(tracked)
        self._reset_inactivity(tracked)

    def handle_hook_state_change(self, event: HookStateEvent) -> None:
        tracked = self._sessions.get(event.session_id)
        if tracked is None:
            return
        tracked.hook_active = True
        tracked.status.hook_available = True
        tracked.last_hook_state_time = event.timestamp
        tracked.cancel_inactivity()

        status = tracked.status
        if status.activity_state == event.state:
            return
        logger.debug(
            "Hook state session=%s from=%s to=%s",
            event.session_id,
            status.activity_state.value,
            event.state.value,
        )
        status.activity_state = event.state
        status.state_source = StateSource.HOOK
        status.last_activity_timestamp = event.timestamp
        if event.state != ActivityState.ERROR:
            status.error_message = None
            tracked.analyzer.clear_error()
        self._schedule_update(tracked)

    def set_activity_state(
        self,
        session_id: str,
        state: ActivityState,
        source: StateSource = StateSource.PATTERN,
    ) -> None:
        tracked = self._sessions.get(session_id)
        if tracked is None:
            return
        status = tracked.status
        status.activity_state = state
        status.state_source = source
        status.last_activity_timestamp = self._clock()
        if state != ActivityState.ERROR:
            status.error_message = None
            tracked.analyzer.clear_error()
        self._schedule_update(tracked)

    def emit_status(self, session_id: str) -> None:
        tracked = self._sessions.get(session_id)
        if tracked is not None:
            self._bus.agent_status_updated.emit(AgentStatusEvent(status=tracked.status.snapshot()))

    def _inactivity_ms(self, tracked: _TrackedSession) -> int:
        return self.inactivity_hooks_ms if tracked.hook_active else self.inactivity_patterns_ms

    def _reset_inactivity(self, tracked: _TrackedSession) -> None:
        tracked.cancel_inactivity()
        if tracked.status.activity_state != ActivityState.WORKING:
            return
        loop = asyncio.get_running_loop()
        tracked.inactivity = loop.call_later(
            self._inactivity_ms(tracked) / 1000,
            self._on_inactive,
            tracked,
            tracked.output_seq,
        )

    def _on_inactive(self, tracked: _TrackedSession, armed_seq: int) -> None:
        tracked.inactivity = None
        if self._sessions.get(tracked.session_id) is not tracked:
            return
        status = tracked.status
        if status.activity_state != ActivityState.WORKING or tracked.output_seq != armed_seq:
            return
        logger.debug("Inactivity timeout session=%s after=%sms", tracked.session_id, self._inactivity_ms(tracked))
        status.activity_state = ActivityState.IDLE
        status.state_source = StateSource.TIMEOUT
        status.last_activity_timestamp = self._clock()
        self._schedule_update(tracked)

    def _schedule_update(self, tracked: _TrackedSession) -> None:
        if tracked.debounce is not None:
            tracked.debounce.cancel()
        loop = asyncio.get_running_loop()
        tracked.debounce = loop.call_later(self.debounce_ms / 1000, self._publish, tracked)

    def _publish(self, tracked: _TrackedSession) -> None:
        tracked.debounce = None
        if self._sessions.get(tracked.session_id) is not tracked:
            return
        self._bus.agent_status_updated.emit(AgentStatusEvent(status=tracked.status.snapshot()))

    def _on_output(self, event: SessionOutputEvent) -> None:
        self.handle_output(event.session_id, event.data)

    def _on_terminated(self, event: SessionTerminatedEvent) -> None:
        self.unregister_session(event.session_id)

    def _on_created(self, event: SessionCreatedEvent) -> None:
        self.register_session(event.session.id, event.session.agent_id, event.hooks_configured)
        self.emit_status(event.session.id)
