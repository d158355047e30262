"""Activity inference domain models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

RECENT_FILE_CHANGES_LIMIT = 20


class ActivityState(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    WAITING_FOR_INPUT = "waiting_for_input"
    ERROR = "error"


class StateSource(str, Enum):
    PATTERN = "pattern"
    HOOK = "hook"
    TIMEOUT = "timeout"


class FileChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    path: str
    type: FileChangeType
    timestamp: int

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "type": self.type.value, "timestamp": self.timestamp}


@dataclass
class AnalyzerResult:
    """What one ``analyze`` call learned from the unseen suffix."""

    activity_state: ActivityState | None = None
    confidence: float | None = None
    task_summary: str | None = None
    file_changes: list[FileChange] = field(default_factory=list)
    error_message: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.activity_state is None
            and self.task_summary is None
            and not self.file_changes
            and self.error_message is None
        )


@dataclass
class ActivityStatus:
    session_id: str
    activity_state: ActivityState
    last_activity_timestamp: int
    state_source: StateSource = StateSource.PATTERN
    task_summary: str | None = None
    recent_file_changes: list[FileChange] = field(default_factory=list)
    error_message: str | None = None
    hook_available: bool = False

    def add_file_changes(self, changes: list[FileChange]) -> None:
        self.recent_file_changes = [*self.recent_file_changes, *changes][-RECENT_FILE_CHANGES_LIMIT:]

    def snapshot(self) -> ActivityStatus:
        return replace(self, recent_file_changes=list(self.recent_file_changes))

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "activity_state": self.activity_state.value,
            "last_activity_timestamp": self.last_activity_timestamp,
            "state_source": self.state_source.value,
            "task_summary": self.task_summary,
            "recent_file_changes": [change.to_dict() for change in self.recent_file_changes],
            "error_message": self.error_message,
            "hook_available": self.hook_available,
        }


@dataclass(frozen=True)
class HookStateEvent:
    session_id: str
    state: ActivityState
    timestamp: int
