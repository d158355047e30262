"""Session domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

from termnexus.hooks.state_file import SESSION_ID_PATTERN


class SessionKind(str, Enum):
    ATTACHED = "attached"
    ISOLATED = "isolated"


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    TERMINATED = "terminated"
    ERROR = "error"


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SessionKind = SessionKind.ATTACHED
    working_directory: str
    branch: str | None = None
    agent_id: str | None = None
    explicit_id: str | None = None
    shell: str | None = None

    @field_validator("working_directory")
    @classmethod
    def _require_directory(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("working_directory is required")
        return value.strip()

    @field_validator("branch", "agent_id", "explicit_id", "shell")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("explicit_id")
    @classmethod
    def _safe_session_id(cls, value: str | None) -> str | None:
        # Ids name the hook state file and appear in hook commands.
        if value is not None and (not SESSION_ID_PATTERN.fullmatch(value) or value in {".", ".."}):
            raise ValueError(f"explicit_id may only contain letters, digits, '.', '_' and '-': {value!r}")
        return value


@dataclass(frozen=True)
class SessionInfo:
    id: str
    kind: SessionKind
    working_directory: str
    status: SessionStatus
    created_at: int
    branch: str | None = None
    worktree_path: str | None = None
    pid: int | None = None
    agent_id: str | None = None
    agent_name: str | None = None
    agent_icon: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class SessionCreateResult:
    success: bool
    session: SessionInfo | None = None
    error: str = ""
    hooks_configured: bool = False


@dataclass(frozen=True)
class OperationResult:
    success: bool
    error: str = ""
