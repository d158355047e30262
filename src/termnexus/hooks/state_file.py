"""Per-session hook state file: ``<state-dir>/<session-id>.json``."""

from __future__ import annotations

import json
import logging as py_logging
import os
import re
import tempfile
import time
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from termnexus.activity.models import ActivityState
from termnexus.errors import ExitCode, TermNexusError

logger = py_logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

STATE_ALIASES: dict[str, ActivityState] = {
    "idle": ActivityState.IDLE,
    "working": ActivityState.WORKING,
    "waiting": ActivityState.WAITING_FOR_INPUT,
    "waiting_for_input": ActivityState.WAITING_FOR_INPUT,
    "error": ActivityState.ERROR,
}


def parse_state(raw: str) -> ActivityState:
    state = STATE_ALIASES.get(raw.strip().lower())
    if state is None:
        raise TermNexusError(
            f"Unknown hook state: {raw}",
            code=ExitCode.VALIDATION_ERROR,
            hint=f"Use one of: {', '.join(sorted(STATE_ALIASES))}",
        )
    return state


def validate_session_id(session_id: str) -> str:
    if not SESSION_ID_PATTERN.fullmatch(session_id) or session_id in {".", ".."}:
        raise TermNexusError(
            f"Invalid session id: {session_id!r}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Session ids may only contain letters, digits, '.', '_' and '-'.",
        )
    return session_id


class HookStateRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ActivityState
    timestamp: int

    @field_validator("state", mode="before")
    @classmethod
    def _alias_state(cls, value: object) -> object:
        if isinstance(value, str):
            return STATE_ALIASES.get(value.strip().lower(), value)
        return value


def state_file_path(state_dir: str | Path, session_id: str) -> Path:
    return Path(state_dir) / f"{validate_session_id(session_id)}.json"


def write_state(
    state_dir: str | Path,
    session_id: str,
    state: ActivityState | str,
    *,
    timestamp: int | None = None,
) -> Path:
    resolved = state if isinstance(state, ActivityState) else parse_state(state)
    target = state_file_path(state_dir, session_id)
    target.parent.mkdir(parents=True, exist_ok=True)
    record = HookStateRecord(
        state=resolved,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
    )
    payload = json.dumps({"state": record.state.value, "timestamp": record.timestamp})

    fd, temp_name = tempfile.mkstemp(prefix=f".{session_id}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(temp_name, target)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return target


def read_state(path: str | Path) -> HookStateRecord | None:
    """Parsed record, or None while the file is missing, mid-write or invalid."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        return HookStateRecord.model_validate_json(content)
    except ValidationError as exc:
        logger.debug("Ignoring unreadable hook state file=%s error=%s", path, exc.errors()[0]["msg"])
        return None
