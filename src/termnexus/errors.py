"""Exit codes and the domain exception shared by every termnexus component.

Services that return result objects (worktree provisioning, session creation
and teardown) never raise; they render failures with ``describe_failure``.
``TermNexusError`` is reserved for failures that cross an API boundary, and
the CLI maps its ``code`` to the process exit status.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    # argparse rejections: bad --log-level, --duration or hook state.
    INVALID_ARGS = 2
    # Unused: an unreadable config file falls back to defaults with a warning.
    CONFIG_ERROR = 3
    # Unexpected failures, and hook state files that cannot be written.
    RUNTIME_ERROR = 4
    # `worktrees` pointed at something that is not a git checkout.
    GIT_ERROR = 5
    # PTY spawn failures and sessions that could not be created.
    PROCESS_ERROR = 6
    # Unknown agents, invalid session ids, PTY sizes and missing directories.
    VALIDATION_ERROR = 7
    # The platform's PTY backend (pexpect or pywinpty) is not installed.
    UNSUPPORTED_PLATFORM = 8


@dataclass
class TermNexusError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


def user_facing_error(message: str, *, hint: str = "") -> str:
    """One-line stderr message printed by the CLI for a handled failure."""
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."


def describe_failure(exc: BaseException, fallback: str) -> str:
    """Render an exception as the ``error`` text of a result object."""
    if isinstance(exc, TermNexusError):
        return str(exc)
    text = str(exc).strip()
    return text or fallback
