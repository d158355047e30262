"""PTY-backed session domain package."""

from .models import OperationResult, SessionConfig, SessionCreateResult, SessionInfo, SessionKind, SessionStatus
from .pty_backend import ProcessHandle, ProcessHost, SpawnOptions, build_shell_command
from .registry import SessionRegistry
from .session import Session

__all__ = [
    "build_shell_command",
    "OperationResult",
    "ProcessHandle",
    "ProcessHost",
    "Session",
    "SessionConfig",
    "SessionCreateResult",
    "SessionInfo",
    "SessionKind",
    "SessionRegistry",
    "SessionStatus",
    "SpawnOptions",
]
