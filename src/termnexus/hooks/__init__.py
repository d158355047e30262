"""Hook signal installation and state files."""

from .installer import HOOK_EVENTS, HOOK_MARKER, AgentHooksInstaller, settings_path
from .manager import SessionHookManager
from .state_file import SESSION_ID_PATTERN, HookStateRecord, parse_state, read_state, state_file_path, write_state

__all__ = [
    "AgentHooksInstaller",
    "HOOK_EVENTS",
    "HOOK_MARKER",
    "HookStateRecord",
    "parse_state",
    "read_state",
    "SESSION_ID_PATTERN",
    "SessionHookManager",
    "settings_path",
    "state_file_path",
    "write_state",
]
