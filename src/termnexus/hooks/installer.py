"""Agent settings installer for hook-driven state reporting."""

from __future__ import annotations

import json
import logging as py_logging
import os
import shlex
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

logger = py_logging.getLogger(__name__)

HOOK_MARKER = "termnexus-state-hook"
SETTINGS_DIR = ".claude"
SETTINGS_FILE = "settings.json"

# Agent lifecycle event -> state reported by the hook command.
HOOK_EVENTS: tuple[tuple[str, str], ...] = (
    ("Stop", "idle"),
    ("Notification", "waiting"),
    ("SessionStart", "idle"),
    ("UserPromptSubmit", "working"),
)


def _join(parts: list[str]) -> str:
    if sys.platform == "win32":
        return subprocess.list2cmdline(parts)
    return shlex.join(parts)


def settings_path(workdir: str | Path) -> Path:
    return Path(workdir) / SETTINGS_DIR / SETTINGS_FILE


def _is_ours(entry: object) -> bool:
    return isinstance(entry, dict) and HOOK_MARKER in str(entry.get("matcher", ""))


def _references(entry: object, session_id: str) -> bool:
    if not _is_ours(entry):
        return False
    hooks = entry.get("hooks")
    if not isinstance(hooks, list):
        return False
    # The session id is a standalone argument of the hook command.
    token = f" {session_id} "
    return any(isinstance(hook, dict) and token in str(hook.get("command", "")) for hook in hooks)


class AgentHooksInstaller:
    """Merges per-session hook entries into ``<workdir>/.claude/settings.json``.

    User-defined hooks are preserved. Entries are tagged with ``HOOK_MARKER``
    and carry the session id in their command, which is what ``remove`` keys on.
    """

    def __init__(self, state_dir: str | Path, *, python: str | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.python = python or sys.executable or "python3"

    def hook_command(self, state: str, session_id: str) -> str:
        return _join(
            [
                self.python,
                "-m",
                "termnexus",
                "hook-state",
                state,
                session_id,
                "--state-dir",
                str(self.state_dir),
            ]
        )

    def install(self, workdir: str | Path, session_id: str) -> bool:
        path = settings_path(workdir)
        try:
            settings = self._load(path)
            hooks = settings.get("hooks")
            if not isinstance(hooks, dict):
                hooks = {}
            for event, state in HOOK_EVENTS:
                existing = hooks.get(event)
                entries = existing if isinstance(existing, list) else []
                kept = [entry for entry in entries if not _references(entry, session_id)]
                kept.append(
                    {
                        "matcher": HOOK_MARKER,
                        "hooks": [{"type": "command", "command": self.hook_command(state, session_id)}],
                    }
                )
                hooks[event] = kept
            settings["hooks"] = hooks
            self._save(path, settings)
        except OSError as exc:
            logger.error("Failed to install agent hooks workdir=%s session=%s error=%s", workdir, session_id, exc)
            return False
        logger.info("Installed agent hooks workdir=%s session=%s", workdir, session_id)
        return True

    def remove(self, workdir: str | Path, session_id: str) -> bool:
        path = settings_path(workdir)
        if not path.is_file():
            return False
        try:
            settings = self._load(path)
        except OSError as exc:
            logger.warning("Could not read agent settings file=%s error=%s", path, exc)
            return False
        hooks = settings.get("hooks")
        if not isinstance(hooks, dict):
            return False

        modified = False
        for event in list(hooks):
            entries = hooks[event]
            if not isinstance(entries, list):
                continue
            kept = [entry for entry in entries if not _references(entry, session_id)]
            if len(kept) == len(entries):
                continue
            modified = True
            if kept:
                hooks[event] = kept
            else:
                del hooks[event]
        if not modified:
            return False
        if not hooks:
            del settings["hooks"]
        try:
            self._save(path, settings)
        except OSError as exc:
            logger.warning("Could not write agent settings file=%s error=%s", path, exc)
            return False
        logger.info("Removed agent hooks workdir=%s session=%s", workdir, session_id)
        return True

    def is_installed(self, workdir: str | Path, session_id: str) -> bool:
        try:
            settings = self._load(settings_path(workdir))
        except OSError:
            return False
        hooks = settings.get("hooks")
        if not isinstance(hooks, dict):
            return False
        stop = hooks.get("Stop")
        return isinstance(stop, list) and any(_references(entry, session_id) for entry in stop)

    def _load(self, path: Path) -> dict[str, Any]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            logger.warning("Replacing corrupt agent settings file=%s error=%s", path, exc)
            return {}
        return raw if isinstance(raw, dict) else {}

    def _save(self, path: Path, settings: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=".settings.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(settings, handle, indent=2)
                handle.write("\n")
            os.replace(temp_name, path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise
