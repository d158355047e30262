"""Ties hook installation and state watching to a session's lifetime."""

from __future__ import annotations

import logging as py_logging
from pathlib import Path
from typing import TYPE_CHECKING

from termnexus.agents import AgentConfig
from termnexus.hooks.installer import AgentHooksInstaller

if TYPE_CHECKING:
    from termnexus.activity.hook_watcher import HookStateWatcher

logger = py_logging.getLogger(__name__)


class SessionHookManager:
    def __init__(self, installer: AgentHooksInstaller, watcher: HookStateWatcher) -> None:
        self._installer = installer
        self._watcher = watcher
        self._configured: dict[str, Path] = {}

    def setup(self, session_id: str, workdir: str | Path, agent: AgentConfig | None) -> bool:
        """Install hooks and start watching; False for agents without hook support.

        Watching starts first so an unusable session id fails before any
        settings file is touched.
        """
        if agent is None or not agent.supports_hooks:
            return False
        self._watcher.watch_session(session_id)
        if not self._installer.install(workdir, session_id):
            self._watcher.unwatch_session(session_id)
            logger.warning("Hook state watching dropped; install failed session=%s", session_id)
            return False
        self._configured[session_id] = Path(workdir)
        return True

    def cleanup(self, session_id: str) -> None:
        workdir = self._configured.pop(session_id, None)
        if workdir is None:
            return
        self._watcher.unwatch_session(session_id)
        self._installer.remove(workdir, session_id)

    def is_configured(self, session_id: str) -> bool:
        return session_id in self._configured

    def shutdown(self) -> None:
        for session_id in list(self._configured):
            self.cleanup(session_id)
        self._watcher.shutdown()
