"""Service wiring: one instance of every component, sharing one event bus."""

from __future__ import annotations

import logging as py_logging
import subprocess

from termnexus.activity.hook_watcher import HookStateWatcher
from termnexus.activity.tracker import ActivityStateTracker
from termnexus.agents import AgentCatalog
from termnexus.config import AppConfig, resolve_hook_state_dir, resolve_worktree_root
from termnexus.events import EventBus
from termnexus.hooks.installer import AgentHooksInstaller
from termnexus.hooks.manager import SessionHookManager
from termnexus.terminal.pty_backend import ProcessHost, PtySpawn
from termnexus.terminal.registry import SessionRegistry
from termnexus.worktree.provisioner import SubprocessRunner, WorktreeProvisioner

logger = py_logging.getLogger(__name__)


class Orchestrator:
    """Constructs the session services from ``AppConfig`` and owns their lifecycle.

    ``initialize`` reclaims worktrees abandoned by a previous run and starts
    listening on the bus; ``shutdown`` kills every process, removes installed
    hooks and persists pending worktree deletions.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        spawn: PtySpawn | None = None,
        runner: SubprocessRunner = subprocess.run,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config or AppConfig()
        cfg = self.config
        self.bus = bus or EventBus()
        self.catalog = AgentCatalog.from_config(cfg)
        self.worktree_root = resolve_worktree_root(cfg)
        self.hook_state_dir = resolve_hook_state_dir(cfg)

        self.provisioner = WorktreeProvisioner(self.worktree_root, runner=runner)
        self.host = ProcessHost(
            spawn,
            settle_delay=cfg.agent_settle_delay_ms / 1000,
            shell=cfg.default_shell or None,
        )
        self.watcher = HookStateWatcher(
            self.bus,
            self.hook_state_dir,
            poll_interval_ms=cfg.hook_poll_interval_ms,
        )
        self.hooks: SessionHookManager | None = None
        if cfg.install_agent_hooks:
            self.hooks = SessionHookManager(AgentHooksInstaller(self.hook_state_dir), self.watcher)

        self.registry = SessionRegistry(
            host=self.host,
            provisioner=self.provisioner,
            bus=self.bus,
            catalog=self.catalog,
            hooks=self.hooks,
            hook_state_dir=str(self.hook_state_dir) if self.hooks else None,
            output_limit=cfg.session_output_limit,
            terminate_timeout=cfg.terminate_timeout_ms / 1000,
        )
        self.tracker = ActivityStateTracker(
            self.bus,
            catalog=self.catalog,
            buffer_limit=cfg.activity_buffer_limit,
            debounce_ms=cfg.status_debounce_ms,
            inactivity_hooks_ms=cfg.inactivity_timeout_hooks_ms,
            inactivity_patterns_ms=cfg.inactivity_timeout_patterns_ms,
            hook_freshness_ms=cfg.hook_freshness_ms,
        )
        self._initialized = False

    async def initialize(self) -> list[str]:
        if self._initialized:
            return []
        self.watcher.initialize()
        self.tracker.initialize()
        reclaimed = await self.registry.initialize()
        self._initialized = True
        logger.debug(
            "Orchestrator ready worktree_root=%s hook_state_dir=%s reclaimed=%s",
            self.worktree_root,
            self.hook_state_dir,
            len(reclaimed),
        )
        return reclaimed

    def shutdown(self) -> None:
        self.registry.shutdown()
        self.host.kill_all()
        if self.hooks is not None:
            self.hooks.shutdown()
        else:
            self.watcher.shutdown()
        self.tracker.shutdown()
        self._initialized = False
        logger.debug("Orchestrator shut down")

    async def __aenter__(self) -> Orchestrator:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.shutdown()
