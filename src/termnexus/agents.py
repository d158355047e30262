"""Agent launch definitions."""

from __future__ import annotations

import logging as py_logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from enum import Enum

from termnexus.config import AppConfig, CustomAgentEntry
from termnexus.errors import ExitCode, TermNexusError

logger = py_logging.getLogger(__name__)

CLAUDE_CODE_ID = "claude-code"


class AgentCategory(str, Enum):
    AI_AGENT = "ai-agent"
    SHELL = "shell"
    CUSTOM = "custom"


@dataclass(frozen=True)
class AgentConfig:
    id: str
    name: str
    command: str
    category: AgentCategory
    args: tuple[str, ...] = field(default_factory=tuple)
    icon: str = ""
    description: str = ""
    supports_hooks: bool = False

    @property
    def is_ai_agent(self) -> bool:
        return self.category == AgentCategory.AI_AGENT


def _powershell_path() -> str:
    if sys.platform == "win32":
        root = os.environ.get("SystemRoot", "C:\\Windows")
        return "\\".join([root, "System32", "WindowsPowerShell", "v1.0", "powershell.exe"])
    return "pwsh"


BUILT_IN_AGENTS: tuple[AgentConfig, ...] = (
    AgentConfig(
        id=CLAUDE_CODE_ID,
        name="Claude Code",
        command="claude",
        category=AgentCategory.AI_AGENT,
        icon="🤖",
        description="AI coding assistant by Anthropic",
        supports_hooks=True,
    ),
    AgentConfig(
        id="cursor",
        name="Cursor CLI",
        command="agent",
        category=AgentCategory.AI_AGENT,
        icon="⚡",
        description="AI-powered code editor CLI",
    ),
    AgentConfig(
        id="aider",
        name="Aider",
        command="aider",
        category=AgentCategory.AI_AGENT,
        icon="🔧",
        description="AI pair programming in your terminal",
    ),
    AgentConfig(
        id="powershell",
        name="PowerShell",
        command=_powershell_path(),
        category=AgentCategory.SHELL,
        args=("-NoLogo",),
        icon="💠",
    ),
    AgentConfig(
        id="bash",
        name="Bash",
        command="bash" if sys.platform == "win32" else "/bin/bash",
        category=AgentCategory.SHELL,
        args=("--login",),
        icon="🐚",
    ),
    AgentConfig(
        id="cmd",
        name="Command Prompt",
        command="cmd.exe",
        category=AgentCategory.SHELL,
        icon="📟",
    ),
)


def build_launch_command(agent: AgentConfig, *, restored: bool = False) -> str:
    """Command line typed into the shell to start ``agent``."""
    parts = [agent.command, *agent.args]
    if restored and agent.id == CLAUDE_CODE_ID:
        parts.append("--continue")
    if sys.platform == "win32":
        return " ".join(parts)
    return shlex.join(parts)


def _from_entry(entry: CustomAgentEntry) -> AgentConfig:
    return AgentConfig(
        id=entry["id"].strip(),
        name=entry["name"],
        command=entry["command"],
        category=AgentCategory(entry["category"]),
        args=tuple(entry.get("args", [])),
        icon=entry.get("icon", ""),
        supports_hooks=bool(entry.get("supports_hooks", False)),
    )


class AgentCatalog:
    def __init__(self, agents: tuple[AgentConfig, ...] | list[AgentConfig] = BUILT_IN_AGENTS) -> None:
        self._agents: dict[str, AgentConfig] = {}
        for agent in agents:
            self.register(agent)

    @classmethod
    def from_config(cls, config: AppConfig) -> AgentCatalog:
        catalog = cls()
        for entry in config.custom_agents:
            agent = _from_entry(entry)
            if agent.id in catalog:
                logger.info("Custom agent overrides built-in id=%s", agent.id)
            catalog.register(agent, replace=True)
        return catalog

    def register(self, agent: AgentConfig, *, replace: bool = False) -> None:
        if agent.id in self._agents and not replace:
            raise TermNexusError(
                f"Agent already registered: {agent.id}",
                code=ExitCode.VALIDATION_ERROR,
                hint="Use a unique agent id.",
            )
        self._agents[agent.id] = agent

    def get(self, agent_id: str | None) -> AgentConfig | None:
        if not agent_id:
            return None
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> AgentConfig:
        agent = self.get(agent_id)
        if agent is None:
            raise TermNexusError(
                f"Unknown agent: {agent_id}",
                code=ExitCode.VALIDATION_ERROR,
                hint=f"Known agents: {', '.join(sorted(self._agents))}",
            )
        return agent

    def is_ai_agent(self, agent_id: str | None) -> bool:
        agent = self.get(agent_id)
        return agent is not None and agent.is_ai_agent

    def list_agents(self) -> list[AgentConfig]:
        return [self._agents[key] for key in sorted(self._agents)]

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents
