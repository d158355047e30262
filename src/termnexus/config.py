"""XDG config loading."""

from __future__ import annotations

import logging as py_logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing_extensions import NotRequired, TypedDict

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/termnexus/config.toml").expanduser()
WORKTREE_ROOT_ENV = "TERMNEXUS_WORKTREE_ROOT"
STATE_DIR_ENV = "TERMNEXUS_STATE_DIR"
DEFAULT_WORKTREE_DIRNAME = "termnexus-worktrees"
DEFAULT_STATE_DIRNAME = "termnexus-states"

_VALID_CATEGORIES = {"ai-agent", "shell", "custom"}


class CustomAgentEntry(TypedDict):
    id: str
    name: str
    command: str
    category: str
    args: NotRequired[list[str]]
    icon: NotRequired[str]
    supports_hooks: NotRequired[bool]


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    worktree_root: str = ""
    hook_state_dir: str = ""
    default_shell: str = ""
    default_cols: int = Field(default=80, ge=1, le=1000)
    default_rows: int = Field(default=24, ge=1, le=1000)
    agent_settle_delay_ms: int = Field(default=100, ge=0)
    terminate_timeout_ms: int = Field(default=5000, ge=0)
    session_output_limit: int = Field(default=1024 * 1024, ge=1024)
    activity_buffer_limit: int = Field(default=20 * 1024, ge=256)
    status_debounce_ms: int = Field(default=300, ge=0)
    inactivity_timeout_hooks_ms: int = Field(default=1500, ge=1)
    inactivity_timeout_patterns_ms: int = Field(default=3000, ge=1)
    hook_freshness_ms: int = Field(default=1000, ge=0)
    hook_poll_interval_ms: int = Field(default=1000, ge=10)
    install_agent_hooks: bool = True
    log_level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "INFO"
    custom_agents: list[CustomAgentEntry] = Field(default_factory=list)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            return "WARN" if normalized == "WARNING" else normalized
        return value

    @field_validator("custom_agents")
    @classmethod
    def _validate_custom_agents(cls, value: list[CustomAgentEntry]) -> list[CustomAgentEntry]:
        seen: set[str] = set()
        for entry in value:
            agent_id = entry["id"].strip()
            if not agent_id or agent_id in seen:
                raise ValueError(f"Duplicate or empty agent id: {agent_id!r}")
            if entry["category"] not in _VALID_CATEGORIES:
                raise ValueError(f"Invalid agent category: {entry['category']}")
            seen.add(agent_id)
        return value


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()
    for name in AppConfig.model_fields:
        if name not in raw:
            continue
        try:
            setattr(cfg, name, raw[name])
        except ValidationError as exc:
            logger.warning(
                "Ignoring invalid config value key=%s error=%s",
                name,
                exc.errors()[0].get("msg", "invalid"),
            )
    unknown = sorted(set(raw) - set(AppConfig.model_fields))
    if unknown:
        logger.debug("Ignoring unknown config keys=%s", unknown)
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return AppConfig()
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Falling back to default config path=%s error=%s", resolved, exc)
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()
    return _sanitize(raw)


def _resolve_dir(configured: str, env_name: str, default_name: str) -> Path:
    env_value = os.getenv(env_name, "").strip()
    if env_value:
        return Path(env_value).expanduser()
    if configured.strip():
        return Path(configured).expanduser()
    return Path(tempfile.gettempdir()) / default_name


def resolve_worktree_root(config: AppConfig) -> Path:
    return _resolve_dir(config.worktree_root, WORKTREE_ROOT_ENV, DEFAULT_WORKTREE_DIRNAME)


def resolve_hook_state_dir(config: AppConfig) -> Path:
    return _resolve_dir(config.hook_state_dir, STATE_DIR_ENV, DEFAULT_STATE_DIRNAME)
