"""Engine configuration: YAML file, environment overrides and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigError

CONFIG_FILENAME = ".parallel-sessions.yaml"
ENV_PREFIX = "PARALLEL_SESSIONS_"
PACKAGE_LOGGER = "parallel_sessions"


@dataclass(slots=True)
class GitConfig:
    base_branch: str = "main"
    remote: str = "origin"
    push_enabled: bool = True
    fetch_enabled: bool = True


@dataclass(slots=True)
class SessionSettings:
    agent_command: str = "claude"
    tmux_prefix: str = ""
    wip_commit_on_pause: bool = True
    interrupt_delay: float = 0.5


@dataclass(slots=True)
class WorktreeConfig:
    path_template: str = "../{project}-{task_id}"
    branch_template: str = "sessions/{task_id}"
    init_commands: List[str] = field(default_factory=list)
    continue_on_failure: bool = True


@dataclass(slots=True)
class DevServerConfig:
    command: str = ""
    base_port: int = 3000
    window: int = 100
    cwd: str = "."
    port_env: List[str] = field(default_factory=lambda: ["PORT"])


@dataclass(slots=True)
class PRConfig:
    enabled: bool = True
    draft_by_default: bool = True


@dataclass(slots=True)
class MergeConfig:
    close_task: bool = True


@dataclass(slots=True)
class NetworkConfig:
    offline: bool = False
    check_url: str = "https://github.com"
    timeout: float = 5.0


@dataclass(slots=True)
class MonitorConfig:
    poll_interval: float = 0.5
    capture_timeout: float = 0.4
    capture_lines: int = 100


@dataclass(slots=True)
class PatternConfig:
    waiting: List[str] = field(default_factory=list)
    done: List[str] = field(default_factory=list)
    error: List[str] = field(default_factory=list)

    def as_mapping(self) -> Dict[str, List[str]]:
        return {"waiting": list(self.waiting), "done": list(self.done), "error": list(self.error)}


@dataclass(slots=True)
class EngineConfig:
    git: GitConfig = field(default_factory=GitConfig)
    session: SessionSettings = field(default_factory=SessionSettings)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    dev_server: DevServerConfig = field(default_factory=DevServerConfig)
    pr: PRConfig = field(default_factory=PRConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    task_command: str = "bd"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> None:
        if self.monitor.capture_timeout >= self.monitor.poll_interval:
            raise ConfigError("monitor.capture_timeout must be shorter than monitor.poll_interval")
        if self.monitor.poll_interval <= 0:
            raise ConfigError("monitor.poll_interval must be positive")
        if not 0 < self.dev_server.base_port < 65536:
            raise ConfigError("dev_server.base_port must be a valid TCP port")
        if "{task_id}" not in self.worktree.path_template:
            raise ConfigError("worktree.path_template must contain {task_id}")
        if "{task_id}" not in self.worktree.branch_template:
            raise ConfigError("worktree.branch_template must contain {task_id}")


def load_config(project_root: Path, path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    config = EngineConfig()
    config_path = Path(path) if path is not None else Path(project_root) / CONFIG_FILENAME
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        _merge(config, data, prefix="")
    elif path is not None:
        raise ConfigError(f"config file not found: {config_path}")
    _apply_env(config, os.environ if env is None else env)
    config.validate()
    return config


def _merge(target: Any, data: Mapping[str, Any], *, prefix: str) -> None:
    known = {item.name: item for item in fields(target)}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if key not in known:
            raise ConfigError(f"unknown config key: {dotted}")
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigError(f"{dotted} must be a mapping")
            _merge(current, value, prefix=f"{dotted}.")
            continue
        setattr(target, key, _coerce(dotted, current, value))


def _coerce(key: str, current: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be true or false")
        return value
    if isinstance(current, (int, float)) and not isinstance(current, bool):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number")
        return type(current)(value)
    if isinstance(current, list):
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise ConfigError(f"{key} must be a list")
        return [str(item) for item in value]
    return str(value)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env(config: EngineConfig, env: Mapping[str, str]) -> None:
    offline = env.get(f"{ENV_PREFIX}OFFLINE")
    if offline is not None:
        config.network.offline = _env_flag(offline)
    base_branch = env.get(f"{ENV_PREFIX}BASE_BRANCH")
    if base_branch:
        config.git.base_branch = base_branch
    agent = env.get(f"{ENV_PREFIX}AGENT_COMMAND")
    if agent:
        config.session.agent_command = agent
    level = env.get(f"{ENV_PREFIX}LOG_LEVEL")
    if level:
        config.log_level = level.upper()


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """Attach handlers to the package logger once."""

    logger = logging.getLogger(PACKAGE_LOGGER)
    numeric = logging.getLevelName(str(level).upper())
    logger.setLevel(numeric if isinstance(numeric, int) else logging.INFO)

    if not logger.handlers:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        logger.addHandler(stream)
        if log_file is not None:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, encoding="utf-8")
            handler.setFormatter(formatter)
            logger.addHandler(handler)

    return logger
