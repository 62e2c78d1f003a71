"""
Configuration loading and validation for metagent.

This module handles:
- Locating the repository root (METAGENT_REPO_ROOT or an upward search)
- Loading the optional .agents/config.yaml
- Environment variable resolution (${VAR} syntax)
- Default values for every tunable
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

ENV_AGENT = "METAGENT_AGENT"
ENV_MODEL = "METAGENT_MODEL"
ENV_REPO_ROOT = "METAGENT_REPO_ROOT"
ENV_SESSION = "METAGENT_SESSION"
ENV_TASK = "METAGENT_TASK"

CONFIG_FILE_NAME = "config.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class ClaimConfig:
    """Execution lease configuration."""
    ttl_seconds: int = 3600                    # Lease lifetime before it may be reclaimed


@dataclass
class StoreConfig:
    """Record store configuration."""
    lock_timeout_seconds: float = -1           # -1 blocks until the lock is free


@dataclass
class SupervisorConfig:
    """Process supervisor timing."""
    poll_interval_seconds: float = 0.5         # Session/process poll interval
    interrupt_attempts: int = 3                # SIGINT rounds before escalating
    interrupt_wait_seconds: float = 0.5        # Wait after each SIGINT round
    terminate_wait_seconds: float = 1.0        # Wait after SIGTERM
    kill_wait_seconds: float = 1.0             # Wait after SIGKILL
    tree_poll_seconds: float = 0.1             # Exit check interval while waiting


@dataclass
class QueueConfig:
    """Queue runner configuration."""
    loop_limit: int = 0                        # review->build bounces before holding (0 = default)


@dataclass
class ModelConfig:
    """External agent binaries."""
    default: str = "claude"                    # Model used when nothing else decides
    claude_binary: str = "claude"
    codex_binary: str = "codex"


@dataclass
class MetagentConfig:
    """
    Main configuration for metagent.

    Paths are derived from repo_root and the selected agent kind; all
    persisted state lives under <repo_root>/.agents/<agent>/.
    """
    # Paths
    repo_root: str = "."
    agents_dir: str = ".agents"
    agent: str = "code"
    prompt_dir: Optional[str] = None

    # Nested configurations
    claims: ClaimConfig = field(default_factory=ClaimConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    models: ModelConfig = field(default_factory=ModelConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def agents_path(self) -> Path:
        """Absolute path to the .agents directory."""
        return Path(self.repo_root) / self.agents_dir

    @property
    def agent_path(self) -> Path:
        """Root of all state for the selected agent kind."""
        return self.agents_path / self.agent

    @property
    def logs_path(self) -> Path:
        return self.agent_path / "logs"

    @property
    def prompt_path(self) -> Path:
        """Directory holding the stage prompt files for the agent kind."""
        if self.prompt_dir:
            return Path(self.prompt_dir).expanduser() / self.agent
        return Path.home() / ".metagent" / self.agent


# Module-level cache for the loaded configuration
_config_cache: Optional[MetagentConfig] = None


def find_repo_root(start: Optional[Path] = None) -> Path:
    """
    Locate the repository root.

    METAGENT_REPO_ROOT wins; otherwise walk up from `start` (default: cwd)
    until a directory containing `.agents/` or `.git/` is found.

    Raises:
        ConfigError: If no repository can be found.
    """
    env_root = os.environ.get(ENV_REPO_ROOT)
    if env_root:
        return Path(env_root)

    current = (start or Path.cwd()).absolute()
    for candidate in [current, *current.parents]:
        if (candidate / ".agents").is_dir() or (candidate / ".git").is_dir():
            return candidate

    raise ConfigError(
        "No repo found (missing .agents/ or .git). Run 'metagent init' in a repo."
    )


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _parse_claim_config(data: dict[str, Any]) -> ClaimConfig:
    """Parse claim configuration from dict."""
    ttl = int(data.get("ttl_seconds", 3600))
    if ttl <= 0:
        raise ConfigError("claims.ttl_seconds must be positive")
    return ClaimConfig(ttl_seconds=ttl)


def _parse_store_config(data: dict[str, Any]) -> StoreConfig:
    """Parse record store configuration from dict."""
    return StoreConfig(lock_timeout_seconds=float(data.get("lock_timeout_seconds", -1)))


def _parse_supervisor_config(data: dict[str, Any]) -> SupervisorConfig:
    """Parse supervisor configuration from dict."""
    attempts = int(data.get("interrupt_attempts", 3))
    if attempts < 0:
        raise ConfigError("supervisor.interrupt_attempts cannot be negative")
    return SupervisorConfig(
        poll_interval_seconds=float(data.get("poll_interval_seconds", 0.5)),
        interrupt_attempts=attempts,
        interrupt_wait_seconds=float(data.get("interrupt_wait_seconds", 0.5)),
        terminate_wait_seconds=float(data.get("terminate_wait_seconds", 1.0)),
        kill_wait_seconds=float(data.get("kill_wait_seconds", 1.0)),
        tree_poll_seconds=float(data.get("tree_poll_seconds", 0.1)),
    )


def _parse_queue_config(data: dict[str, Any]) -> QueueConfig:
    """Parse queue configuration from dict."""
    limit = int(data.get("loop_limit", 0))
    if limit < 0:
        raise ConfigError("queue.loop_limit cannot be negative")
    return QueueConfig(loop_limit=limit)


def _parse_model_config(data: dict[str, Any]) -> ModelConfig:
    """Parse model configuration from dict."""
    return ModelConfig(
        default=data.get("default", "claude"),
        claude_binary=data.get("claude_binary", "claude"),
        codex_binary=data.get("codex_binary", "codex"),
    )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and env-resolve a YAML config file. Missing file means defaults."""
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if not raw_data:
        raise ConfigError(f"Configuration file is empty: {path}")
    if not isinstance(raw_data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {path}")

    return _resolve_env_vars(raw_data)


def load_config(
    repo_root: Optional[str | Path] = None,
    agent: Optional[str] = None,
    config_path: Optional[str | Path] = None,
) -> MetagentConfig:
    """
    Load configuration for a repository.

    Args:
        repo_root: Repository root. Discovered with find_repo_root() if omitted.
        agent: Agent kind. Falls back to METAGENT_AGENT, then the config
               file's `agent` key, then "code".
        config_path: Explicit config file. Defaults to .agents/config.yaml.

    Returns:
        MetagentConfig: Loaded configuration.

    Raises:
        ConfigError: If the repository cannot be found or the file is invalid.
    """
    root = Path(repo_root) if repo_root is not None else find_repo_root()
    path = Path(config_path) if config_path else root / ".agents" / CONFIG_FILE_NAME
    data = _read_config_file(path)

    selected_agent = agent or os.environ.get(ENV_AGENT) or data.get("agent") or "code"

    return MetagentConfig(
        repo_root=str(root),
        agents_dir=data.get("agents_dir", ".agents"),
        agent=selected_agent,
        prompt_dir=data.get("prompt_dir"),
        claims=_parse_claim_config(data.get("claims", {}) or {}),
        store=_parse_store_config(data.get("store", {}) or {}),
        supervisor=_parse_supervisor_config(data.get("supervisor", {}) or {}),
        queue=_parse_queue_config(data.get("queue", {}) or {}),
        models=_parse_model_config(data.get("models", {}) or {}),
    )


def get_config(force_reload: bool = False, **kwargs: Any) -> MetagentConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        force_reload: If True, reload configuration even if cached.
        **kwargs: Passed through to load_config().

    Returns:
        MetagentConfig: The loaded configuration.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(**kwargs)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
