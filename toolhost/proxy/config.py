"""Configuration management for the tool host."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_DIR_NAME = ".toolhost"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "TOOLHOST_"

DEFAULT_CONFIG: dict[str, Any] = {
    "ollama_url": "http://127.0.0.1:11434",
    "ollama_model": "qwen3:14b",
    "ollama_timeout": 600.0,
    "ollama_num_ctx": 32768,
    "ollama_temperature": 0.6,
    "ollama_num_predict": 4096,
    "ollama_keep_alive": "5m",
    "proxy_host": "127.0.0.1",
    "proxy_port": 3000,
    # npx-style helpers may download their package on first launch
    "discovery_timeout": 90.0,
    "tool_call_timeout": 120.0,
    "agent_max_rounds": 10,
    "mcp_servers": [
        {
            "name": "Context7",
            "command": "npx",
            "args": ["-y", "@upstash/context7-mcp@latest"],
            "env": None,
            "enabled": False,
        },
    ],
}


@dataclass(frozen=True)
class ServerSpec:
    """Launch contract for one helper process."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSpec:
        if not isinstance(data, dict):
            raise ValueError(f"server entry must be an object, got {type(data).__name__}")
        name = data.get("name")
        command = data.get("command")
        if not name or not command:
            raise ValueError("server entry needs 'name' and 'command'")
        args = data.get("args") or []
        if not isinstance(args, list):
            raise ValueError(f"'args' of server '{name}' must be a list")
        env = data.get("env")
        if env is not None and not isinstance(env, dict):
            raise ValueError(f"'env' of server '{name}' must be an object")
        return cls(
            name=str(name),
            command=str(command),
            args=tuple(str(a) for a in args),
            env={str(k): str(v) for k, v in env.items()} if env else None,
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env) if self.env else None,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.toolhost/config.json."""

    # Ollama
    ollama_url: str
    ollama_model: str
    ollama_timeout: float
    ollama_num_ctx: int
    ollama_temperature: float
    ollama_num_predict: int
    ollama_keep_alive: str

    # Proxy server
    proxy_host: str
    proxy_port: int

    # Tool servers
    discovery_timeout: float
    tool_call_timeout: float
    agent_max_rounds: int
    mcp_servers: tuple[ServerSpec, ...] = field(default_factory=tuple)

    def enabled_servers(self) -> list[ServerSpec]:
        return [s for s in self.mcp_servers if s.enabled]

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from the given path or the default location."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_file = Path.home() / APP_DIR_NAME / CONFIG_FILENAME

        current_config = dict(DEFAULT_CONFIG)

        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    user_config = json.load(f)
                if not isinstance(user_config, dict):
                    raise ValueError("top-level value must be an object")
                current_config.update(user_config)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
        else:
            logger.warning(f"No config found at {config_file}, using default configuration")

        # Scalar overrides from the environment, coerced to the default's type
        for key, default_val in DEFAULT_CONFIG.items():
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key not in os.environ or isinstance(default_val, (list, dict)):
                continue
            val = os.environ[env_key]
            try:
                if isinstance(default_val, bool):
                    current_config[key] = val.lower() in ("true", "1", "yes")
                elif isinstance(default_val, int):
                    current_config[key] = int(val)
                elif isinstance(default_val, float):
                    current_config[key] = float(val)
                else:
                    current_config[key] = val
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_key}: {val!r}")

        known = {k: current_config[k] for k in DEFAULT_CONFIG}
        known["mcp_servers"] = tuple(_parse_servers(known.get("mcp_servers")))
        return cls(**known)


def _parse_servers(raw: Any) -> list[ServerSpec]:
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("'mcp_servers' must be a list; ignoring it")
        return []
    servers: list[ServerSpec] = []
    for entry in raw:
        try:
            servers.append(ServerSpec.from_dict(entry))
        except ValueError as e:
            logger.warning(f"Skipping malformed server entry: {e}")
    return servers


# Singleton
_config: Config | None = None


def get_config(config_path: str | Path | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


def reset_config() -> None:
    global _config
    _config = None
