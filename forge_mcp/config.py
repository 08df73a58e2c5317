"""
Configuration objects for MCP servers and clients.

ServerConfig is the declarative description of one tool server as
contributed by the framework or by a plugin/app. ClientSettings holds
protocol-level knobs shared by every MCPClient.

Config files use the common MCP client layout:

    {
      "mcpServers": {
        "calc": {"command": "python", "args": ["-m", "forge_mcp.servers.calculator"]}
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"


@dataclass(frozen=True)
class ServerConfig:
    """Launch description for one MCP tool server."""
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    app_id: str | None = None
    registered_at: str | None = None
    description: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], name: str | None = None) -> "ServerConfig":
        """
        Build a config from a plain mapping.

        Accepts snake_case or camelCase keys (``app_id``/``appId``,
        ``registered_at``/``registeredAt``). ``name`` overrides the
        mapping's own name, for ``{"name": {...}}`` style config files.
        """
        server_name = name or data.get("name")
        if not server_name:
            raise ValueError("MCP server config requires a 'name'")
        command = data.get("command")
        if not command:
            raise ValueError(f"MCP server config '{server_name}' requires a 'command'")

        return cls(
            name=server_name,
            command=command,
            args=[str(a) for a in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            app_id=data.get("app_id", data.get("appId")),
            registered_at=data.get("registered_at", data.get("registeredAt")),
            description=data.get("description", ""),
            enabled=bool(data.get("enabled", True)),
        )

    def with_registration(self, app_id: str) -> "ServerConfig":
        """Return a copy tagged with the contributing app and a registration timestamp."""
        return replace(
            self,
            app_id=app_id,
            registered_at=datetime.now(timezone.utc).isoformat(),
        )

    def full_command(self) -> list[str]:
        return [self.command, *self.args]

    def merged_env(self) -> dict[str, str]:
        """Host environment with this server's overrides applied."""
        return {**os.environ, **self.env}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClientSettings:
    """Protocol and timing settings for MCPClient."""
    protocol_version: str = PROTOCOL_VERSION
    request_timeout: float = 30.0
    startup_grace: float = 1.0
    shutdown_timeout: float = 5.0
    client_name: str = "AgentForge Framework"
    client_version: str = "1.0.0"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ClientSettings":
        """Read overrides from FORGE_MCP_* environment variables."""
        environ = os.environ if environ is None else environ
        settings = cls()
        for attr, var in (
            ("request_timeout", "FORGE_MCP_REQUEST_TIMEOUT"),
            ("startup_grace", "FORGE_MCP_STARTUP_GRACE"),
            ("shutdown_timeout", "FORGE_MCP_SHUTDOWN_TIMEOUT"),
        ):
            raw = environ.get(var)
            if raw is None:
                continue
            try:
                setattr(settings, attr, float(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid {var}={raw!r}")
        return settings

    def client_info(self) -> dict[str, str]:
        return {"name": self.client_name, "version": self.client_version}


def coerce_server_configs(
    configs: Iterable[Mapping[str, Any] | ServerConfig] | Mapping[str, Mapping[str, Any]],
) -> list[ServerConfig]:
    """
    Normalize the accepted config shapes into ServerConfig objects.

    Accepts a list of mappings/ServerConfigs or a ``{name: {...}}`` mapping.
    Invalid entries raise ValueError; callers decide whether to skip them.
    """
    if isinstance(configs, Mapping):
        return [ServerConfig.from_dict(cfg, name=name) for name, cfg in configs.items()]

    result = []
    for cfg in configs:
        if isinstance(cfg, ServerConfig):
            result.append(cfg)
        else:
            result.append(ServerConfig.from_dict(cfg))
    return result


def load_server_configs(path: str | Path) -> list[ServerConfig]:
    """
    Load server configs from a JSON file.

    The file holds either ``{"mcpServers": {...}}``, a bare ``{name: {...}}``
    mapping, or a list of configs. Disabled servers are skipped.
    """
    path = Path(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and "mcpServers" in data:
        data = data["mcpServers"]

    configs = [c for c in coerce_server_configs(data) if c.enabled]
    logger.info(f"Loaded {len(configs)} MCP server configs from {path}")
    return configs
