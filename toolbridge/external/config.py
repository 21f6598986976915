"""
External Server Configuration Management.

Defines the per-server connection config and loads server definitions from
a YAML (or JSON) settings file.

Example file:

    servers:
      filesystem:
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]
        env:
          API_KEY: ${FS_API_KEY}
      remote:
        transport: streamableHttp
        url: https://example.com/mcp
    disabled:
      - remote
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from toolbridge.errors import InvalidConfigError
from toolbridge.utils import substitute_env_vars

logger = logging.getLogger(__name__)

_TRANSPORT_ALIASES = {
    "stdio": "stdio",
    "subprocess": "stdio",
    "sse": "sse",
    "streamablehttp": "streamableHttp",
    "streamable-http": "streamableHttp",
    "streamable_http": "streamableHttp",
    "http": "streamableHttp",
}


class TransportKind(str, Enum):
    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamableHttp"


class ServerConnectionConfig(BaseModel):
    """Connection definition for one server. Immutable per attempt."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    transport: TransportKind = TransportKind.STDIO
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("transport", mode="before")
    @classmethod
    def _normalize_transport(cls, value: Any) -> Any:
        if value is None:
            return TransportKind.STDIO
        if isinstance(value, str):
            normalized = _TRANSPORT_ALIASES.get(value.strip().lower())
            if normalized is None:
                raise ValueError(f"Unknown transport: {value}")
            return normalized
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _default_args(cls, value: Any) -> Any:
        return () if value is None else value

    @model_validator(mode="after")
    def _check_shape(self) -> "ServerConnectionConfig":
        if self.transport == TransportKind.STDIO:
            if not self.command:
                raise ValueError("'command' required for stdio transport")
        else:
            if not self.url:
                raise ValueError(f"'url' required for {self.transport.value} transport")
            parsed = urlparse(self.url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError(f"Invalid 'url' for {self.transport.value} transport: {self.url}")
        return self

    @property
    def is_network(self) -> bool:
        return self.transport != TransportKind.STDIO


def parse_server_config(
    server_id: str,
    data: Union[ServerConnectionConfig, Mapping[str, Any]],
) -> ServerConnectionConfig:
    """Validate a server definition, raising InvalidConfigError on mismatch."""
    if isinstance(data, ServerConnectionConfig):
        return data
    if not isinstance(data, Mapping):
        raise InvalidConfigError(f"Server {server_id}: definition must be a mapping")
    try:
        return ServerConnectionConfig.model_validate(dict(data))
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise InvalidConfigError(
            f"Server {server_id}: {messages}",
            details={"server_id": server_id, "errors": e.errors(include_url=False)},
        ) from e


class ServerSettings(BaseModel):
    """Server definitions plus the ids the user switched off."""

    servers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    disabled_ids: List[str] = Field(default_factory=list)
    # id -> reason, for entries that are not definitions at all
    invalid: Dict[str, str] = Field(default_factory=dict)

    def enabled(self) -> Dict[str, Dict[str, Any]]:
        return {
            server_id: definition
            for server_id, definition in self.servers.items()
            if server_id not in self.disabled_ids and definition.get("enabled", True)
        }


class ServerSettingsStore:
    """
    Loads and saves server definitions from a YAML file.
    """

    def __init__(self, config_path: Union[str, Path]):
        self.config_path = Path(config_path)

    def _read_raw(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            logger.warning(f"Config file not found: {self.config_path}")
            return {}

        with open(self.config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise InvalidConfigError(f"Config file {self.config_path} must contain a mapping")
        return raw

    def load(self) -> ServerSettings:
        """
        Load server definitions.

        Accepts both `servers`/`disabled` and the desktop-style
        `mcpServers`/`disabledMcpServers` keys.
        """
        raw = self._read_raw()
        servers = raw.get("servers") or raw.get("mcpServers") or {}
        disabled = raw.get("disabled") or raw.get("disabledMcpServers") or []

        if not isinstance(servers, Mapping):
            raise InvalidConfigError(f"Config file {self.config_path}: servers must be a mapping")
        if isinstance(disabled, str):
            disabled = [disabled]

        definitions: Dict[str, Dict[str, Any]] = {}
        invalid: Dict[str, str] = {}
        for server_id, definition in servers.items():
            server_id = str(server_id)
            if not definition:
                continue
            if not isinstance(definition, Mapping):
                reason = f"definition must be a mapping, got {type(definition).__name__}"
                logger.warning(f"Skipping server {server_id}: {reason}")
                invalid[server_id] = reason
                continue
            definitions[server_id] = substitute_env_vars(dict(definition))

        logger.info(f"Loaded {len(definitions)} server definitions from {self.config_path}")
        return ServerSettings(servers=definitions, disabled_ids=[str(s) for s in disabled], invalid=invalid)

    def set_enabled(self, server_id: str, enabled: bool) -> bool:
        """
        Add or remove a server id from the disabled list.

        Returns:
            True if the file changed
        """
        raw = self._read_raw()
        key = "disabledMcpServers" if "disabledMcpServers" in raw else "disabled"
        disabled = list(raw.get(key) or [])

        if enabled and server_id in disabled:
            disabled.remove(server_id)
        elif not enabled and server_id not in disabled:
            disabled.append(server_id)
        else:
            return False

        raw[key] = disabled
        self.save(raw)
        logger.info(f"{'Enabled' if enabled else 'Disabled'} server {server_id}")
        return True

    def save(self, config: Dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Config saved to {self.config_path}")
