from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeSettings(BaseSettings):
    data_dir: str = "toolbridge_data"
    config_path: str | None = None
    database_url: str | None = None
    scripts_dir: str | None = None
    log_level: str = "info"

    # Connect timeouts (seconds), keyed by how the server is launched
    launcher_connect_timeout: float = 10.0
    interpreter_connect_timeout: float = 5.0
    native_connect_timeout: float = 3.0
    network_connect_timeout: float = 10.0
    list_tools_timeout: float = 15.0
    close_timeout: float = 5.0

    health_check_interval: float = 60.0
    health_check_timeout: float = 15.0

    use_stored_credentials: bool = True
    callback_host: str = "127.0.0.1"
    callback_port_base: int = 10000
    callback_port_max: int = 10999
    oauth_client_name: str = "toolbridge"
    oauth_scope: str | None = "openid profile email offline_access"
    oauth_http_timeout: float = 30.0
    mcp_protocol_version: str = "2025-06-18"

    model_config = SettingsConfigDict(
        env_prefix="TOOLBRIDGE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def servers_config_path(self) -> Path:
        if self.config_path:
            return Path(self.config_path)
        return Path(self.data_dir) / "servers.yaml"


@lru_cache(maxsize=1)
def get_settings() -> BridgeSettings:
    return BridgeSettings()
