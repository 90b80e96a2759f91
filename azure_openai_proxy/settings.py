from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "~/.azure-openai-proxy.json"


class Settings(BaseSettings):
    host: str = "127.0.0.1"
    port: int | None = None
    log_level: str = "info"
    azure_endpoint: str | None = None
    azure_openai_api_version: str | None = None
    azure_openai_proxy_config_path: str = DEFAULT_CONFIG_PATH
    azure_cli_path: str = "az"
    azure_token_resource: str = "https://cognitiveservices.azure.com"
    azure_tenant_id: str | None = None
    token_refresh_buffer_seconds: int = 600
    credential_fetch_timeout_seconds: float = 60.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 600.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def config_path(self) -> Path:
        return Path(self.azure_openai_proxy_config_path).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
