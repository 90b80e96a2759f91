from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

from azure_openai_proxy.credentials import AccessToken, CredentialFetchError, TokenCache
from azure_openai_proxy.main import app
from azure_openai_proxy.proxy import AzureOpenAIProxy
from azure_openai_proxy.settings import get_settings

TEST_PROXY_CONFIG_PATH = (
    Path(__file__).resolve().parent / "fixtures" / "proxy.config.json"
)

_OVERRIDABLE_ENV = ("PORT", "AZURE_ENDPOINT", "AZURE_OPENAI_API_VERSION")


class StaticTokenFetcher:
    def __init__(
        self,
        token: str = "test-token",
        *,
        expires_in: int = 3600,
        fail: bool = False,
    ) -> None:
        self.token = token
        self.expires_in = expires_in
        self.fail = fail
        self.calls = 0

    async def fetch_token(self) -> AccessToken:
        self.calls += 1
        if self.fail:
            raise CredentialFetchError("az login required")
        return AccessToken(token=self.token, expires_on=int(time.time()) + self.expires_in)


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("AZURE_OPENAI_PROXY_CONFIG_PATH", str(TEST_PROXY_CONFIG_PATH))
    for name in _OVERRIDABLE_ENV:
        monkeypatch.delenv(name, raising=False)


def build_test_client(monkeypatch: Any, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app, raise_server_exceptions=False)


def install_fakes(
    handler: Callable[[httpx.Request], httpx.Response],
    fetcher: StaticTokenFetcher | None = None,
) -> StaticTokenFetcher:
    """Swap the startup-built token cache and upstream client for fakes."""
    fetcher = fetcher or StaticTokenFetcher()
    app.state.token_cache = TokenCache(fetcher)
    app.state.upstream_proxy = AzureOpenAIProxy(transport=httpx.MockTransport(handler))
    return fetcher
