import asyncio
import json
from typing import Any

import httpx
import pytest

from azure_openai_proxy.proxy import (
    AzureOpenAIProxy,
    UpstreamTransportError,
    build_upstream_url,
    prepare_payload,
)
from azure_openai_proxy.resolver import ResolvedTarget


def _target(**overrides: Any) -> ResolvedTarget:
    values: dict[str, Any] = {
        "deployment": "embeddings-small",
        "endpoint": "https://east.openai.azure.com/",
        "api_version": "2024-10-21",
    }
    values.update(overrides)
    return ResolvedTarget(**values)


def test_build_upstream_url_strips_trailing_slash() -> None:
    assert build_upstream_url(_target(), "embeddings") == (
        "https://east.openai.azure.com/openai/deployments/embeddings-small/"
        "embeddings?api-version=2024-10-21"
    )


def test_prepare_payload_replaces_model_without_mutating_request() -> None:
    payload = {"model": "client-name", "input": "hello"}

    prepared = prepare_payload(_target(model_name_override="text-embedding-3-small"), payload)

    assert prepared == {"model": "text-embedding-3-small", "input": "hello"}
    assert payload["model"] == "client-name"
    assert prepare_payload(_target(), payload) is payload


def test_forward_buffered_returns_status_headers_and_parsed_body() -> None:
    captured: dict[str, Any] = {}
    upstream_body = {"object": "list", "data": [{"embedding": [0.1, 0.2]}]}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=upstream_body,
            headers={"x-ms-region": "East US", "apim-request-id": "req-1"},
        )

    async def _run() -> Any:
        proxy = AzureOpenAIProxy(transport=httpx.MockTransport(handler))
        try:
            return await proxy.forward_buffered(
                _target(),
                {"model": "text-embedding-3-small", "input": "hello"},
                "token-1",
                operation="embeddings",
            )
        finally:
            await proxy.close()

    result = asyncio.run(_run())

    assert result.status_code == 200
    assert result.body == upstream_body
    assert result.headers["x-ms-region"] == "East US"
    assert "content-length" not in {name.lower() for name in result.headers}
    assert captured["method"] == "POST"
    assert captured["url"].endswith("/embeddings?api-version=2024-10-21")
    assert captured["headers"]["authorization"] == "Bearer token-1"
    assert captured["headers"]["content-type"] == "application/json"
    assert captured["body"] == {"model": "text-embedding-3-small", "input": "hello"}


def test_forward_buffered_relays_upstream_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            404,
            json={"error": {"code": "DeploymentNotFound", "message": "missing"}},
        )

    async def _run() -> Any:
        proxy = AzureOpenAIProxy(transport=httpx.MockTransport(handler))
        try:
            return await proxy.forward_buffered(
                _target(), {"input": "x"}, "token-1", operation="embeddings"
            )
        finally:
            await proxy.close()

    result = asyncio.run(_run())

    assert result.status_code == 404
    assert result.body["error"]["code"] == "DeploymentNotFound"


def test_forward_buffered_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        msg = "timed out"
        raise httpx.ConnectTimeout(msg, request=request)

    async def _run() -> Any:
        proxy = AzureOpenAIProxy(transport=httpx.MockTransport(handler))
        try:
            return await proxy.forward_buffered(
                _target(), {"input": "x"}, "token-1", operation="embeddings"
            )
        finally:
            await proxy.close()

    with pytest.raises(UpstreamTransportError, match="ConnectTimeout"):
        asyncio.run(_run())


def test_forward_buffered_non_json_body_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    async def _run() -> Any:
        proxy = AzureOpenAIProxy(transport=httpx.MockTransport(handler))
        try:
            return await proxy.forward_buffered(
                _target(), {"input": "x"}, "token-1", operation="embeddings"
            )
        finally:
            await proxy.close()

    with pytest.raises(UpstreamTransportError, match="non-JSON"):
        asyncio.run(_run())
