from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from azure_openai_proxy.config import DeploymentEntry, ProxyConfig, load_proxy_config
from azure_openai_proxy.credentials import (
    AzureCliTokenFetcher,
    CredentialFetchError,
    TokenCache,
)
from azure_openai_proxy.proxy import (
    AzureOpenAIProxy,
    Operation,
    UpstreamTransportError,
    build_upstream_url,
)
from azure_openai_proxy.resolver import ModelNotConfiguredError, resolve_model
from azure_openai_proxy.settings import get_settings

app = FastAPI(
    title="Azure OpenAI Proxy",
    description="OpenAI-compatible API in front of Azure OpenAI deployments.",
    version="0.1.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

logger = logging.getLogger("uvicorn.error")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}
PREFLIGHT_HEADERS = {**CORS_HEADERS, "Access-Control-Max-Age": "86400"}


class BodyParseError(ValueError):
    pass


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message},
        headers=CORS_HEADERS,
    )


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    request.state.request_id = request_id
    logger.info(
        "request_received request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
    )

    if request.method == "OPTIONS":
        return Response(status_code=204, headers=PREFLIGHT_HEADERS)

    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


def _build_models_response(config: ProxyConfig) -> dict[str, Any]:
    created = int(time.time() * 1000)
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": "azure",
            }
            for model_id in config.model_names()
        ],
    }


def _log_startup_banner(config: ProxyConfig) -> None:
    logger.info(
        "startup complete port=%d models=%d default_endpoint=%s default_api_version=%s",
        config.port,
        len(config.models),
        config.default_endpoint,
        config.default_api_version,
    )
    for model_id, entry in config.models.items():
        if isinstance(entry, DeploymentEntry):
            logger.info(
                "model_mapping model=%s deployment=%s endpoint=%s",
                model_id,
                entry.deployment,
                config.default_endpoint,
            )
            continue
        logger.info(
            "model_mapping model=%s deployment=%s model_name=%s endpoint=%s api_version=%s",
            model_id,
            entry.deployment,
            entry.model_name,
            entry.endpoint or config.default_endpoint,
            entry.api_version or config.default_api_version,
        )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = load_proxy_config(settings)
    app.state.settings = settings
    app.state.proxy_config = config
    app.state.token_cache = TokenCache(
        AzureCliTokenFetcher(
            cli_path=settings.azure_cli_path,
            resource=settings.azure_token_resource,
            tenant_id=settings.azure_tenant_id,
            timeout_seconds=settings.credential_fetch_timeout_seconds,
        ),
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
    )
    app.state.upstream_proxy = AzureOpenAIProxy(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
    )
    _log_startup_banner(config)


@app.on_event("shutdown")
async def shutdown() -> None:
    upstream_proxy: AzureOpenAIProxy | None = getattr(
        app.state, "upstream_proxy", None
    )
    if upstream_proxy is not None:
        await upstream_proxy.close()
    logger.info("shutdown complete")


async def _read_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise BodyParseError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise BodyParseError("Expected a JSON object request body.")
    return payload


async def _proxy_json_request(request: Request, operation: Operation) -> Response:
    request_id: str = getattr(request.state, "request_id", None) or uuid4().hex[:12]
    config: ProxyConfig = app.state.proxy_config
    token_cache: TokenCache = app.state.token_cache
    upstream_proxy: AzureOpenAIProxy = app.state.upstream_proxy
    is_stream = False

    try:
        payload = await _read_json_body(request)
        requested_model = payload.get("model")
        target = resolve_model(requested_model, config)
        if target is None:
            raise ModelNotConfiguredError(requested_model)

        # Embeddings are always relayed buffered.
        is_stream = operation == "chat/completions" and payload.get("stream") is True
        logger.info(
            "route_resolved request_id=%s model=%s url=%s stream=%s",
            request_id,
            requested_model,
            build_upstream_url(target, operation),
            is_stream,
        )

        token = await token_cache.get_valid_token()
        if is_stream:
            return await upstream_proxy.forward_streamed(
                target,
                payload,
                token,
                operation=operation,
                request_id=request_id,
            )

        upstream = await upstream_proxy.forward_buffered(
            target,
            payload,
            token,
            operation=operation,
            request_id=request_id,
        )
        # The body is re-serialized, so the upstream content-type does not apply.
        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() != "content-type"
        }
        return JSONResponse(
            status_code=upstream.status_code,
            content=upstream.body,
            headers=headers,
        )
    except BodyParseError as exc:
        logger.info("invalid_body request_id=%s error=%s", request_id, exc)
        return _error_response(400, "Invalid JSON body")
    except ModelNotConfiguredError as exc:
        logger.info(
            "model_not_configured request_id=%s requested_model=%s available_models=%d",
            request_id,
            exc.requested_model,
            len(config.models),
        )
        return _error_response(400, str(exc))
    except CredentialFetchError as exc:
        logger.error("credential_fetch_failed request_id=%s error=%s", request_id, exc)
        return _error_response(500, "Internal server error")
    except UpstreamTransportError as exc:
        logger.error(
            "upstream_transport_failed request_id=%s stream=%s error=%s",
            request_id,
            is_stream,
            exc,
        )
        if is_stream:
            return _error_response(500, "Streaming error occurred")
        return _error_response(500, "Internal server error")
    except Exception:
        logger.exception("request_failed request_id=%s", request_id)
        return _error_response(500, "Internal server error")


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    config: ProxyConfig = app.state.proxy_config
    return _build_models_response(config)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _proxy_json_request(request, "chat/completions")


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> Response:
    return await _proxy_json_request(request, "embeddings")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    _: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Method mismatches on known paths are reported as plain not-found.
    if exc.status_code in {404, 405}:
        return _error_response(404, "Not found")
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_error path=%s error_type=%s error=%s",
        request.url.path,
        exc.__class__.__name__,
        exc,
    )
    return _error_response(500, "Internal server error")
