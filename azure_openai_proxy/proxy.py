from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

import httpx
from fastapi.responses import Response, StreamingResponse

from azure_openai_proxy.resolver import ResolvedTarget

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

STREAM_RESPONSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

Operation = Literal["chat/completions", "embeddings"]

logger = logging.getLogger("uvicorn.error")


class UpstreamTransportError(RuntimeError):
    def __init__(self, message: str, *, url: str | None = None):
        self.url = url
        super().__init__(message)


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


@dataclass(slots=True)
class UpstreamResponse:
    status_code: int
    headers: dict[str, str]
    body: Any


def build_upstream_url(target: ResolvedTarget, operation: Operation) -> str:
    endpoint = target.endpoint.rstrip("/")
    return (
        f"{endpoint}/openai/deployments/{target.deployment}/{operation}"
        f"?api-version={target.api_version}"
    )


def prepare_payload(target: ResolvedTarget, payload: dict[str, Any]) -> dict[str, Any]:
    if not target.model_name_override:
        return payload
    return {**payload, "model": target.model_name_override}


def _build_upstream_headers(token: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {token}",
    }


class AzureOpenAIProxy:
    def __init__(
        self,
        *,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 600.0,
        write_timeout_seconds: float = 60.0,
        pool_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=max(0.1, float(read_timeout_seconds)),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _send(
        self,
        *,
        target: ResolvedTarget,
        payload: dict[str, Any],
        token: str,
        operation: Operation,
        stream: bool,
        request_id: str,
    ) -> httpx.Response:
        url = build_upstream_url(target, operation)
        if target.model_name_override:
            logger.info(
                "model_override request_id=%s model=%s",
                request_id,
                target.model_name_override,
            )
        request = self.client.build_request(
            method="POST",
            url=url,
            json=prepare_payload(target, payload),
            headers=_build_upstream_headers(token),
        )
        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s url=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise UpstreamTransportError(
                f"Could not reach Azure OpenAI ({details['error_type']}): {details['error']}",
                url=url,
            ) from exc
        logger.info(
            "proxy_upstream_connected request_id=%s deployment=%s connect_ms=%.2f status=%d stream=%s",
            request_id,
            target.deployment,
            (time.perf_counter() - started) * 1000.0,
            upstream.status_code,
            stream,
        )
        return upstream

    async def forward_buffered(
        self,
        target: ResolvedTarget,
        payload: dict[str, Any],
        token: str,
        *,
        operation: Operation,
        request_id: str = "-",
    ) -> UpstreamResponse:
        upstream = await self._send(
            target=target,
            payload=payload,
            token=token,
            operation=operation,
            stream=False,
            request_id=request_id,
        )
        try:
            body = upstream.json()
        except ValueError as exc:
            logger.warning(
                "proxy_upstream_invalid_json request_id=%s status=%d content_type=%s",
                request_id,
                upstream.status_code,
                upstream.headers.get("content-type"),
            )
            raise UpstreamTransportError(
                f"Azure OpenAI returned a non-JSON body (status {upstream.status_code})",
                url=str(upstream.request.url),
            ) from exc
        return UpstreamResponse(
            status_code=upstream.status_code,
            headers=_filter_response_headers(upstream.headers),
            body=body,
        )

    async def forward_streamed(
        self,
        target: ResolvedTarget,
        payload: dict[str, Any],
        token: str,
        *,
        operation: Operation = "chat/completions",
        request_id: str = "-",
    ) -> Response:
        upstream = await self._send(
            target=target,
            payload=payload,
            token=token,
            operation=operation,
            stream=True,
            request_id=request_id,
        )

        if upstream.status_code != 200:
            try:
                error_body = await upstream.aread()
            except httpx.RequestError as exc:
                raise UpstreamTransportError(
                    f"Could not read Azure OpenAI error body: {exc}",
                    url=str(upstream.request.url),
                ) from exc
            finally:
                await upstream.aclose()
            logger.info(
                "proxy_upstream_error_status request_id=%s status=%d bytes=%d",
                request_id,
                upstream.status_code,
                len(error_body),
            )
            return Response(
                content=error_body,
                status_code=upstream.status_code,
                media_type="application/json",
            )

        return StreamingResponse(
            content=self.relay_stream(upstream, request_id=request_id),
            status_code=200,
            headers=dict(STREAM_RESPONSE_HEADERS),
            media_type="text/event-stream",
        )

    @staticmethod
    async def relay_stream(
        upstream: httpx.Response, *, request_id: str = "-"
    ) -> AsyncIterator[bytes]:
        """Yield upstream body chunks in arrival order.

        The next upstream read only happens once the previous chunk has been
        consumed. Closing the generator, including cancellation on client
        disconnect, closes the upstream response.
        """
        chunks = 0
        try:
            async for chunk in upstream.aiter_bytes():
                if not chunk:
                    continue
                chunks += 1
                yield chunk
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_upstream_stream_error request_id=%s chunks=%d error_type=%s error=%s",
                request_id,
                chunks,
                details["error_type"],
                details["error"],
            )
            raise UpstreamTransportError(
                f"Azure OpenAI stream failed ({details['error_type']}): {details['error']}"
            ) from exc
        finally:
            await upstream.aclose()
            logger.info(
                "proxy_stream_closed request_id=%s chunks=%d", request_id, chunks
            )
