from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol

logger = logging.getLogger("uvicorn.error")

DEFAULT_REFRESH_BUFFER_SECONDS = 10 * 60
_LEGACY_EXPIRES_ON_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")


class CredentialFetchError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class AccessToken:
    token: str
    expires_on: int


class TokenFetcher(Protocol):
    async def fetch_token(self) -> AccessToken: ...


class TokenState(str, Enum):
    EMPTY = "empty"
    FRESH = "fresh"
    STALE = "stale"


def _parse_expires_on(payload: dict[str, Any]) -> int | None:
    raw = payload.get("expires_on")
    if raw is not None and not isinstance(raw, bool):
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            pass

    # Older Azure CLI releases only report a local-time timestamp.
    legacy = payload.get("expiresOn")
    if isinstance(legacy, str) and legacy.strip():
        for fmt in _LEGACY_EXPIRES_ON_FORMATS:
            try:
                return int(datetime.strptime(legacy.strip(), fmt).timestamp())
            except ValueError:
                continue
    return None


def parse_cli_token_output(raw: bytes | str) -> AccessToken:
    text = raw.decode(errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise CredentialFetchError("Azure CLI returned non-JSON token output") from exc
    if not isinstance(payload, dict):
        raise CredentialFetchError("Azure CLI token output is not a JSON object")

    raw_token = payload.get("accessToken")
    token = raw_token.strip() if isinstance(raw_token, str) else ""
    if not token:
        raise CredentialFetchError("Azure CLI token output is missing 'accessToken'")

    expires_on = _parse_expires_on(payload)
    if expires_on is None:
        raise CredentialFetchError("Azure CLI token output is missing 'expires_on'")
    return AccessToken(token=token, expires_on=expires_on)


class AzureCliTokenFetcher:
    def __init__(
        self,
        *,
        cli_path: str = "az",
        resource: str = "https://cognitiveservices.azure.com",
        tenant_id: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.cli_path = cli_path
        self.resource = resource
        self.tenant_id = tenant_id
        self.timeout_seconds = timeout_seconds

    def build_command(self) -> list[str]:
        cmd = [
            self.cli_path,
            "account",
            "get-access-token",
            "--resource",
            self.resource,
            "--output",
            "json",
        ]
        if self.tenant_id:
            cmd.extend(["--tenant", self.tenant_id])
        return cmd

    async def fetch_token(self) -> AccessToken:
        cmd = self.build_command()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CredentialFetchError(
                f"Could not run '{self.cli_path}': {exc}"
            ) from exc

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CredentialFetchError(
                f"Azure CLI token request timed out after {self.timeout_seconds:g}s"
            ) from exc

        if proc.returncode != 0:
            detail = err.decode(errors="ignore").strip()
            raise CredentialFetchError(
                detail or f"az account get-access-token failed: {proc.returncode}"
            )
        return parse_cli_token_output(out)


class TokenCache:
    """Single cached bearer token, refreshed before it leaves the freshness window.

    Every read and write goes through one lock, so concurrent callers that
    find the cache empty or stale wait for a single refresh instead of
    starting their own.
    """

    def __init__(
        self,
        fetcher: TokenFetcher,
        *,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetcher = fetcher
        self._refresh_buffer_seconds = refresh_buffer_seconds
        self._clock = clock
        self._cached: AccessToken | None = None
        self._lock = asyncio.Lock()

    @property
    def cached_token(self) -> AccessToken | None:
        return self._cached

    @property
    def state(self) -> TokenState:
        return self._state_of(self._cached)

    def _state_of(self, cached: AccessToken | None) -> TokenState:
        if cached is None:
            return TokenState.EMPTY
        now = int(self._clock())
        if now + self._refresh_buffer_seconds < cached.expires_on:
            return TokenState.FRESH
        return TokenState.STALE

    async def get_valid_token(self) -> str:
        async with self._lock:
            current = self._cached
            state = self._state_of(current)
            if current is not None and state == TokenState.FRESH:
                return current.token

            logger.info("token_refresh_start state=%s", state.value)
            try:
                refreshed = await self._fetcher.fetch_token()
            except CredentialFetchError as exc:
                logger.warning("token_refresh_error state=%s error=%s", state.value, exc)
                raise
            self._cached = refreshed
            logger.info("token_refresh_success expires_on=%d", refreshed.expires_on)
            return refreshed.token
