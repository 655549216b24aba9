"""HTTP client for the ElevenLabs REST API."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Optional

import httpx

from .config import Settings
from .errors import ApiError, ConfigurationError

logger = logging.getLogger(__name__)

_BAD_GATEWAY = 502


class ElevenLabsClient:
    """Thin async wrapper that owns the connection pool and API key header."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None
        self._client_lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def _base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self._settings.elevenlabs_base_url).rstrip("/")

    @property
    def _headers(self) -> dict[str, str]:
        api_key = self._settings.elevenlabs_api_key
        if api_key is None or not api_key.get_secret_value():
            raise ConfigurationError(
                "ELEVENLABS_API_KEY must be configured", key="ELEVENLABS_API_KEY"
            )
        return {
            "xi-api-key": api_key.get_secret_value(),
            "Content-Type": "application/json",
        }

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        async with self._client_lock:
            if self._http_client is None:
                timeout = httpx.Timeout(
                    self._settings.request_timeout,
                    connect=self._settings.connect_timeout,
                )
                self._http_client = httpx.AsyncClient(timeout=timeout)
                logger.debug("Created httpx.AsyncClient for %s", self._base_url)
        return self._http_client

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""

        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "ElevenLabsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        headers = self._headers
        client = await self._get_http_client()
        try:
            response = await client.request(
                method,
                self.url(path),
                headers=headers,
                params=params,
                json=json_body,
            )
        except httpx.HTTPError as exc:
            raise ApiError(_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise ApiError(response.status_code, detail)
        return response

    async def get_json(
        self, path: str, *, params: Mapping[str, str] | None = None
    ) -> Any:
        response = await self._request("GET", path, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(_BAD_GATEWAY, f"Invalid JSON from {path}: {exc}") from exc

    async def get_bytes(self, path: str) -> bytes:
        response = await self._request("GET", path)
        return response.content

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    @asynccontextmanager
    async def stream_post(
        self,
        path: str,
        *,
        json_body: Any,
        params: Mapping[str, str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """POST and yield the response once headers arrive, before the body.

        Error statuses are raised as :class:`ApiError` after reading the
        (short) error body.
        """
        headers = self._headers
        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                self.url(path),
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise ApiError(response.status_code, detail)
                yield response
        except httpx.HTTPError as exc:
            raise ApiError(_BAD_GATEWAY, str(exc)) from exc

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "ElevenLabs returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("detail") or payload
        return payload


__all__ = ["ElevenLabsClient"]
