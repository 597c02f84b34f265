"""HTTP transport shared by the Ollama embedding and completion providers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from workspace_rag.core.errors import (
    ContentRejected,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
)
from workspace_rag.core.logging import get_logger

logger = get_logger("llm.http")

_REJECTION_MARKERS = ("content", "policy", "safety", "moderation", "refus")


def map_transport_error(error: httpx.HTTPError) -> ProviderError:
    """Translate an httpx failure into the provider error taxonomy."""
    if isinstance(error, httpx.TimeoutException):
        return ProviderTimeout(f"Request timed out: {error!s}")
    return ProviderUnavailable(f"Cannot reach model server: {error!s}")


class OllamaHTTPClient:
    """
    Async HTTP client for an Ollama server.

    Owns one ``httpx.AsyncClient``; always close it, or use it as an async
    context manager:

        async with OllamaHTTPClient("http://localhost:11434") as client:
            data = await client.post_json("/api/embed", payload)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        connect_timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Server URL, e.g. ``http://localhost:11434``.
            timeout: Read/write timeout in seconds.
            connect_timeout: Connection timeout in seconds.
            max_retries: Attempts for non-streaming requests.
            retry_delay: Base delay for exponential backoff.
            username: Optional HTTP basic auth user.
            password: Optional HTTP basic auth password.
            transport: Custom transport (tests use ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._auth = httpx.BasicAuth(username, password or "") if username else None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._closed = False

    async def _get_client(self) -> httpx.AsyncClient:
        if self._closed:
            raise RuntimeError("Client is closed")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self._auth,
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                transport=self._transport,
            )
        return self._client

    async def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a JSON body and return the JSON response, with retries.

        Transient failures (unreachable server, 5xx, timeouts) are retried
        with exponential backoff; the last one is raised.

        Raises:
            ProviderUnavailable, ProviderTimeout, ContentRejected, ProviderError
        """
        client = await self._get_client()
        last_error: ProviderError | None = None

        for attempt in range(self.max_retries):
            try:
                response = await client.post(path, json=payload)
                await self._check_response(response)
                result: dict[str, Any] = response.json()
                return result
            except httpx.HTTPError as e:
                last_error = map_transport_error(e)
            except json.JSONDecodeError as e:
                raise ProviderError(f"Invalid JSON from {path}: {e}") from e
            except ProviderError as e:
                if not e.transient:
                    raise
                last_error = e

            if attempt + 1 < self.max_retries:
                wait_time = self.retry_delay * (2**attempt)
                logger.warning(
                    f"{last_error.code} on {path}, retrying in {wait_time}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(wait_time)

        assert last_error is not None
        raise last_error

    async def stream_lines(
        self, path: str, payload: dict[str, Any]
    ) -> AsyncIterator[str]:
        """
        POST a JSON body and yield non-empty response lines as they arrive.

        Streams are not retried here: output may already have been consumed.
        """
        client = await self._get_client()
        try:
            async with client.stream("POST", path, json=payload) as response:
                await self._check_response(response)
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
        except httpx.HTTPError as e:
            raise map_transport_error(e) from e

    async def health_check(self) -> bool:
        """Return True if the server answers ``GET /api/tags``."""
        try:
            client = await self._get_client()
            response = await client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.is_success

    async def _check_response(self, response: httpx.Response) -> None:
        """
        Raise the matching provider error for a failed response.

        Raises:
            ProviderUnavailable: 5xx, or 404 (model not pulled).
            ContentRejected: 4xx mentioning content/policy/safety.
            ProviderError: Other client errors.
        """
        if response.is_success:
            return

        # Streaming responses must be read before .text is available
        await response.aread()
        try:
            error_msg = str(response.json().get("error") or response.text)
        except (json.JSONDecodeError, AttributeError):
            error_msg = response.text or "Unknown error"

        status = response.status_code
        if status >= 500:
            raise ProviderUnavailable(f"Model server error {status}: {error_msg}")
        if status == 404:
            raise ProviderUnavailable(f"Not found: {error_msg}")
        if status == 401:
            raise ProviderError(f"Authentication failed: {error_msg}")
        if any(marker in error_msg.lower() for marker in _REJECTION_MARKERS):
            raise ContentRejected(error_msg)
        raise ProviderError(f"Request rejected ({status}): {error_msg}")

    async def close(self) -> None:
        self._closed = True
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> OllamaHTTPClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
