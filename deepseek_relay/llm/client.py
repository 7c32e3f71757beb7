"""
HTTP transport for streamed chat completions.

One ``httpx.AsyncClient`` is created lazily and shared by every session of the
enclosing component. Sessions take the handle under the lock and then issue
their request without holding it, so a config change can swap the client while
older requests finish on the previous one. A replaced handle is closed as soon
as its last in-flight stream ends.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from deepseek_relay.logging_utils import get_logger, log_operation

from .exceptions import ConfigError, HttpError, NotInitializedError, TransportError

logger = get_logger(__name__)

DEFAULT_HTTP_CONFIG: dict[str, float] = {
    "connect_timeout": 10.0,
    "read_timeout": 60.0,
    "write_timeout": 10.0,
    "pool_timeout": 10.0,
}


class TransportClient:
    """Owns the reusable HTTP client handle behind an ``asyncio.Lock``."""

    def __init__(
        self,
        http_config: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.http_config = {**DEFAULT_HTTP_CONFIG, **(http_config or {})}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        # Replaced handles that still have streams in flight
        self._retired: list[httpx.AsyncClient] = []
        self._in_flight: dict[httpx.AsyncClient, int] = {}
        self._lock = asyncio.Lock()

    def _build_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.http_config["connect_timeout"],
            read=self.http_config["read_timeout"],
            write=self.http_config["write_timeout"],
            pool=self.http_config["pool_timeout"],
        )

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @log_operation("initialize_http_client")
    async def initialize(self) -> None:
        """Create the HTTP client, atomically replacing any previous one."""
        client = httpx.AsyncClient(
            timeout=self._build_timeout(),
            transport=self._transport,
        )
        async with self._lock:
            previous = self._client
            self._client = client
            idle = previous is not None and previous not in self._in_flight
            if previous is not None and not idle:
                self._retired.append(previous)

        if idle:
            await previous.aclose()

        logger.info(
            "HTTP client initialized",
            replaced=previous is not None,
            retired=len(self._retired),
        )

    async def snapshot(self) -> httpx.AsyncClient | None:
        """Return the current client handle without holding the lock afterwards."""
        async with self._lock:
            return self._client

    async def _acquire(self) -> httpx.AsyncClient | None:
        async with self._lock:
            client = self._client
            if client is not None:
                self._in_flight[client] = self._in_flight.get(client, 0) + 1
            return client

    async def _release(self, client: httpx.AsyncClient) -> None:
        async with self._lock:
            # close() may already have dropped the count
            remaining = self._in_flight.pop(client, 1) - 1
            if remaining:
                self._in_flight[client] = remaining
                return
            if client not in self._retired:
                return
            self._retired.remove(client)

        await client.aclose()
        logger.debug("Closed retired HTTP client")

    @asynccontextmanager
    async def post_streaming(
        self,
        url: str,
        api_key: str,
        body: dict[str, Any],
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """
        POST ``body`` and yield the response body as a lazy byte-chunk iterator.

        Raises:
            ConfigError: If ``api_key`` is blank (checked before any I/O)
            NotInitializedError: If ``initialize()`` has not completed
            HttpError: If the response status is not 2xx
            TransportError: On connection or read failures
        """
        if not api_key or not api_key.strip():
            raise ConfigError("API key is not set")

        client = await self._acquire()
        if client is None:
            raise NotInitializedError("HTTP client is not initialized")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

        logger.info(
            "Sending streaming request",
            url=url,
            model=body.get("model"),
            message_count=len(body.get("messages", [])),
        )

        try:
            async with client.stream(
                "POST", url, headers=headers, json=body
            ) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode(
                        "utf-8", errors="replace"
                    )
                    logger.warning(
                        "Streaming request rejected",
                        url=url,
                        status_code=response.status_code,
                    )
                    raise HttpError(response.status_code, error_text)

                yield response.aiter_bytes()

        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e!s}") from e
        finally:
            await self._release(client)

    async def close(self) -> None:
        """Close the current and every retired HTTP client."""
        async with self._lock:
            clients = [c for c in (self._client, *self._retired) if c is not None]
            self._client = None
            self._retired = []
            self._in_flight.clear()

        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> TransportClient:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
