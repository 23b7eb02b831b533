"""
Comfy Splice - Async HTTP Client
================================

httpx-based async client used for executor introspection, which must not
block the caller's event loop.

Features:
- HTTP/2 support
- Connection pooling
- Circuit breaker integration

Usage:
    async with AsyncHttpClient(base_url="http://localhost:8188") as client:
        response = await client.get("/object_info")
"""

import httpx

from .config import settings
from .exceptions import ExecutorConnectionError
from .logging_config import get_logger
from .retry import get_circuit_breaker

logger = get_logger(__name__)

__all__ = [
    "AsyncHttpClient",
    "build_timeout",
    "build_limits",
]


def build_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.http.connect_timeout,
        read=settings.http.read_timeout,
        write=settings.http.write_timeout,
        pool=settings.http.pool_timeout,
    )


def build_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.http.max_connections,
        max_keepalive_connections=settings.http.max_keepalive_connections,
        keepalive_expiry=settings.http.keepalive_expiry,
    )


class AsyncHttpClient:
    """
    Async HTTP client using httpx.

    Usage:
        async with AsyncHttpClient(base_url=settings.executor.url) as client:
            response = await client.get("/object_info")
            data = response.json()
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        circuit_name: str | None = "executor",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize async HTTP client.

        Args:
            base_url: Base URL for all requests (default: executor URL from settings)
            timeout: Default timeout in seconds
            circuit_name: Name for circuit breaker (None to disable)
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests)
        """
        self.base_url = (base_url or settings.executor.url).rstrip("/")
        self.timeout = timeout or settings.http.read_timeout
        self._circuit = get_circuit_breaker(circuit_name) if circuit_name else None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.debug("AsyncHttpClient initialized", extra={"base_url": self.base_url})

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-initialize the underlying async client."""
        if self._client is None:
            kwargs = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            else:
                kwargs["http2"] = settings.http.http2
                kwargs["limits"] = build_limits()
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=build_timeout(),
                **kwargs,
            )
        return self._client

    async def _request(
        self, method: str, endpoint: str, timeout: float | None = None, **kwargs
    ) -> httpx.Response:
        """Make an async HTTP request with circuit breaker protection."""
        _timeout = timeout or self.timeout

        async def make_request():
            return await self.client.request(method, endpoint, timeout=_timeout, **kwargs)

        try:
            if self._circuit:
                async with self._circuit:
                    return await make_request()
            return await make_request()

        except httpx.ConnectError as e:
            raise ExecutorConnectionError(
                f"Failed to connect to {self.base_url}: {e}",
                url=self.base_url,
                cause=e,
            ) from e

    async def get(self, endpoint: str, **kwargs) -> httpx.Response:
        """Make a GET request."""
        return await self._request("GET", endpoint, **kwargs)

    async def close(self):
        """Close the underlying client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
