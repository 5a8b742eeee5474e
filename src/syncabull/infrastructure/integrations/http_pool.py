"""Shared HTTP client pool for connection reuse across clients.

Hey future me - the Photos API client, the OAuth client and every download worker all talk to
Google. Instead of one httpx.AsyncClient each (wasting TCP connections and ignoring keep-alive),
they share this pool. max_connections must stay above SYNC_CONCURRENCY + a few API calls, or
workers end up queueing for a connection instead of downloading.

Usage:
    client = await HttpClientPool.get_client()
    response = await client.get(url, timeout=10.0)

Don't forget HttpClientPool.close() at shutdown (see lifecycle.py)!
"""

import asyncio
import logging
from typing import Any, ClassVar

import httpx

logger = logging.getLogger(__name__)


class HttpClientPool:
    """Singleton HTTP client pool.

    - Lazy initialization (created on first use)
    - Guarded by an asyncio.Lock created lazily inside the running loop
    - Per-request timeouts override the pool default
    """

    _client: ClassVar[httpx.AsyncClient | None] = None
    _lock: ClassVar[asyncio.Lock | None] = None

    DEFAULT_TIMEOUT: ClassVar[float] = 30.0
    DEFAULT_MAX_KEEPALIVE: ClassVar[int] = 20
    DEFAULT_MAX_CONNECTIONS: ClassVar[int] = 50

    @classmethod
    def _ensure_lock(cls) -> asyncio.Lock:
        if cls._lock is None:
            cls._lock = asyncio.Lock()
        return cls._lock

    @classmethod
    async def get_client(
        cls,
        timeout: float | None = None,
        max_connections: int | None = None,
    ) -> httpx.AsyncClient:
        """Get the shared HTTP client instance.

        Config params only apply on the FIRST call.

        Args:
            timeout: Default request timeout in seconds
            max_connections: Max total concurrent connections

        Returns:
            Shared httpx.AsyncClient instance
        """
        async with cls._ensure_lock():
            if cls._client is None:
                effective_timeout = timeout or cls.DEFAULT_TIMEOUT
                effective_max_conn = max_connections or cls.DEFAULT_MAX_CONNECTIONS

                cls._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(effective_timeout),
                    limits=httpx.Limits(
                        max_keepalive_connections=cls.DEFAULT_MAX_KEEPALIVE,
                        max_connections=effective_max_conn,
                    ),
                    # Google serves the API and lh3 asset hosts over HTTP/2
                    http2=True,
                    # baseUrl downloads redirect to the actual CDN host
                    follow_redirects=True,
                )
                logger.info(
                    "HTTP client pool initialized (timeout=%.1fs, max_conn=%d)",
                    effective_timeout,
                    effective_max_conn,
                )

            return cls._client

    @classmethod
    async def close(cls) -> None:
        """Close the shared HTTP client and release all connections."""
        async with cls._ensure_lock():
            if cls._client is not None:
                await cls._client.aclose()
                cls._client = None
                logger.info("HTTP client pool closed")
        # A later run may happen on a different event loop
        cls._lock = None

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._client is not None

    @classmethod
    def get_pool_stats(cls) -> dict[str, Any]:
        """Basic pool state for the worker health log."""
        if cls._client is None:
            return {"initialized": False}
        return {
            "initialized": True,
            "timeout": cls._client.timeout.connect,
            "max_connections": cls.DEFAULT_MAX_CONNECTIONS,
        }
