"""
Token bucket rate limiter for API calls and download bandwidth.

Hey future me - the same bucket does two jobs here:
- API pacing: every Photos Library request costs 1 token (see for_google_photos()).
- Bandwidth: every downloaded chunk costs len(chunk) tokens, refilled at
  SYNC_MAX_DOWNLOAD_SPEED bytes/sec and SHARED by all download workers (see for_bandwidth()).

ALGORITHM: Token Bucket with debt
- Bucket holds at most max_tokens, refilled at refill_rate/sec
- acquire(n) takes n tokens right away, even if that drives the bucket negative
- If the bucket went negative the caller sleeps until the debt is paid back
That way a chunk bigger than the bucket (64 KiB chunk vs. 32 KiB/s limit) still works, and
concurrent callers queue up fairly instead of spinning.

USAGE:
    limiter = get_google_photos_limiter()
    async with limiter:
        response = await client.get(url)

    bandwidth = RateLimiter.for_bandwidth(1_000_000)  # 1 MB/s
    await bandwidth.acquire(len(chunk))
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter."""

    max_tokens: float = 10.0  # Bucket size (burst)
    refill_rate: float = 5.0  # Tokens per second


@dataclass
class RateLimiter:
    """Token Bucket Rate Limiter.

    Attributes:
        config: Rate limiter configuration
        _tokens: Current available tokens (negative = debt)
        _last_refill: Last time tokens were refilled
        _lock: Async lock guarding the bucket (never held while sleeping)
    """

    config: RateLimiterConfig = field(default_factory=RateLimiterConfig)

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default_factory=time.monotonic, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _name: str = field(default="default", init=False)

    def __post_init__(self) -> None:
        """Initialize tokens to max capacity."""
        if self.config.refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        self._tokens = float(self.config.max_tokens)

    @classmethod
    def for_google_photos(cls) -> "RateLimiter":
        """Create rate limiter for the Photos Library API.

        Google meters the API per project per minute, a steady 5 req/sec with a burst of
        10 stays well clear of it even with several accounts enumerating at once.
        """
        limiter = cls(config=RateLimiterConfig(max_tokens=10, refill_rate=5.0))
        limiter._name = "google_photos"
        return limiter

    @classmethod
    def for_bandwidth(cls, bytes_per_second: int) -> "RateLimiter":
        """Create a limiter that caps aggregate download throughput.

        The bucket holds one second worth of bytes.
        """
        limiter = cls(
            config=RateLimiterConfig(
                max_tokens=float(bytes_per_second),
                refill_rate=float(bytes_per_second),
            )
        )
        limiter._name = "bandwidth"
        return limiter

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            self.config.max_tokens, self._tokens + elapsed * self.config.refill_rate
        )
        self._last_refill = now

    async def acquire(self, amount: float = 1.0) -> float:
        """Take `amount` tokens, waiting if the bucket runs into debt.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            self._refill_tokens()
            self._tokens -= amount
            wait_time = -self._tokens / self.config.refill_rate if self._tokens < 0 else 0.0

        if wait_time > 0:
            logger.debug(
                "RateLimiter[%s]: bucket in debt, waiting %.2fs", self._name, wait_time
            )
            await asyncio.sleep(wait_time)
        return wait_time

    async def __aenter__(self) -> "RateLimiter":
        """Enter async context - acquire one token."""
        await self.acquire()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        """Exit async context."""
        return None

    @property
    def available_tokens(self) -> float:
        """Get current available tokens (for debugging)."""
        self._refill_tokens()
        return self._tokens

    @property
    def name(self) -> str:
        return self._name


# Hey future me - one API limiter per process, shared by every GooglePhotosClient.
_google_photos_limiter: RateLimiter | None = None


def get_google_photos_limiter() -> RateLimiter:
    """Get singleton Photos Library API rate limiter."""
    global _google_photos_limiter
    if _google_photos_limiter is None:
        _google_photos_limiter = RateLimiter.for_google_photos()
    return _google_photos_limiter


__all__ = [
    "RateLimiter",
    "RateLimiterConfig",
    "get_google_photos_limiter",
]
