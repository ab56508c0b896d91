"""Atomic claim-with-expiry stores used to dedup counters across processes."""

from __future__ import annotations

import logging
from threading import Lock
from time import monotonic
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from visitor_counter.counter_store import StoreIOError

CLAIM_TTL_SECONDS = 48 * 3600


class ClaimStoreError(StoreIOError):
    """Raised when the claim backend cannot answer a claim."""


class ClaimStore(Protocol):
    """Set-if-absent with expiry shared by every counter instance."""

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Return True when this caller is the first to claim ``key``."""

    async def close(self) -> None:
        """Release backend resources if needed."""

    async def reset(self) -> None:
        """Clear all claims (primarily for test isolation)."""


class InMemoryClaimStore:
    """Claims held in process memory; shared only by instances in one process."""

    PRUNE_EVERY = 1024

    def __init__(self, *, clock: Callable[[], float] = monotonic) -> None:
        self._expires_at: dict[str, float] = {}
        self._clock = clock
        self._claims_since_prune = 0
        self._lock = Lock()

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._expires_at.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires_at[key] = now + ttl_seconds
            self._claims_since_prune += 1
            if self._claims_since_prune >= self.PRUNE_EVERY:
                self._prune(now)
            return True

    def _prune(self, now: float) -> None:
        self._claims_since_prune = 0
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            self._expires_at.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            expires_at = self._expires_at.get(key)
            return expires_at is not None and expires_at > self._clock()

    async def close(self) -> None:
        return

    async def reset(self) -> None:
        with self._lock:
            self._expires_at.clear()


class RedisClaimStore:
    """Redis ``SET key OK NX EX ttl`` claims shared across app instances."""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        prefix: str = "visitor_counter:claim",
        client: Redis | None = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("RedisClaimStore requires redis_url or client")
            client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self._client = client
        self._prefix = prefix

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        try:
            result = await self._client.set(self._redis_key(key), "OK", nx=True, ex=ttl_seconds)
        except RedisError as exc:
            raise ClaimStoreError("Claim backend unavailable") from exc
        return bool(result)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()

    async def reset(self) -> None:
        keys: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{self._prefix}:*"):
                keys.append(str(key))
            if keys:
                await self._client.delete(*keys)
        except RedisError as exc:  # pragma: no cover - backend failure path
            raise ClaimStoreError("Claim backend unavailable") from exc


def create_claim_store(
    *,
    backend: str,
    redis_url: str | None,
    prefix: str = "visitor_counter:claim",
    logger: logging.Logger | None = None,
) -> tuple[ClaimStore | None, bool]:
    """Create the configured claim store and indicate if it uses shared state.

    ``none`` disables cross-process dedup; the ledger alone decides.
    """

    normalized_backend = backend.strip().lower()
    if normalized_backend == "none":
        return None, False

    if normalized_backend == "memory":
        return InMemoryClaimStore(), False

    if normalized_backend == "redis":
        if not redis_url:
            raise RuntimeError("CLAIM_BACKEND=redis requires REDIS_URL")
        return RedisClaimStore(redis_url=redis_url, prefix=prefix), True

    if normalized_backend == "auto":
        if redis_url:
            return RedisClaimStore(redis_url=redis_url, prefix=prefix), True
        if logger:
            logger.warning("claim_backend_auto_fallback backend=none reason=redis_url_missing")
        return None, False

    raise ValueError(f"Unsupported CLAIM_BACKEND value: {backend}")
