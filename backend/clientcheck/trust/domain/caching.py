"""TTL caches for configuration lookups.

Entries are served for at most ``ttl_seconds`` after they were written; a write
through :class:`~clientcheck.trust.domain.limits.LimitResolver` invalidates the
key immediately on the instance that performed it. Other instances sharing an
in-memory cache observe the change after the TTL, instances sharing the Redis
cache observe it at once.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from clientcheck.infra.redis import RedisProxy
from clientcheck.obs import metrics

logger = logging.getLogger(__name__)


class ConfigCache(Protocol):
    ttl_seconds: int

    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def invalidate(self, key: str) -> None:
        ...


class InMemoryConfigCache(ConfigCache):
    """Per-process cache; suitable for single-instance deployments and tests."""

    def __init__(self, *, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            metrics.CONFIG_CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            metrics.CONFIG_CACHE_LOOKUPS.labels(result="expired").inc()
            return None
        metrics.CONFIG_CACHE_LOOKUPS.labels(result="hit").inc()
        return value

    async def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisConfigCache(ConfigCache):
    """Thin wrapper over Redis providing JSON caching shared across instances."""

    def __init__(self, redis: Redis | RedisProxy, *, ttl_seconds: int = 300, namespace: str = "trust:cfg:") -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace

    def _key(self, suffix: str) -> str:
        return f"{self.namespace}{suffix}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.redis.get(self._key(key))
        except RedisError as exc:
            # Served as a miss; callers fall through to the repository.
            metrics.CONFIG_CACHE_LOOKUPS.labels(result="error").inc()
            logger.warning("config cache read failed", extra={"key": key, "error": str(exc)})
            return None
        if not raw:
            metrics.CONFIG_CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        try:
            decoded = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
            value = json.loads(decoded)
        except json.JSONDecodeError:
            metrics.CONFIG_CACHE_LOOKUPS.labels(result="corrupt").inc()
            return None
        metrics.CONFIG_CACHE_LOOKUPS.labels(result="hit").inc()
        return value

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value).encode("utf-8")
        try:
            await self.redis.set(self._key(key), payload, ex=self.ttl_seconds)
        except RedisError as exc:
            logger.warning("config cache write failed", extra={"key": key, "error": str(exc)})

    async def invalidate(self, key: str) -> None:
        await self.redis.delete(self._key(key))
