from __future__ import annotations

import fakeredis
import pytest
from fakeredis.aioredis import FakeRedis

from clientcheck.infra.redis import redis_client
from clientcheck.trust.domain import audit
from clientcheck.trust.domain.audit import InMemoryAuditSink
from clientcheck.trust.domain.caching import InMemoryConfigCache, RedisConfigCache
from clientcheck.trust.domain.errors import Unauthorized, Unavailable, ValidationError
from clientcheck.trust.domain.identity import ActorContext, ActorRole
from clientcheck.trust.domain.limits import (
    DEFAULT_RATE_LIMITS,
    InMemoryConfigRepository,
    LimitResolver,
    RateLimitConfig,
    validate_config,
)
from clientcheck.trust.domain.rate_limit import InMemoryCounterStore, RateLimiter, RateLimitRequest

ADMIN = ActorContext(actor_id=1, role=ActorRole.ADMIN)
MANAGER = ActorContext(actor_id=2, role=ActorRole.MANAGER)


class Ticker:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def _resolver(cache=None, repo=None, sink=None) -> LimitResolver:
    return LimitResolver(repo or InMemoryConfigRepository(), cache or InMemoryConfigCache(), audit_sink=sink)


@pytest.mark.asyncio
async def test_defaults_cover_known_actions() -> None:
    resolver = _resolver()
    assert await resolver.resolve("login_attempt") == RateLimitConfig(5, 900)
    assert await resolver.resolve("create_review") == DEFAULT_RATE_LIMITS["create_review"]


@pytest.mark.asyncio
async def test_operator_override_beats_default_and_per_call_beats_both() -> None:
    sink = InMemoryAuditSink()
    resolver = _resolver(sink=sink)
    await resolver.set_override("create_review", RateLimitConfig(2, 120), actor=ADMIN)

    assert await resolver.resolve("create_review") == RateLimitConfig(2, 120)
    assert await resolver.resolve("create_review", max_attempts=9) == RateLimitConfig(9, 120)
    assert await resolver.resolve("create_review", max_attempts=9, window_seconds=30) == RateLimitConfig(9, 30)
    (record,) = sink.records
    assert record.action_type == audit.LIMIT_CONFIGURE
    assert record.details == {"action": "set", "max_attempts": 2, "window_seconds": 120}


@pytest.mark.asyncio
async def test_clear_override_restores_default() -> None:
    resolver = _resolver()
    await resolver.set_override("upload_photo", RateLimitConfig(1, 10), actor=ADMIN)

    restored = await resolver.clear_override("upload_photo", actor=ADMIN)

    assert restored == DEFAULT_RATE_LIMITS["upload_photo"]
    assert await resolver.resolve("upload_photo") == DEFAULT_RATE_LIMITS["upload_photo"]


@pytest.mark.asyncio
async def test_only_admins_change_limits() -> None:
    resolver = _resolver()
    with pytest.raises(Unauthorized):
        await resolver.set_override("create_review", RateLimitConfig(2, 120), actor=MANAGER)
    with pytest.raises(Unauthorized):
        await resolver.clear_override("create_review", actor=MANAGER)


@pytest.mark.parametrize("max_attempts, window_seconds", [(0, 60), (5, 0), (True, 60), ("5", 60)])
def test_invalid_limit_values_are_rejected(max_attempts, window_seconds) -> None:
    with pytest.raises(ValidationError):
        validate_config(max_attempts, window_seconds)


@pytest.mark.asyncio
async def test_cached_lookup_avoids_repeated_reads() -> None:
    repo = InMemoryConfigRepository()
    resolver = _resolver(repo=repo)

    await resolver.resolve("search_client")
    await resolver.resolve("search_client")

    assert repo.reads == 1


@pytest.mark.asyncio
async def test_change_from_another_instance_visible_after_ttl() -> None:
    ticker = Ticker()
    repo = InMemoryConfigRepository()
    reader = _resolver(cache=InMemoryConfigCache(ttl_seconds=300, clock=ticker), repo=repo)
    writer = _resolver(repo=repo)
    assert await reader.resolve("send_message") == DEFAULT_RATE_LIMITS["send_message"]

    await writer.set_override("send_message", RateLimitConfig(3, 60), actor=ADMIN)
    ticker.value += 299
    assert await reader.resolve("send_message") == DEFAULT_RATE_LIMITS["send_message"]

    ticker.value += 1
    assert await reader.resolve("send_message") == RateLimitConfig(3, 60)


@pytest.mark.asyncio
async def test_write_invalidates_local_cache_immediately() -> None:
    resolver = _resolver(cache=InMemoryConfigCache(ttl_seconds=300, clock=Ticker()))
    await resolver.resolve("api_request")

    await resolver.set_override("api_request", RateLimitConfig(10, 60), actor=ADMIN)

    assert await resolver.resolve("api_request") == RateLimitConfig(10, 60)


@pytest.mark.asyncio
async def test_redis_cache_shares_overrides_between_instances(fake_redis) -> None:
    repo = InMemoryConfigRepository()
    reader = _resolver(cache=RedisConfigCache(redis_client, ttl_seconds=300), repo=repo)
    writer = _resolver(cache=RedisConfigCache(redis_client, ttl_seconds=300), repo=repo)
    await reader.resolve("create_client")
    assert await fake_redis.exists("trust:cfg:rate_limit.create_client")

    await writer.set_override("create_client", RateLimitConfig(4, 60), actor=ADMIN)

    assert await reader.resolve("create_client") == RateLimitConfig(4, 60)
    assert await fake_redis.ttl("trust:cfg:rate_limit.create_client") > 0


@pytest.mark.asyncio
async def test_redis_cache_treats_corrupt_entry_as_miss(fake_redis) -> None:
    cache = RedisConfigCache(redis_client)
    await fake_redis.set("trust:cfg:broken", "{not json")

    assert await cache.get("broken") is None


def _unreachable_redis() -> FakeRedis:
    server = fakeredis.FakeServer()
    server.connected = False
    return FakeRedis(server=server, decode_responses=True)


@pytest.mark.asyncio
async def test_redis_outage_reads_fall_through_to_repository() -> None:
    repo = InMemoryConfigRepository()
    await repo.set_value("rate_limit.create_review", {"max_attempts": 2, "window_seconds": 60}, updated_by=1)
    resolver = _resolver(cache=RedisConfigCache(_unreachable_redis()), repo=repo)

    assert await resolver.resolve("create_review") == RateLimitConfig(2, 60)


@pytest.mark.asyncio
async def test_redis_outage_does_not_deny_admission() -> None:
    resolver = _resolver(cache=RedisConfigCache(_unreachable_redis()))
    limiter = RateLimiter(InMemoryCounterStore(), resolver)

    result = await limiter.admit(RateLimitRequest("create_review", user_id=1))

    assert result.allowed
    assert not result.degraded
    assert result.remaining == DEFAULT_RATE_LIMITS["create_review"].max_attempts - 1


@pytest.mark.asyncio
async def test_override_write_reports_unavailable_when_cache_cannot_be_invalidated() -> None:
    repo = InMemoryConfigRepository()
    resolver = _resolver(cache=RedisConfigCache(_unreachable_redis()), repo=repo)

    with pytest.raises(Unavailable):
        await resolver.set_override("create_review", RateLimitConfig(2, 60), actor=ADMIN)

    assert await repo.get_value("rate_limit.create_review") == {"max_attempts": 2, "window_seconds": 60}
