from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from clientcheck.trust.domain.audit import InMemoryAuditSink
from clientcheck.trust.domain.caching import InMemoryConfigCache
from clientcheck.trust.domain.errors import InvalidRequest, Unauthorized, Unavailable
from clientcheck.trust.domain.identity import ActorContext, ActorRole
from clientcheck.trust.domain.limits import FALLBACK_RATE_LIMIT, InMemoryConfigRepository, LimitResolver
from clientcheck.trust.domain.rate_limit import (
    Actor,
    FailPolicy,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitRequest,
    RateWindow,
)


def _limiter(clock, *, store=None, fail_open=(), retries=3, audit=None, timeout=None) -> RateLimiter:
    resolver = LimitResolver(InMemoryConfigRepository(), InMemoryConfigCache())
    return RateLimiter(
        store or InMemoryCounterStore(),
        resolver,
        fail_open_actions=fail_open,
        timeout_seconds=timeout,
        window_retries=retries,
        audit_sink=audit,
        clock=clock,
    )


def _req(action: str = "create_review", *, user_id: int | None = 1, **kwargs) -> RateLimitRequest:
    return RateLimitRequest(action_type=action, user_id=user_id, **kwargs)


class RacingStore(InMemoryCounterStore):
    """Lets a competing request open the window just before this one tries."""

    def __init__(self) -> None:
        super().__init__()
        self.raced = False

    async def open_window(self, actor, action_type, cost, now, expires_at):
        if not self.raced:
            self.raced = True
            await super().open_window(actor, action_type, 1, now, expires_at)
        return await super().open_window(actor, action_type, cost, now, expires_at)


class ContendedStore(InMemoryCounterStore):
    async def increment_live(self, actor, action_type, cost, now):
        return None

    async def open_window(self, actor, action_type, cost, now, expires_at):
        return None


class SlowStore(InMemoryCounterStore):
    async def increment_live(self, actor, action_type, cost, now):
        await asyncio.sleep(1)
        return None


class BrokenStore(InMemoryCounterStore):
    async def increment_live(self, actor, action_type, cost, now):
        raise ConnectionError("connection refused")


class RedisDownStore(InMemoryCounterStore):
    async def increment_live(self, actor, action_type, cost, now):
        raise RedisConnectionError("Error 111 connecting to redis:6379. Connection refused.")


class TimingOutStore(InMemoryCounterStore):
    async def delete_expired(self, now):
        raise asyncio.TimeoutError()

    async def delete_for(self, actor, action_type):
        raise asyncio.TimeoutError()


@pytest.mark.asyncio
async def test_five_admitted_then_sixth_denied_within_window(clock) -> None:
    limiter = _limiter(clock)
    start = clock()
    results = [await limiter.check(_req(max_attempts=5, window_seconds=60)) for _ in range(5)]

    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == [4, 3, 2, 1, 0]

    clock.advance(seconds=30)
    denied = await limiter.check(_req(max_attempts=5, window_seconds=60))
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.total_in_window == 6
    assert denied.reset_at == start + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_request_after_window_end_opens_fresh_window(clock) -> None:
    limiter = _limiter(clock)
    for _ in range(3):
        await limiter.check(_req(max_attempts=2, window_seconds=60))

    clock.advance(seconds=60)
    result = await limiter.check(_req(max_attempts=2, window_seconds=60))

    assert result.allowed
    assert result.total_in_window == 1
    assert result.reset_at == clock() + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_cost_counts_toward_window(clock) -> None:
    limiter = _limiter(clock)
    first = await limiter.check(_req(cost=3, max_attempts=5, window_seconds=60))
    second = await limiter.check(_req(cost=3, max_attempts=5, window_seconds=60))

    assert first.allowed and first.remaining == 2
    assert not second.allowed and second.remaining == 0
    assert second.total_in_window == 6


@pytest.mark.asyncio
async def test_partial_override_falls_back_to_default_window(clock) -> None:
    limiter = _limiter(clock)
    result = await limiter.check(_req("create_review", max_attempts=2))
    assert result.reset_at == clock() + timedelta(minutes=60)
    assert result.remaining == 1


@pytest.mark.asyncio
async def test_unknown_action_uses_fallback_limit(clock) -> None:
    limiter = _limiter(clock)
    result = await limiter.check(_req("export_data"))
    assert result.remaining == FALLBACK_RATE_LIMIT.max_attempts - 1
    assert result.reset_at == clock() + FALLBACK_RATE_LIMIT.window


@pytest.mark.asyncio
async def test_actors_and_actions_are_counted_independently(clock) -> None:
    limiter = _limiter(clock)
    await limiter.check(_req(max_attempts=1, window_seconds=60))

    other_user = await limiter.check(_req(user_id=2, max_attempts=1, window_seconds=60))
    external = await limiter.check(RateLimitRequest("create_review", external_id=1, max_attempts=1, window_seconds=60))
    other_action = await limiter.check(_req("upload_photo", max_attempts=1, window_seconds=60))

    assert other_user.allowed and external.allowed and other_action.allowed


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id, external_id", [(None, None), (1, 2)])
async def test_request_without_single_identity_is_invalid(clock, user_id, external_id) -> None:
    store = InMemoryCounterStore()
    limiter = _limiter(clock, store=store)
    with pytest.raises(InvalidRequest):
        await limiter.check(RateLimitRequest("create_review", user_id=user_id, external_id=external_id))
    assert await store.list_windows(start=None, end=None) == []


@pytest.mark.asyncio
async def test_open_window_is_conditional(clock) -> None:
    store = InMemoryCounterStore()
    actor = Actor.user(7)
    now = clock()
    first = await store.open_window(actor, "create_review", 1, now, now + timedelta(seconds=60))
    second = await store.open_window(actor, "create_review", 1, now, now + timedelta(seconds=60))

    assert isinstance(first, RateWindow)
    assert second is None


@pytest.mark.asyncio
async def test_racing_first_calls_share_one_window(clock) -> None:
    store = RacingStore()
    limiter = _limiter(clock, store=store)

    result = await limiter.check(_req(max_attempts=5, window_seconds=60))

    windows = await store.list_windows(start=None, end=None)
    assert len(windows) == 1
    assert windows[0].count == 2
    assert result.total_in_window == 2


@pytest.mark.asyncio
async def test_persistent_contention_surfaces_unavailable(clock) -> None:
    limiter = _limiter(clock, store=ContendedStore(), retries=2)
    with pytest.raises(Unavailable) as exc_info:
        await limiter.check(_req())
    assert exc_info.value.detail == "rate_window_contention"
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_admit_fails_closed_by_default(clock) -> None:
    limiter = _limiter(clock, store=BrokenStore(), fail_open=("search_client",))
    assert limiter.policy_for("create_review") is FailPolicy.CLOSED

    result = await limiter.admit(_req("create_review"))

    assert not result.allowed
    assert result.degraded
    assert result.remaining == 0


@pytest.mark.asyncio
async def test_admit_fails_open_for_informational_actions(clock) -> None:
    limiter = _limiter(clock, store=BrokenStore(), fail_open=("search_client",))

    result = await limiter.admit(_req("search_client"))

    assert result.allowed
    assert result.degraded


@pytest.mark.asyncio
async def test_admit_applies_fail_policy_to_redis_errors(clock) -> None:
    limiter = _limiter(clock, store=RedisDownStore())

    result = await limiter.admit(_req("create_review"))

    assert not result.allowed
    assert result.degraded


@pytest.mark.asyncio
async def test_maintenance_calls_surface_store_timeouts_as_unavailable(clock) -> None:
    limiter = _limiter(clock, store=TimingOutStore())

    with pytest.raises(Unavailable):
        await limiter.cleanup_expired()
    with pytest.raises(Unavailable):
        await limiter.reset(Actor.user(1), "create_review", performed_by=ActorContext(9, ActorRole.ADMIN))


@pytest.mark.asyncio
async def test_slow_store_times_out(clock) -> None:
    limiter = _limiter(clock, store=SlowStore(), fail_open=("search_client",))

    with pytest.raises(Unavailable):
        await limiter.check(_req("create_review"), timeout=0.01)
    degraded = await limiter.admit(_req("search_client"), timeout=0.01)
    assert degraded.allowed and degraded.degraded


@pytest.mark.asyncio
async def test_check_all_stops_after_first_denial(clock) -> None:
    limiter = _limiter(clock)
    await limiter.check(_req("upload_photo", max_attempts=1, window_seconds=60))

    results = await limiter.check_all(
        [
            _req("create_review", max_attempts=1, window_seconds=60),
            _req("upload_photo", max_attempts=1, window_seconds=60),
            _req("send_message", max_attempts=1, window_seconds=60),
        ]
    )

    assert [result.allowed for result in results] == [True, False]
    untouched = await limiter.status(Actor.user(1), "send_message")
    assert untouched.total_in_window == 0


@pytest.mark.asyncio
async def test_check_all_aborts_on_error(clock) -> None:
    limiter = _limiter(clock)
    with pytest.raises(InvalidRequest):
        await limiter.check_all([_req("create_review"), RateLimitRequest("upload_photo")])


@pytest.mark.asyncio
async def test_status_does_not_consume_quota(clock) -> None:
    limiter = _limiter(clock)
    actor = Actor.user(1)
    fresh = await limiter.status(actor, "login_attempt")
    assert fresh.allowed and fresh.remaining == 5 and fresh.total_in_window == 0

    await limiter.check(_req("login_attempt"))
    await limiter.check(_req("login_attempt"))
    first = await limiter.status(actor, "login_attempt")
    second = await limiter.status(actor, "login_attempt")

    assert first.total_in_window == second.total_in_window == 2
    assert second.remaining == 3


@pytest.mark.asyncio
async def test_reset_requires_elevated_actor_and_is_audited(clock) -> None:
    audit = InMemoryAuditSink()
    limiter = _limiter(clock, audit=audit)
    actor = Actor.user(1)
    for _ in range(3):
        await limiter.check(_req("password_reset"))

    with pytest.raises(Unauthorized):
        await limiter.reset(actor, "password_reset", performed_by=ActorContext(1))

    removed = await limiter.reset(actor, "password_reset", performed_by=ActorContext(99, ActorRole.MANAGER))
    assert removed == 1
    assert audit.for_target("rate_limit", "user:1:password_reset")
    after = await limiter.check(_req("password_reset"))
    assert after.allowed and after.total_in_window == 1


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_windows(clock) -> None:
    store = InMemoryCounterStore()
    limiter = _limiter(clock, store=store)
    await limiter.check(_req("login_attempt"))
    clock.advance(minutes=10)
    await limiter.check(_req("create_review"))
    clock.advance(minutes=10)

    removed = await limiter.cleanup_expired()

    assert removed == 1
    remaining = await store.list_windows(start=None, end=None)
    assert [window.action_type for window in remaining] == ["create_review"]
    follow_up = await limiter.check(_req("create_review"))
    assert follow_up.total_in_window == 2


@pytest.mark.asyncio
async def test_expired_window_ignored_even_without_cleanup(clock) -> None:
    limiter = _limiter(clock)
    for _ in range(6):
        await limiter.check(_req("login_attempt"))
    clock.advance(minutes=15, seconds=1)

    result = await limiter.check(_req("login_attempt"))
    assert result.allowed and result.total_in_window == 1


@pytest.mark.asyncio
async def test_statistics_estimate_blocked_requests(clock) -> None:
    limiter = _limiter(clock)
    for _ in range(7):
        await limiter.check(_req("login_attempt"))
    for _ in range(3):
        await limiter.check(_req("create_review"))

    stats = await limiter.statistics()

    assert stats.total_windows == 2
    assert stats.total_requests == 10
    assert stats.total_blocked == 2
    assert stats.blocked_percentage == pytest.approx(20.0)
    assert stats.top_actions[0].action_type == "login_attempt"
    assert len(stats.recent_activity) == 1
    assert stats.recent_activity[0].checks == 10


@pytest.mark.asyncio
async def test_statistics_respect_date_range(clock) -> None:
    limiter = _limiter(clock)
    await limiter.check(_req("create_review"))
    cutoff: datetime = clock.advance(hours=2)
    await limiter.check(_req("upload_photo"))

    stats = await limiter.statistics(start=cutoff)

    assert stats.total_windows == 1
    assert stats.top_actions[0].action_type == "upload_photo"
