from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import asyncpg
import pytest

from clientcheck.infra.redis import RedisProxy
from clientcheck.settings import settings
from clientcheck.trust.domain import container
from clientcheck.trust.domain.caching import InMemoryConfigCache, RedisConfigCache
from clientcheck.trust.domain.errors import Unavailable
from clientcheck.trust.domain.limits import InMemoryConfigRepository, LimitResolver
from clientcheck.trust.domain.rate_limit import Actor, InMemoryCounterStore, RateLimiter, RateLimitRequest
from clientcheck.trust.domain.reviews import NewReview
from clientcheck.trust.infra.assessment_repo import PostgresAssessmentStore
from clientcheck.trust.infra.audit_repo import PostgresAuditSink
from clientcheck.trust.infra.client_repo import PostgresClientStore
from clientcheck.trust.infra.counter_repo import PostgresCounterStore
from clientcheck.trust.infra.review_repo import PostgresReviewLedger
from clientcheck.trust.jobs import reconcile, window_gc
from clientcheck.trust.workers import PeriodicJob, spawn_workers
from clientcheck.trust.workers.runner import build_jobs


class _StubRedis:
    async def get(self, key: str):
        return None

    async def set(self, key: str, value, ex: int | None = None) -> bool:
        return True

    async def delete(self, *keys: str) -> int:
        return 0


def test_configure_postgres_uses_production_repositories() -> None:
    pool = MagicMock(spec=asyncpg.Pool)

    container.configure_postgres(pool, RedisProxy(_StubRedis()))

    assert isinstance(container.get_counter_store(), PostgresCounterStore)
    assert isinstance(container.get_review_ledger(), PostgresReviewLedger)
    assert isinstance(container.get_client_store(), PostgresClientStore)
    assert isinstance(container.get_audit_sink(), PostgresAuditSink)
    assert isinstance(container.get_assessment_service()._store, PostgresAssessmentStore)
    assert isinstance(container.get_config_cache(), InMemoryConfigCache)
    assert container.get_moderation_engine().auto_hide_threshold == settings.auto_hide_threshold


def test_configure_postgres_with_redis_cache_backend(monkeypatch) -> None:
    monkeypatch.setattr(settings, "config_cache_backend", "redis")
    pool = MagicMock(spec=asyncpg.Pool)

    container.configure_postgres(pool, RedisProxy(_StubRedis()))

    cache = container.get_config_cache()
    assert isinstance(cache, RedisConfigCache)
    assert cache.ttl_seconds == settings.config_cache_ttl_seconds


@pytest.mark.asyncio
async def test_window_gc_job_sweeps_expired_windows() -> None:
    limiter = container.get_rate_limiter()
    await limiter.check(RateLimitRequest("login_attempt", user_id=1))
    later = datetime.now(timezone.utc) + timedelta(hours=1)

    removed = await window_gc.run(limiter, now=later)

    assert removed == 1
    assert await window_gc.run(limiter, now=later) == 0


@pytest.mark.asyncio
async def test_reconcile_job_reports_clients() -> None:
    container.get_client_store().add_client(5)
    # Review written without the recompute that normally follows it.
    draft = NewReview(client_id=5, reviewer_id=1, rating=4)
    await container.get_review_ledger().insert(draft, now=datetime.now(timezone.utc))

    report = await reconcile.run(container.get_aggregator())

    assert report.checked == 1
    assert report.corrected == 1


@pytest.mark.asyncio
async def test_periodic_job_records_failures_and_keeps_going() -> None:
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise Unavailable("rate_window_store_down")
        return 3

    job = PeriodicJob(name="flaky", job=flaky, interval_seconds=1)

    assert await job.run_once() is None
    assert await job.run_once() == 3
    assert job.failures == 1
    assert job.runs == 1


@pytest.mark.asyncio
async def test_periodic_job_survives_unexpected_errors() -> None:
    async def broken():
        raise RuntimeError("bug")

    job = PeriodicJob(name="broken", job=broken, interval_seconds=1)

    assert await job.run_once() is None
    assert job.failures == 1
    assert job.runs == 0


class _HangingSweepStore(InMemoryCounterStore):
    async def delete_expired(self, now):
        raise asyncio.TimeoutError()


@pytest.mark.asyncio
async def test_window_gc_job_keeps_running_after_store_timeout() -> None:
    limiter = RateLimiter(_HangingSweepStore(), LimitResolver(InMemoryConfigRepository(), InMemoryConfigCache()))
    job = PeriodicJob(name="window-gc", job=lambda: window_gc.run(limiter), interval_seconds=1)

    assert await job.run_once() is None
    assert await job.run_once() is None
    assert job.failures == 2


@pytest.mark.asyncio
async def test_periodic_job_does_not_swallow_cancellation() -> None:
    async def cancelled():
        raise asyncio.CancelledError()

    job = PeriodicJob(name="cancelled", job=cancelled, interval_seconds=1)
    with pytest.raises(asyncio.CancelledError):
        await job.run_once()


def test_reconcile_job_scheduled_only_when_interval_set() -> None:
    assert [job.name for job in build_jobs(gc_interval=10)] == ["window-gc"]
    jobs = build_jobs(gc_interval=10, reconcile_interval=60)
    assert [job.name for job in jobs] == ["window-gc", "reconcile"]
    assert jobs[1].interval_seconds == 60


@pytest.mark.asyncio
async def test_spawn_workers_runs_sweep_until_cancelled() -> None:
    limiter = container.get_rate_limiter()
    await limiter.check(RateLimitRequest("create_review", user_id=3))

    tasks = list(spawn_workers(gc_interval=0.01))
    await asyncio.sleep(0.05)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    assert all(task.cancelled() for task in tasks)
    status = await limiter.status(Actor.user(3), "create_review")
    assert status.total_in_window == 1
