"""Lightweight service container shared by trust modules."""

from __future__ import annotations

from typing import Optional

import asyncpg
from redis.asyncio import Redis

from clientcheck.infra.redis import RedisProxy, redis_client
from clientcheck.settings import settings
from clientcheck.trust.domain.aggregator import ClientStore, InMemoryClientStore, TrustAggregator
from clientcheck.trust.domain.assessments import AssessmentService, AssessmentStore, InMemoryAssessmentStore
from clientcheck.trust.domain.audit import AuditSink, InMemoryAuditSink
from clientcheck.trust.domain.caching import ConfigCache, InMemoryConfigCache, RedisConfigCache
from clientcheck.trust.domain.limits import ConfigRepository, InMemoryConfigRepository, LimitResolver
from clientcheck.trust.domain.moderation import ModerationEngine
from clientcheck.trust.domain.rate_limit import CounterStore, InMemoryCounterStore, RateLimiter
from clientcheck.trust.domain.reviews import InMemoryReviewLedger, ReviewLedger
from clientcheck.trust.infra.assessment_repo import PostgresAssessmentStore
from clientcheck.trust.infra.audit_repo import PostgresAuditSink
from clientcheck.trust.infra.client_repo import PostgresClientStore
from clientcheck.trust.infra.config_repo import PostgresConfigRepository
from clientcheck.trust.infra.counter_repo import PostgresCounterStore
from clientcheck.trust.infra.review_repo import PostgresReviewLedger

_counter_store: CounterStore = InMemoryCounterStore()
_review_ledger: ReviewLedger = InMemoryReviewLedger()
_assessment_store: AssessmentStore = InMemoryAssessmentStore()
_client_store: ClientStore = InMemoryClientStore()
_audit_sink: AuditSink = InMemoryAuditSink()
_config_repository: ConfigRepository = InMemoryConfigRepository()
_config_cache: ConfigCache = InMemoryConfigCache(ttl_seconds=settings.config_cache_ttl_seconds)
_redis_proxy: RedisProxy = redis_client

_limit_resolver: LimitResolver
_rate_limiter: RateLimiter
_aggregator: TrustAggregator
_moderation: ModerationEngine
_assessment_service: AssessmentService


def _build_services() -> None:
    global _limit_resolver, _rate_limiter, _aggregator, _moderation, _assessment_service
    timeout = settings.store_timeout_seconds
    _limit_resolver = LimitResolver(
        _config_repository,
        _config_cache,
        audit_sink=_audit_sink,
        timeout_seconds=timeout,
    )
    _rate_limiter = RateLimiter(
        _counter_store,
        _limit_resolver,
        fail_open_actions=settings.rate_limit_fail_open_actions,
        timeout_seconds=timeout,
        window_retries=settings.rate_limit_window_retries,
        audit_sink=_audit_sink,
    )
    _aggregator = TrustAggregator(
        _review_ledger,
        _assessment_store,
        _client_store,
        safety_window=settings.safety_score_window,
        timeout_seconds=timeout,
    )
    _moderation = ModerationEngine(
        _review_ledger,
        _client_store,
        _aggregator,
        audit_sink=_audit_sink,
        auto_hide_threshold=settings.auto_hide_threshold,
        timeout_seconds=timeout,
    )
    _assessment_service = AssessmentService(
        _assessment_store,
        _client_store,
        _aggregator,
        audit_sink=_audit_sink,
        timeout_seconds=timeout,
    )


_build_services()


def configure(
    *,
    counter_store: Optional[CounterStore] = None,
    review_ledger: Optional[ReviewLedger] = None,
    assessment_store: Optional[AssessmentStore] = None,
    client_store: Optional[ClientStore] = None,
    audit_sink: Optional[AuditSink] = None,
    config_repository: Optional[ConfigRepository] = None,
    config_cache: Optional[ConfigCache] = None,
    redis_proxy: Optional[RedisProxy] = None,
) -> None:
    global _counter_store, _review_ledger, _assessment_store, _client_store, _audit_sink
    global _config_repository, _config_cache, _redis_proxy
    if counter_store is not None:
        _counter_store = counter_store
    if review_ledger is not None:
        _review_ledger = review_ledger
    if assessment_store is not None:
        _assessment_store = assessment_store
    if client_store is not None:
        _client_store = client_store
    if audit_sink is not None:
        _audit_sink = audit_sink
    if config_repository is not None:
        _config_repository = config_repository
    if config_cache is not None:
        _config_cache = config_cache
    _redis_proxy = redis_proxy or _redis_proxy
    _build_services()


def reset() -> None:
    """Restore fresh in-memory stores; used by tests."""

    configure(
        counter_store=InMemoryCounterStore(),
        review_ledger=InMemoryReviewLedger(),
        assessment_store=InMemoryAssessmentStore(),
        client_store=InMemoryClientStore(),
        audit_sink=InMemoryAuditSink(),
        config_repository=InMemoryConfigRepository(),
        config_cache=InMemoryConfigCache(ttl_seconds=settings.config_cache_ttl_seconds),
    )


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy | None = None) -> None:
    proxy = None
    if redis_conn is not None:
        proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    if settings.config_cache_backend.lower() == "redis":
        cache: ConfigCache = RedisConfigCache(proxy or _redis_proxy, ttl_seconds=settings.config_cache_ttl_seconds)
    else:
        cache = InMemoryConfigCache(ttl_seconds=settings.config_cache_ttl_seconds)
    configure(
        counter_store=PostgresCounterStore(pool),
        review_ledger=PostgresReviewLedger(pool),
        assessment_store=PostgresAssessmentStore(pool),
        client_store=PostgresClientStore(pool),
        audit_sink=PostgresAuditSink(pool),
        config_repository=PostgresConfigRepository(pool),
        config_cache=cache,
        redis_proxy=proxy,
    )


def get_rate_limiter() -> RateLimiter:
    return _rate_limiter


def get_limit_resolver() -> LimitResolver:
    return _limit_resolver


def get_moderation_engine() -> ModerationEngine:
    return _moderation


def get_aggregator() -> TrustAggregator:
    return _aggregator


def get_assessment_service() -> AssessmentService:
    return _assessment_service


def get_counter_store() -> CounterStore:
    return _counter_store


def get_review_ledger() -> ReviewLedger:
    return _review_ledger


def get_client_store() -> ClientStore:
    return _client_store


def get_audit_sink() -> AuditSink:
    return _audit_sink


def get_config_cache() -> ConfigCache:
    return _config_cache
