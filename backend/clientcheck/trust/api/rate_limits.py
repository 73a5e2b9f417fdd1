"""Rate limit API: admission checks, status peeks and operator controls."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clientcheck.trust.api.deps import (
    get_actor,
    get_limit_resolver_dep,
    get_rate_limiter_dep,
    require_admin,
    require_elevated,
)
from clientcheck.trust.api.errors import rate_limited_response
from clientcheck.trust.domain.errors import Unauthorized
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.limits import LimitResolver, RateLimitConfig
from clientcheck.trust.domain.rate_limit import RateLimitCheck, RateLimiter, RateLimitRequest, RateLimitStats

router = APIRouter(prefix="/api/trust/v1/rate-limits", tags=["trust-rate-limits"])


class CheckIn(BaseModel):
    action_type: str = Field(..., min_length=1, max_length=64)
    user_id: Optional[int] = None
    external_id: Optional[int] = None
    cost: int = Field(default=1, ge=1)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1)

    def to_request(self) -> RateLimitRequest:
        return RateLimitRequest(
            action_type=self.action_type,
            user_id=self.user_id,
            external_id=self.external_id,
            cost=self.cost,
            max_attempts=self.max_attempts,
            window_seconds=self.window_seconds,
        )


def _authorize_subject(
    actor: ActorContext,
    *,
    user_id: Optional[int],
    external_id: Optional[int],
    overrides: bool = False,
) -> None:
    """Non-elevated callers may only act on their own quota, under the configured limits."""
    if actor.is_elevated:
        return
    if overrides or external_id is not None:
        raise Unauthorized()
    if user_id is not None and user_id != actor.actor_id:
        raise Unauthorized()


def _authorize_check(actor: ActorContext, payload: CheckIn) -> None:
    _authorize_subject(
        actor,
        user_id=payload.user_id,
        external_id=payload.external_id,
        overrides=payload.max_attempts is not None or payload.window_seconds is not None,
    )


class BatchCheckIn(BaseModel):
    checks: list[CheckIn] = Field(..., min_length=1, max_length=20)


class CheckOut(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime
    total_in_window: int
    degraded: bool = False

    @classmethod
    def from_check(cls, check: RateLimitCheck) -> "CheckOut":
        return cls(
            allowed=check.allowed,
            remaining=check.remaining,
            reset_at=check.reset_at,
            total_in_window=check.total_in_window,
            degraded=check.degraded,
        )


class LimitConfigIn(BaseModel):
    max_attempts: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)


class LimitConfigOut(BaseModel):
    action_type: str
    max_attempts: int
    window_seconds: int


class ActionStatsOut(BaseModel):
    action_type: str
    count: int
    blocked_count: int


class DailyActivityOut(BaseModel):
    day: date
    checks: int
    blocked: int


class StatsOut(BaseModel):
    total_windows: int
    total_requests: int
    total_blocked: int
    blocked_percentage: float
    top_actions: list[ActionStatsOut]
    recent_activity: list[DailyActivityOut]

    @classmethod
    def from_stats(cls, stats: RateLimitStats) -> "StatsOut":
        return cls(
            total_windows=stats.total_windows,
            total_requests=stats.total_requests,
            total_blocked=stats.total_blocked,
            blocked_percentage=round(stats.blocked_percentage, 2),
            top_actions=[
                ActionStatsOut(action_type=item.action_type, count=item.count, blocked_count=item.blocked_count)
                for item in stats.top_actions
            ],
            recent_activity=[
                DailyActivityOut(day=item.day, checks=item.checks, blocked=item.blocked) for item in stats.recent_activity
            ],
        )


class ResetOut(BaseModel):
    removed: int


@router.post("/check", response_model=CheckOut, responses={429: {"description": "Rate limited"}})
async def check_rate_limit(
    payload: CheckIn,
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(get_actor),
) -> Union[CheckOut, JSONResponse]:
    _authorize_check(actor, payload)
    result = await limiter.admit(payload.to_request())
    if not result.allowed:
        return rate_limited_response(result, action_type=payload.action_type, request=request)
    return CheckOut.from_check(result)


@router.post("/check-batch", response_model=list[CheckOut])
async def check_rate_limits(
    payload: BatchCheckIn,
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(get_actor),
) -> list[CheckOut]:
    for item in payload.checks:
        _authorize_check(actor, item)
    results = await limiter.check_all([item.to_request() for item in payload.checks])
    return [CheckOut.from_check(result) for result in results]


@router.get("/status", response_model=CheckOut)
async def rate_limit_status(
    action_type: str = Query(..., min_length=1, max_length=64),
    user_id: Optional[int] = Query(default=None),
    external_id: Optional[int] = Query(default=None),
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(get_actor),
) -> CheckOut:
    _authorize_subject(actor, user_id=user_id, external_id=external_id)
    subject = RateLimitRequest(action_type=action_type, user_id=user_id, external_id=external_id).actor()
    return CheckOut.from_check(await limiter.status(subject, action_type))


@router.delete("/windows", response_model=ResetOut)
async def reset_rate_limit(
    action_type: str = Query(..., min_length=1, max_length=64),
    user_id: Optional[int] = Query(default=None),
    external_id: Optional[int] = Query(default=None),
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(require_elevated),
) -> ResetOut:
    subject = RateLimitRequest(action_type=action_type, user_id=user_id, external_id=external_id).actor()
    removed = await limiter.reset(subject, action_type, performed_by=actor)
    return ResetOut(removed=removed)


@router.get("/statistics", response_model=StatsOut)
async def rate_limit_statistics(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    _: ActorContext = Depends(require_elevated),
) -> StatsOut:
    return StatsOut.from_stats(await limiter.statistics(start=start, end=end))


@router.get("/config/{action_type}", response_model=LimitConfigOut)
async def get_limit_config(
    action_type: str,
    resolver: LimitResolver = Depends(get_limit_resolver_dep),
    _: ActorContext = Depends(require_elevated),
) -> LimitConfigOut:
    config = await resolver.resolve(action_type)
    return LimitConfigOut(action_type=action_type, **config.to_payload())


@router.put("/config/{action_type}", response_model=LimitConfigOut)
async def set_limit_config(
    action_type: str,
    payload: LimitConfigIn,
    resolver: LimitResolver = Depends(get_limit_resolver_dep),
    actor: ActorContext = Depends(require_admin),
) -> LimitConfigOut:
    config = await resolver.set_override(
        action_type,
        RateLimitConfig(max_attempts=payload.max_attempts, window_seconds=payload.window_seconds),
        actor=actor,
    )
    return LimitConfigOut(action_type=action_type, **config.to_payload())


@router.delete("/config/{action_type}", response_model=LimitConfigOut, status_code=status.HTTP_200_OK)
async def clear_limit_config(
    action_type: str,
    resolver: LimitResolver = Depends(get_limit_resolver_dep),
    actor: ActorContext = Depends(require_admin),
) -> LimitConfigOut:
    config = await resolver.clear_override(action_type, actor=actor)
    return LimitConfigOut(action_type=action_type, **config.to_payload())
