"""Request-scoped dependencies for trust routers."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from clientcheck.trust.domain import container
from clientcheck.trust.domain.aggregator import TrustAggregator
from clientcheck.trust.domain.assessments import AssessmentService
from clientcheck.trust.domain.identity import ActorContext, ActorRole
from clientcheck.trust.domain.limits import LimitResolver
from clientcheck.trust.domain.moderation import ModerationEngine
from clientcheck.trust.domain.rate_limit import RateLimiter


async def get_actor(
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> ActorContext:
    """Resolve the caller from gateway headers; authentication happens upstream."""
    if not x_actor_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="missing_actor")
    try:
        actor_id = int(x_actor_id)
    except ValueError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="invalid_actor") from exc
    role_value = (x_actor_role or ActorRole.USER.value).strip().lower()
    try:
        role = ActorRole(role_value)
    except ValueError as exc:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="invalid_actor_role") from exc
    return ActorContext(actor_id=actor_id, role=role)


async def require_elevated(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not actor.is_elevated:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="not_authorized")
    return actor


async def require_admin(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not actor.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="not_authorized")
    return actor


def get_rate_limiter_dep() -> RateLimiter:
    return container.get_rate_limiter()


def get_limit_resolver_dep() -> LimitResolver:
    return container.get_limit_resolver()


def get_moderation_dep() -> ModerationEngine:
    return container.get_moderation_engine()


def get_aggregator_dep() -> TrustAggregator:
    return container.get_aggregator()


def get_assessment_service_dep() -> AssessmentService:
    return container.get_assessment_service()
