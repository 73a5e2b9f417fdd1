"""Review API: rate-limited submission and flagging, reviewer edits, soft deletes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clientcheck.trust.api.deps import (
    get_actor,
    get_moderation_dep,
    get_rate_limiter_dep,
    require_elevated,
)
from clientcheck.trust.api.errors import rate_limited_response
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.moderation import MAX_REVIEW_TEXT_LENGTH, MAX_TAGS_COUNT, ModerationEngine, ReviewUpdate
from clientcheck.trust.domain.rate_limit import RateLimiter, RateLimitRequest
from clientcheck.trust.domain.reviews import Review, ReviewStatistics

router = APIRouter(prefix="/api/trust/v1/reviews", tags=["trust-reviews"])

CREATE_REVIEW_ACTION = "create_review"
FLAG_REVIEW_ACTION = "flag_review"


class ReviewIn(BaseModel):
    client_id: int
    rating: int = Field(..., ge=1, le=5)
    review_text: Optional[str] = Field(default=None, max_length=MAX_REVIEW_TEXT_LENGTH)
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS_COUNT)


class ReviewPatch(BaseModel):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    review_text: Optional[str] = Field(default=None, max_length=MAX_REVIEW_TEXT_LENGTH)
    tags: Optional[list[str]] = Field(default=None, max_length=MAX_TAGS_COUNT)
    is_verified: Optional[bool] = None

    def to_update(self) -> ReviewUpdate:
        return ReviewUpdate(
            rating=self.rating,
            review_text=self.review_text,
            tags=tuple(self.tags) if self.tags is not None else None,
            is_verified=self.is_verified,
        )


class FlagIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ReviewOut(BaseModel):
    id: int
    client_id: int
    reviewer_id: int
    rating: int
    status: str
    flagged_count: int
    is_verified: bool
    review_text: Optional[str]
    tags: list[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_review(cls, review: Review) -> "ReviewOut":
        return cls(
            id=review.id,
            client_id=review.client_id,
            reviewer_id=review.reviewer_id,
            rating=review.rating,
            status=review.status.value,
            flagged_count=review.flagged_count,
            is_verified=review.is_verified,
            review_text=review.review_text,
            tags=list(review.tags),
            created_at=review.created_at,
            updated_at=review.updated_at,
        )


class ReviewStatsOut(BaseModel):
    total: int
    average_rating: Optional[float]
    verified_reviews: int
    by_rating: dict[str, int]
    by_status: dict[str, int]

    @classmethod
    def from_stats(cls, stats: ReviewStatistics) -> "ReviewStatsOut":
        return cls(
            total=stats.total,
            average_rating=round(stats.average_rating, 2) if stats.average_rating is not None else None,
            verified_reviews=stats.verified_reviews,
            by_rating=dict(stats.by_rating),
            by_status=dict(stats.by_status),
        )


@router.post("", response_model=ReviewOut, status_code=status.HTTP_201_CREATED)
async def submit_review(
    payload: ReviewIn,
    request: Request,
    engine: ModerationEngine = Depends(get_moderation_dep),
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(get_actor),
) -> Union[ReviewOut, JSONResponse]:
    check = await limiter.admit(RateLimitRequest(action_type=CREATE_REVIEW_ACTION, user_id=actor.actor_id))
    if not check.allowed:
        return rate_limited_response(check, action_type=CREATE_REVIEW_ACTION, request=request)
    review = await engine.submit_review(
        payload.client_id,
        actor.actor_id,
        payload.rating,
        review_text=payload.review_text,
        tags=payload.tags,
    )
    return ReviewOut.from_review(review)


@router.get("/statistics", response_model=ReviewStatsOut)
async def review_statistics(
    engine: ModerationEngine = Depends(get_moderation_dep),
    _: ActorContext = Depends(require_elevated),
) -> ReviewStatsOut:
    return ReviewStatsOut.from_stats(await engine.statistics())


@router.get("/{review_id}", response_model=ReviewOut)
async def get_review(
    review_id: int,
    engine: ModerationEngine = Depends(get_moderation_dep),
    actor: ActorContext = Depends(get_actor),
) -> ReviewOut:
    return ReviewOut.from_review(await engine.get_review(review_id, actor))


@router.post("/{review_id}/flags", response_model=ReviewOut)
async def flag_review(
    review_id: int,
    payload: FlagIn,
    request: Request,
    engine: ModerationEngine = Depends(get_moderation_dep),
    limiter: RateLimiter = Depends(get_rate_limiter_dep),
    actor: ActorContext = Depends(get_actor),
) -> Union[ReviewOut, JSONResponse]:
    check = await limiter.admit(RateLimitRequest(action_type=FLAG_REVIEW_ACTION, user_id=actor.actor_id))
    if not check.allowed:
        return rate_limited_response(check, action_type=FLAG_REVIEW_ACTION, request=request)
    review = await engine.flag_review(review_id, actor.actor_id, payload.reason)
    return ReviewOut.from_review(review)


@router.patch("/{review_id}", response_model=ReviewOut)
async def update_review(
    review_id: int,
    payload: ReviewPatch,
    engine: ModerationEngine = Depends(get_moderation_dep),
    actor: ActorContext = Depends(get_actor),
) -> ReviewOut:
    review = await engine.update_review(review_id, payload.to_update(), actor)
    return ReviewOut.from_review(review)


@router.delete("/{review_id}", response_model=ReviewOut)
async def delete_review(
    review_id: int,
    engine: ModerationEngine = Depends(get_moderation_dep),
    actor: ActorContext = Depends(get_actor),
) -> ReviewOut:
    return ReviewOut.from_review(await engine.delete_review(review_id, actor))
