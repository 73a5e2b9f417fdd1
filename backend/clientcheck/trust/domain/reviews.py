"""Review ledger: durable review records keyed by (client, reviewer)."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Collection, Mapping, Protocol, Union


class ReviewStatus(str, Enum):
    ACTIVE = "active"
    FLAGGED = "flagged"
    HIDDEN = "hidden"
    DELETED = "deleted"


@dataclass(slots=True)
class Review:
    id: int
    client_id: int
    reviewer_id: int
    rating: int
    status: ReviewStatus
    flagged_count: int
    is_verified: bool
    created_at: datetime
    updated_at: datetime
    review_text: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True)
class NewReview:
    client_id: int
    reviewer_id: int
    rating: int
    review_text: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(slots=True)
class Created:
    review: Review


@dataclass(slots=True)
class Conflict:
    existing_id: int | None


InsertOutcome = Union[Created, Conflict]


@dataclass(slots=True)
class FlagOutcome:
    review: Review
    previous_status: ReviewStatus


@dataclass(slots=True)
class RatingSummary:
    count: int
    average: float | None


@dataclass(slots=True)
class ReviewStatistics:
    total: int
    average_rating: float | None
    verified_reviews: int
    by_rating: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)


class ReviewLedger(Protocol):
    """Storage contract for reviews.

    Implementations must enforce uniqueness of non-deleted (client, reviewer)
    pairs themselves and apply flag increments atomically.
    """

    async def insert(self, draft: NewReview, *, now: datetime) -> InsertOutcome:
        ...

    async def get(self, review_id: int) -> Review | None:
        ...

    async def apply_flag(self, review_id: int, *, threshold: int, now: datetime) -> FlagOutcome | None:
        """Increment ``flagged_count`` and set the post-increment status; ``None`` when missing or deleted."""

    async def update_fields(self, review_id: int, changes: Mapping[str, Any], *, now: datetime) -> Review | None:
        ...

    async def transition(
        self,
        review_id: int,
        to_status: ReviewStatus,
        *,
        from_statuses: Collection[ReviewStatus],
        now: datetime,
    ) -> Review | None:
        ...

    async def active_rating_summary(self, client_id: int) -> RatingSummary:
        ...

    async def statistics(self) -> ReviewStatistics:
        ...


def next_flag_status(current: ReviewStatus, flagged_count: int, threshold: int) -> ReviewStatus:
    """Status after a flag, given the post-increment count."""

    if current is ReviewStatus.HIDDEN or flagged_count >= threshold:
        return ReviewStatus.HIDDEN
    return ReviewStatus.FLAGGED


class InMemoryReviewLedger(ReviewLedger):
    """Reference ledger used in tests and developer environments."""

    def __init__(self) -> None:
        self.reviews: dict[int, Review] = {}
        self._next_id = 1

    async def insert(self, draft: NewReview, *, now: datetime) -> InsertOutcome:
        for review in self.reviews.values():
            if (
                review.client_id == draft.client_id
                and review.reviewer_id == draft.reviewer_id
                and review.status is not ReviewStatus.DELETED
            ):
                return Conflict(existing_id=review.id)
        review = Review(
            id=self._next_id,
            client_id=draft.client_id,
            reviewer_id=draft.reviewer_id,
            rating=draft.rating,
            status=ReviewStatus.ACTIVE,
            flagged_count=0,
            is_verified=False,
            created_at=now,
            updated_at=now,
            review_text=draft.review_text,
            tags=tuple(draft.tags),
        )
        self._next_id += 1
        self.reviews[review.id] = review
        return Created(review=replace(review))

    async def get(self, review_id: int) -> Review | None:
        review = self.reviews.get(review_id)
        return replace(review) if review is not None else None

    async def apply_flag(self, review_id: int, *, threshold: int, now: datetime) -> FlagOutcome | None:
        review = self.reviews.get(review_id)
        if review is None or review.status is ReviewStatus.DELETED:
            return None
        previous = review.status
        review.flagged_count += 1
        review.status = next_flag_status(previous, review.flagged_count, threshold)
        review.updated_at = now
        return FlagOutcome(review=replace(review), previous_status=previous)

    async def update_fields(self, review_id: int, changes: Mapping[str, Any], *, now: datetime) -> Review | None:
        review = self.reviews.get(review_id)
        if review is None or review.status is ReviewStatus.DELETED:
            return None
        for name, value in changes.items():
            setattr(review, name, tuple(value) if name == "tags" else value)
        review.updated_at = now
        return replace(review)

    async def transition(
        self,
        review_id: int,
        to_status: ReviewStatus,
        *,
        from_statuses: Collection[ReviewStatus],
        now: datetime,
    ) -> Review | None:
        review = self.reviews.get(review_id)
        if review is None or review.status not in from_statuses:
            return None
        review.status = to_status
        review.updated_at = now
        return replace(review)

    async def active_rating_summary(self, client_id: int) -> RatingSummary:
        ratings = [
            r.rating for r in self.reviews.values() if r.client_id == client_id and r.status is ReviewStatus.ACTIVE
        ]
        if not ratings:
            return RatingSummary(count=0, average=None)
        return RatingSummary(count=len(ratings), average=sum(ratings) / len(ratings))

    async def statistics(self) -> ReviewStatistics:
        reviews = list(self.reviews.values())
        active = [r.rating for r in reviews if r.status is ReviewStatus.ACTIVE]
        return ReviewStatistics(
            total=len(reviews),
            average_rating=sum(active) / len(active) if active else None,
            verified_reviews=sum(1 for r in reviews if r.is_verified),
            by_rating={str(k): v for k, v in sorted(Counter(r.rating for r in reviews).items())},
            by_status=dict(Counter(r.status.value for r in reviews)),
        )
