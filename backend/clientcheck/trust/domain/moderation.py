"""Review moderation: submission, reviewer edits, community flags and soft deletes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from clientcheck.obs import metrics
from clientcheck.trust.domain import audit
from clientcheck.trust.domain.aggregator import ClientStore, TrustAggregator
from clientcheck.trust.domain.audit import AuditRecord, AuditSink
from clientcheck.trust.domain.errors import (
    DuplicateReview,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.reviews import (
    Conflict,
    NewReview,
    Review,
    ReviewLedger,
    ReviewStatistics,
    ReviewStatus,
)
from clientcheck.trust.domain.store import bounded

logger = logging.getLogger(__name__)

AUTO_HIDE_FLAG_THRESHOLD = 3
MAX_REVIEW_TEXT_LENGTH = 2000
MAX_TAGS_COUNT = 10
MAX_TAG_LENGTH = 50
MAX_FLAG_REASON_LENGTH = 500

DELETABLE_STATUSES = frozenset({ReviewStatus.ACTIVE, ReviewStatus.FLAGGED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ReviewUpdate:
    """Partial edit of a review; ``None`` leaves a field unchanged."""

    rating: Optional[int] = None
    review_text: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    is_verified: Optional[bool] = None

    def changes(self) -> dict[str, Any]:
        fields = {
            "rating": self.rating,
            "review_text": self.review_text,
            "tags": self.tags,
            "is_verified": self.is_verified,
        }
        return {name: value for name, value in fields.items() if value is not None}


def _validate_rating(rating: Any) -> int:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("rating", "rating must be an integer between 1 and 5")
    return rating


def _validate_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    if len(text) > MAX_REVIEW_TEXT_LENGTH:
        raise ValidationError("review_text", f"review_text must be at most {MAX_REVIEW_TEXT_LENGTH} characters")
    return text.strip() or None


def _validate_tags(tags: Iterable[str]) -> tuple[str, ...]:
    cleaned = tuple(tag.strip() for tag in tags if tag and tag.strip())
    if len(cleaned) > MAX_TAGS_COUNT:
        raise ValidationError("tags", f"at most {MAX_TAGS_COUNT} tags are allowed")
    if any(len(tag) > MAX_TAG_LENGTH for tag in cleaned):
        raise ValidationError("tags", f"tags must be at most {MAX_TAG_LENGTH} characters")
    return cleaned


class ModerationEngine:
    """Owns the review state machine.

    ``active -> flagged -> hidden`` through flags, ``active|flagged -> deleted``
    through deletion. Nothing leaves ``deleted``. Every change to the active set
    is followed by a synchronous aggregate recomputation for the client.
    """

    def __init__(
        self,
        ledger: ReviewLedger,
        clients: ClientStore,
        aggregator: TrustAggregator,
        *,
        audit_sink: AuditSink,
        auto_hide_threshold: int = AUTO_HIDE_FLAG_THRESHOLD,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._clients = clients
        self._aggregator = aggregator
        self._audit = audit_sink
        self._threshold = max(1, auto_hide_threshold)
        self._timeout = timeout_seconds
        self._clock = clock

    @property
    def auto_hide_threshold(self) -> int:
        return self._threshold

    async def submit_review(
        self,
        client_id: int,
        reviewer_id: int,
        rating: int,
        *,
        review_text: str | None = None,
        tags: Iterable[str] = (),
    ) -> Review:
        draft = NewReview(
            client_id=client_id,
            reviewer_id=reviewer_id,
            rating=_validate_rating(rating),
            review_text=_validate_text(review_text),
            tags=_validate_tags(tags),
        )
        if not await bounded(self._clients.is_reachable(client_id), timeout=self._timeout, operation="client_lookup"):
            raise NotFound("client_not_found")
        outcome = await bounded(
            self._ledger.insert(draft, now=self._clock()),
            timeout=self._timeout,
            operation="review_insert",
        )
        if isinstance(outcome, Conflict):
            metrics.REVIEW_CONFLICTS.inc()
            logger.info(
                "duplicate review rejected",
                extra={"client_id": client_id, "reviewer_id": reviewer_id, "existing_id": outcome.existing_id},
            )
            raise DuplicateReview()
        review = outcome.review
        logger.info("review submitted", extra={"review_id": review.id, "client_id": client_id, "rating": review.rating})
        await self._aggregator.recompute_client_stats(client_id)
        return review

    async def flag_review(self, review_id: int, flagged_by: int, reason: str | None = None) -> Review:
        if reason is not None and len(reason) > MAX_FLAG_REASON_LENGTH:
            raise ValidationError("reason", f"reason must be at most {MAX_FLAG_REASON_LENGTH} characters")
        outcome = await bounded(
            self._ledger.apply_flag(review_id, threshold=self._threshold, now=self._clock()),
            timeout=self._timeout,
            operation="review_flag",
        )
        if outcome is None:
            raise NotFound("review_not_found")
        review = outcome.review
        auto_hidden = review.status is ReviewStatus.HIDDEN and outcome.previous_status is not ReviewStatus.HIDDEN
        metrics.observe_transition(outcome.previous_status.value, review.status.value)
        await self._record(
            flagged_by,
            review,
            {
                "action": "flag",
                "reason": reason,
                "flag_count": review.flagged_count,
                "auto_hidden": auto_hidden,
            },
        )
        if auto_hidden:
            logger.info(
                "review auto-hidden",
                extra={"review_id": review.id, "client_id": review.client_id, "flag_count": review.flagged_count},
            )
        if outcome.previous_status is ReviewStatus.ACTIVE:
            await self._aggregator.recompute_client_stats(review.client_id)
        return review

    async def update_review(self, review_id: int, updates: ReviewUpdate, actor: ActorContext) -> Review:
        current = await self._authorized_review(review_id, actor)
        changes = updates.changes()
        if "rating" in changes:
            changes["rating"] = _validate_rating(changes["rating"])
        if "review_text" in changes:
            changes["review_text"] = _validate_text(changes["review_text"])
        if "tags" in changes:
            changes["tags"] = _validate_tags(changes["tags"])
        if "is_verified" in changes and changes["is_verified"] != current.is_verified and not actor.is_elevated:
            raise Unauthorized()
        if not changes:
            return current
        updated = await bounded(
            self._ledger.update_fields(review_id, changes, now=self._clock()),
            timeout=self._timeout,
            operation="review_update",
        )
        if updated is None:
            raise self._missing(actor)
        await self._record(actor.actor_id, updated, {"action": "update", "fields": sorted(changes)})
        if updated.rating != current.rating:
            await self._aggregator.recompute_client_stats(updated.client_id)
        return updated

    async def delete_review(self, review_id: int, actor: ActorContext) -> Review:
        current = await self._authorized_review(review_id, actor)
        if current.status is ReviewStatus.HIDDEN:
            raise InvalidTransition("review_hidden")
        deleted = await bounded(
            self._ledger.transition(
                review_id,
                ReviewStatus.DELETED,
                from_statuses=DELETABLE_STATUSES,
                now=self._clock(),
            ),
            timeout=self._timeout,
            operation="review_delete",
        )
        if deleted is None:
            # Lost a race with a flag or another delete.
            latest = await bounded(self._ledger.get(review_id), timeout=self._timeout, operation="review_get")
            if latest is not None and latest.status is ReviewStatus.HIDDEN:
                raise InvalidTransition("review_hidden")
            raise NotFound("review_not_found")
        metrics.observe_transition(current.status.value, deleted.status.value)
        await self._record(actor.actor_id, deleted, {"action": "delete", "previous_status": current.status.value})
        await self._aggregator.recompute_client_stats(deleted.client_id)
        return deleted

    async def get_review(self, review_id: int, actor: ActorContext) -> Review:
        """Hidden reviews are visible to elevated actors only."""

        review = await bounded(self._ledger.get(review_id), timeout=self._timeout, operation="review_get")
        if review is None or review.status is ReviewStatus.DELETED:
            raise NotFound("review_not_found")
        if review.status is ReviewStatus.HIDDEN and not actor.is_elevated:
            raise NotFound("review_not_found")
        return review

    async def statistics(self) -> ReviewStatistics:
        return await bounded(self._ledger.statistics(), timeout=self._timeout, operation="review_statistics")

    async def _authorized_review(self, review_id: int, actor: ActorContext) -> Review:
        review = await bounded(self._ledger.get(review_id), timeout=self._timeout, operation="review_get")
        if review is None:
            raise self._missing(actor)
        if review.reviewer_id != actor.actor_id and not actor.is_elevated:
            raise Unauthorized()
        if review.status is ReviewStatus.DELETED:
            raise NotFound("review_not_found")
        return review

    @staticmethod
    def _missing(actor: ActorContext) -> Exception:
        if actor.is_elevated:
            return NotFound("review_not_found")
        return Unauthorized()

    async def _record(self, actor_id: int | None, review: Review, details: dict[str, Any]) -> None:
        record = AuditRecord(
            actor_id=actor_id,
            action_type=audit.REVIEW_MODERATE,
            target_type="review",
            target_id=str(review.id),
            details={**details, "client_id": review.client_id, "status": review.status.value},
        )
        await bounded(self._audit.append(record), timeout=self._timeout, operation="audit_append")
