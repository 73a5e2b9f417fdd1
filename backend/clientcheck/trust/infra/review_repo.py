"""PostgreSQL persistence for reviews."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Mapping

import asyncpg

from clientcheck.trust.domain.reviews import (
    Conflict,
    Created,
    FlagOutcome,
    InsertOutcome,
    NewReview,
    RatingSummary,
    Review,
    ReviewLedger,
    ReviewStatistics,
    ReviewStatus,
)
from clientcheck.trust.infra.errors import transient_as_unavailable

_COLUMNS = (
    "id, client_id, reviewer_id, rating, review_text, tags, status, flagged_count, is_verified, created_at, updated_at"
)
_UPDATABLE = frozenset({"rating", "review_text", "tags", "is_verified"})


def _row_to_review(row: asyncpg.Record) -> Review:
    return Review(
        id=int(row["id"]),
        client_id=int(row["client_id"]),
        reviewer_id=int(row["reviewer_id"]),
        rating=int(row["rating"]),
        status=ReviewStatus(str(row["status"])),
        flagged_count=int(row["flagged_count"]),
        is_verified=bool(row["is_verified"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        review_text=row["review_text"],
        tags=tuple(row["tags"] or ()),
    )


class PostgresReviewLedger(ReviewLedger):
    """Stores reviews in the reviews table.

    Uniqueness of live (client, reviewer) pairs is enforced by the partial
    unique index ``ux_reviews_client_reviewer_live``.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, draft: NewReview, *, now: datetime) -> InsertOutcome:
        with transient_as_unavailable("review_insert"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO reviews (client_id, reviewer_id, rating, review_text, tags, status, flagged_count,
                    is_verified, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, 'active', 0, FALSE, $6, $6)
                ON CONFLICT (client_id, reviewer_id) WHERE status <> 'deleted' DO NOTHING
                RETURNING {_COLUMNS}
                """,
                draft.client_id,
                draft.reviewer_id,
                draft.rating,
                draft.review_text,
                list(draft.tags),
                now,
            )
            if row is not None:
                return Created(review=_row_to_review(row))
            existing = await self._pool.fetchval(
                "SELECT id FROM reviews WHERE client_id = $1 AND reviewer_id = $2 AND status <> 'deleted'",
                draft.client_id,
                draft.reviewer_id,
            )
        return Conflict(existing_id=int(existing) if existing is not None else None)

    async def get(self, review_id: int) -> Review | None:
        with transient_as_unavailable("review_get"):
            row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM reviews WHERE id = $1", review_id)
        return _row_to_review(row) if row is not None else None

    async def apply_flag(self, review_id: int, *, threshold: int, now: datetime) -> FlagOutcome | None:
        with transient_as_unavailable("review_flag"):
            row = await self._pool.fetchrow(
                """
                WITH prev AS (
                    SELECT id, status FROM reviews WHERE id = $1 AND status <> 'deleted' FOR UPDATE
                )
                UPDATE reviews r
                SET flagged_count = r.flagged_count + 1,
                    status = CASE
                        WHEN r.status = 'hidden' OR r.flagged_count + 1 >= $2 THEN 'hidden'
                        ELSE 'flagged'
                    END,
                    updated_at = $3
                FROM prev
                WHERE r.id = prev.id
                RETURNING r.id, r.client_id, r.reviewer_id, r.rating, r.review_text, r.tags, r.status,
                    r.flagged_count, r.is_verified, r.created_at, r.updated_at, prev.status AS previous_status
                """,
                review_id,
                threshold,
                now,
            )
        if row is None:
            return None
        return FlagOutcome(review=_row_to_review(row), previous_status=ReviewStatus(str(row["previous_status"])))

    async def update_fields(self, review_id: int, changes: Mapping[str, Any], *, now: datetime) -> Review | None:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"unsupported review fields: {sorted(unknown)}")
        assignments = []
        args: list[Any] = [review_id, now]
        for name, value in changes.items():
            args.append(list(value) if name == "tags" else value)
            assignments.append(f"{name} = ${len(args)}")
        assignments.append("updated_at = $2")
        with transient_as_unavailable("review_update"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE reviews SET {", ".join(assignments)}
                WHERE id = $1 AND status <> 'deleted'
                RETURNING {_COLUMNS}
                """,
                *args,
            )
        return _row_to_review(row) if row is not None else None

    async def transition(
        self,
        review_id: int,
        to_status: ReviewStatus,
        *,
        from_statuses: Collection[ReviewStatus],
        now: datetime,
    ) -> Review | None:
        with transient_as_unavailable("review_transition"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE reviews SET status = $2, updated_at = $3
                WHERE id = $1 AND status = ANY($4::text[])
                RETURNING {_COLUMNS}
                """,
                review_id,
                to_status.value,
                now,
                [status.value for status in from_statuses],
            )
        return _row_to_review(row) if row is not None else None

    async def active_rating_summary(self, client_id: int) -> RatingSummary:
        with transient_as_unavailable("review_summary"):
            row = await self._pool.fetchrow(
                """
                SELECT COUNT(*) AS count, AVG(rating)::float8 AS average
                FROM reviews
                WHERE client_id = $1 AND status = 'active'
                """,
                client_id,
            )
        count = int(row["count"]) if row is not None else 0
        average = row["average"] if row is not None and count else None
        return RatingSummary(count=count, average=float(average) if average is not None else None)

    async def statistics(self) -> ReviewStatistics:
        with transient_as_unavailable("review_statistics"):
            totals = await self._pool.fetchrow(
                """
                SELECT COUNT(*) AS total,
                       AVG(rating) FILTER (WHERE status = 'active')::float8 AS average_rating,
                       COUNT(*) FILTER (WHERE is_verified) AS verified_reviews
                FROM reviews
                """
            )
            rating_rows = await self._pool.fetch(
                "SELECT rating, COUNT(*) AS count FROM reviews GROUP BY rating ORDER BY rating"
            )
            status_rows = await self._pool.fetch("SELECT status, COUNT(*) AS count FROM reviews GROUP BY status")
        average = totals["average_rating"] if totals is not None else None
        return ReviewStatistics(
            total=int(totals["total"]) if totals is not None else 0,
            average_rating=float(average) if average is not None else None,
            verified_reviews=int(totals["verified_reviews"]) if totals is not None else 0,
            by_rating={str(row["rating"]): int(row["count"]) for row in rating_rows},
            by_status={str(row["status"]): int(row["count"]) for row in status_rows},
        )
