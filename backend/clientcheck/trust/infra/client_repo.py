"""Aggregate columns on client_profiles."""

from __future__ import annotations

from typing import Sequence

import asyncpg

from clientcheck.trust.domain.aggregator import ClientAggregate, ClientStore
from clientcheck.trust.infra.errors import transient_as_unavailable

_COLUMNS = "id, total_reviews, average_rating, ai_safety_score, stats_updated_at"


def _row_to_aggregate(row: asyncpg.Record) -> ClientAggregate:
    return ClientAggregate(
        client_id=int(row["id"]),
        total_reviews=int(row["total_reviews"]),
        average_rating=float(row["average_rating"]) if row["average_rating"] is not None else None,
        ai_safety_score=float(row["ai_safety_score"]) if row["ai_safety_score"] is not None else None,
        updated_at=row["stats_updated_at"],
    )


class PostgresClientStore(ClientStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def is_reachable(self, client_id: int) -> bool:
        with transient_as_unavailable("client_lookup"):
            found = await self._pool.fetchval(
                "SELECT 1 FROM client_profiles WHERE id = $1 AND deleted_at IS NULL",
                client_id,
            )
        return found is not None

    async def get_aggregate(self, client_id: int) -> ClientAggregate | None:
        with transient_as_unavailable("aggregate_read"):
            row = await self._pool.fetchrow(
                f"SELECT {_COLUMNS} FROM client_profiles WHERE id = $1 AND deleted_at IS NULL",
                client_id,
            )
        return _row_to_aggregate(row) if row is not None else None

    async def write_aggregate(self, aggregate: ClientAggregate, *, include_safety: bool) -> ClientAggregate | None:
        # Soft-deleted profiles are still written; their aggregate stays consistent.
        with transient_as_unavailable("aggregate_write"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE client_profiles
                SET total_reviews = $2,
                    average_rating = $3,
                    ai_safety_score = CASE WHEN $4 THEN $5 ELSE ai_safety_score END,
                    stats_updated_at = $6
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                aggregate.client_id,
                aggregate.total_reviews,
                aggregate.average_rating,
                include_safety,
                aggregate.ai_safety_score,
                aggregate.updated_at,
            )
        return _row_to_aggregate(row) if row is not None else None

    async def list_client_ids(self) -> Sequence[int]:
        with transient_as_unavailable("client_list"):
            rows = await self._pool.fetch("SELECT id FROM client_profiles WHERE deleted_at IS NULL ORDER BY id")
        return [int(row["id"]) for row in rows]
