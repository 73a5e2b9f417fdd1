"""PostgreSQL persistence for rate limit windows."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

import asyncpg

from clientcheck.trust.domain.rate_limit import Actor, ActorKind, CounterStore, RateWindow
from clientcheck.trust.infra.errors import affected_rows, transient_as_unavailable

_COLUMNS = "id, actor_kind, actor_id, action_type, window_start, count, expires_at"


def _row_to_window(row: asyncpg.Record) -> RateWindow:
    return RateWindow(
        id=int(row["id"]),
        actor=Actor(ActorKind(str(row["actor_kind"])), int(row["actor_id"])),
        action_type=str(row["action_type"]),
        window_start=row["window_start"],
        count=int(row["count"]),
        expires_at=row["expires_at"],
    )


class PostgresCounterStore(CounterStore):
    """Stores windows in rate_limit_windows.

    The partial unique index on ``(actor_kind, actor_id, action_type) WHERE
    is_current`` guarantees a single current window per pair, so concurrent
    first requests cannot both open one.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def increment_live(self, actor: Actor, action_type: str, cost: int, now: datetime) -> RateWindow | None:
        with transient_as_unavailable("rate_window_increment"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE rate_limit_windows
                SET count = count + $4
                WHERE actor_kind = $1 AND actor_id = $2 AND action_type = $3
                  AND is_current AND expires_at > $5
                RETURNING {_COLUMNS}
                """,
                actor.kind.value,
                actor.id,
                action_type,
                cost,
                now,
            )
        return _row_to_window(row) if row is not None else None

    async def open_window(
        self,
        actor: Actor,
        action_type: str,
        cost: int,
        now: datetime,
        expires_at: datetime,
    ) -> RateWindow | None:
        with transient_as_unavailable("rate_window_open"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO rate_limit_windows (actor_kind, actor_id, action_type, window_start, count, expires_at, is_current)
                VALUES ($1, $2, $3, $4, $5, $6, TRUE)
                ON CONFLICT (actor_kind, actor_id, action_type) WHERE is_current DO NOTHING
                RETURNING {_COLUMNS}
                """,
                actor.kind.value,
                actor.id,
                action_type,
                now,
                cost,
                expires_at,
            )
        return _row_to_window(row) if row is not None else None

    async def retire_expired(self, actor: Actor, action_type: str, now: datetime) -> None:
        with transient_as_unavailable("rate_window_retire"):
            await self._pool.execute(
                """
                UPDATE rate_limit_windows
                SET is_current = FALSE
                WHERE actor_kind = $1 AND actor_id = $2 AND action_type = $3
                  AND is_current AND expires_at <= $4
                """,
                actor.kind.value,
                actor.id,
                action_type,
                now,
            )

    async def find_live(self, actor: Actor, action_type: str, now: datetime) -> RateWindow | None:
        with transient_as_unavailable("rate_window_find"):
            row = await self._pool.fetchrow(
                f"""
                SELECT {_COLUMNS}
                FROM rate_limit_windows
                WHERE actor_kind = $1 AND actor_id = $2 AND action_type = $3
                  AND is_current AND expires_at > $4
                """,
                actor.kind.value,
                actor.id,
                action_type,
                now,
            )
        return _row_to_window(row) if row is not None else None

    async def delete_for(self, actor: Actor, action_type: str) -> int:
        with transient_as_unavailable("rate_window_reset"):
            status = await self._pool.execute(
                "DELETE FROM rate_limit_windows WHERE actor_kind = $1 AND actor_id = $2 AND action_type = $3",
                actor.kind.value,
                actor.id,
                action_type,
            )
        return affected_rows(status)

    async def delete_expired(self, now: datetime) -> int:
        with transient_as_unavailable("rate_window_gc"):
            status = await self._pool.execute("DELETE FROM rate_limit_windows WHERE expires_at < $1", now)
        return affected_rows(status)

    async def list_windows(self, *, start: datetime | None, end: datetime | None) -> Sequence[RateWindow]:
        with transient_as_unavailable("rate_window_list"):
            rows = await self._pool.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM rate_limit_windows
                WHERE ($1::timestamptz IS NULL OR window_start >= $1)
                  AND ($2::timestamptz IS NULL OR window_start <= $2)
                ORDER BY window_start
                """,
                start,
                end,
            )
        return [_row_to_window(row) for row in rows]
