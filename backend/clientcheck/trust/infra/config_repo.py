"""Key/value configuration in bot_configuration."""

from __future__ import annotations

import json
from typing import Any, Mapping

import asyncpg

from clientcheck.trust.domain.limits import ConfigRepository
from clientcheck.trust.infra.errors import transient_as_unavailable


class PostgresConfigRepository(ConfigRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_value(self, key: str) -> Mapping[str, Any] | None:
        with transient_as_unavailable("config_read"):
            raw = await self._pool.fetchval("SELECT value FROM bot_configuration WHERE key = $1", key)
        if raw is None:
            return None
        value = json.loads(raw) if isinstance(raw, str) else raw
        return value if isinstance(value, dict) else None

    async def set_value(self, key: str, value: Mapping[str, Any], *, updated_by: int | None) -> None:
        with transient_as_unavailable("config_write"):
            await self._pool.execute(
                """
                INSERT INTO bot_configuration (key, value, updated_by, updated_at)
                VALUES ($1, $2::jsonb, $3, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_by = EXCLUDED.updated_by, updated_at = NOW()
                """,
                key,
                json.dumps(dict(value)),
                updated_by,
            )

    async def delete_value(self, key: str) -> None:
        with transient_as_unavailable("config_write"):
            await self._pool.execute("DELETE FROM bot_configuration WHERE key = $1", key)
