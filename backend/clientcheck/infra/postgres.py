"""AsyncPG pool owned by the application lifespan."""

from __future__ import annotations

import asyncio
from typing import Optional

import asyncpg

from clientcheck.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			ssl="require" if settings.postgres_ssl else "disable",
			command_timeout=settings.store_timeout_seconds,
		)
	return _pool


def current_pool() -> Optional[asyncpg.pool.Pool]:
	return _pool


async def probe(timeout: float = 1.0) -> Optional[bool]:
	"""``None`` when no pool is configured, otherwise whether ``SELECT 1`` succeeded in time."""
	if _pool is None:
		return None
	try:
		async with _pool.acquire(timeout=timeout) as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
	except (asyncio.TimeoutError, OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
		return False
	return True


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
