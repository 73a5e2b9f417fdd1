"""Redis client used for the shared rate-limit configuration cache.

Modules hold the module-level :data:`redis_client` proxy; tests swap the
underlying client for fakeredis with :func:`set_redis_client`.
"""

from __future__ import annotations

import asyncio

import redis.asyncio as redis
from redis.exceptions import RedisError

from clientcheck.settings import settings


class RedisProxy:
	"""Forwards attribute access to whichever client is currently installed."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


async def probe(timeout: float = 0.2) -> bool:
	try:
		return bool(await asyncio.wait_for(redis_client.ping(), timeout=timeout))
	except (asyncio.TimeoutError, OSError, RedisError):
		return False
