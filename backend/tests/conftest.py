import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from clientcheck.infra import postgres
from clientcheck.main import app
from clientcheck.settings import settings
from clientcheck.trust.domain import container


class FrozenClock:
	"""Manually advanced UTC clock for window arithmetic."""

	def __init__(self, start: datetime | None = None) -> None:
		self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **delta: float) -> datetime:
		self.now = self.now + timedelta(**delta)
		return self.now


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from clientcheck.infra.redis import redis_client, set_redis_client
	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	original_env = settings.environment
	settings.environment = "test"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture(autouse=True)
def fresh_container():
	container.reset()
	yield
	container.reset()


@pytest.fixture
def clock() -> FrozenClock:
	return FrozenClock()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
