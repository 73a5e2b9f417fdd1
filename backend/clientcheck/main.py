"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from clientcheck.infra import postgres
from clientcheck.infra.redis import redis_client
from clientcheck.obs import init as obs_init
from clientcheck.settings import settings
from clientcheck.trust import configure_postgres as configure_trust
from clientcheck.trust import router as trust_router
from clientcheck.trust import spawn_workers as spawn_trust_workers
from clientcheck.trust.api import ops
from clientcheck.trust.api.errors import install_error_handlers


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	configure_trust(pool, redis_client)
	worker_tasks: list[asyncio.Task] = []
	if settings.workers_enabled:
		worker_tasks.extend(spawn_trust_workers())
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


def create_app(*, use_lifespan: bool = True) -> FastAPI:
	application = FastAPI(title="ClientCheck Trust Service", lifespan=lifespan if use_lifespan else None)
	install_error_handlers(application)
	obs_init(application)
	application.include_router(ops.router)
	application.include_router(trust_router, tags=["trust"])
	return application


app = create_app()
