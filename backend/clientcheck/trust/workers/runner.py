"""Utilities for wiring trust workers into an event loop."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from clientcheck.settings import settings
from clientcheck.trust.domain.container import get_aggregator, get_rate_limiter
from clientcheck.trust.jobs import reconcile, window_gc
from clientcheck.trust.workers.periodic import PeriodicJob


async def _run_forever(worker: PeriodicJob, delay: float) -> None:
    while True:
        await worker.run_once()
        await asyncio.sleep(delay)


def build_jobs(
    *,
    gc_interval: Optional[float] = None,
    reconcile_interval: Optional[float] = None,
) -> list[PeriodicJob]:
    gc_interval = gc_interval if gc_interval is not None else settings.window_gc_interval_seconds
    if reconcile_interval is None:
        reconcile_interval = settings.reconcile_interval_seconds
    limiter = get_rate_limiter()
    jobs = [PeriodicJob(name="window-gc", job=lambda: window_gc.run(limiter), interval_seconds=gc_interval)]
    if reconcile_interval:
        aggregator = get_aggregator()
        jobs.append(
            PeriodicJob(name="reconcile", job=lambda: reconcile.run(aggregator), interval_seconds=reconcile_interval)
        )
    return jobs


def spawn_workers(
    *,
    gc_interval: Optional[float] = None,
    reconcile_interval: Optional[float] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Iterable[asyncio.Task]:
    """Create asyncio tasks for the window sweep and, when configured, aggregate reconciliation."""

    event_loop = loop or asyncio.get_running_loop()
    return [
        event_loop.create_task(_run_forever(job, job.interval_seconds), name=f"trust-{job.name}")
        for job in build_jobs(gc_interval=gc_interval, reconcile_interval=reconcile_interval)
    ]
