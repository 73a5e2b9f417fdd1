"""Delete rate limit windows that expired before the sweep time."""

from __future__ import annotations

from datetime import datetime, timezone

from clientcheck.trust.domain.rate_limit import RateLimiter


async def run(limiter: RateLimiter, *, now: datetime | None = None) -> int:
    """Run one sweep and return the number of windows removed."""

    now = now or datetime.now(timezone.utc)
    return await limiter.cleanup_expired(now)
