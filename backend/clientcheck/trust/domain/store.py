"""Bounded store calls shared by trust services."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from redis.exceptions import RedisError

from clientcheck.trust.domain.errors import Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], *, timeout: float | None, operation: str) -> T:
    """Await a store operation, converting timeouts and connection failures into ``Unavailable``."""

    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store call timed out", extra={"operation": operation, "timeout": timeout})
        raise Unavailable(f"{operation}_timeout") from exc
    except (ConnectionError, OSError, RedisError) as exc:
        logger.warning("store call failed", extra={"operation": operation, "error": str(exc)})
        raise Unavailable(f"{operation}_unavailable") from exc
