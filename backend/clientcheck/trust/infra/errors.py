"""Maps asyncpg failures onto the trust error taxonomy."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import asyncpg

from clientcheck.trust.domain.errors import Unavailable

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.InsufficientResourcesError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.QueryCanceledError,
)


@contextmanager
def transient_as_unavailable(operation: str) -> Iterator[None]:
    try:
        yield
    except TRANSIENT_ERRORS as exc:
        raise Unavailable(f"{operation}_unavailable") from exc


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 3``."""

    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
