"""Worker that runs a trust job on a fixed cadence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from clientcheck.trust.domain.errors import TrustError

logger = logging.getLogger(__name__)


@dataclass
class PeriodicJob:
    """Runs ``job`` once per tick; failures are logged and retried on the next tick."""

    name: str
    job: Callable[[], Awaitable[Any]]
    interval_seconds: float
    runs: int = 0
    failures: int = 0

    async def run_once(self) -> Any:
        try:
            result = await self.job()
        except TrustError as exc:
            self.failures += 1
            logger.warning("trust job failed", extra={"job": self.name, "error": exc.detail})
            return None
        except Exception:  # noqa: BLE001 - the worker loop must survive a bad tick
            self.failures += 1
            logger.exception("trust job crashed", extra={"job": self.name})
            return None
        self.runs += 1
        logger.info("trust job finished", extra={"job": self.name, "result": str(result)})
        return result
