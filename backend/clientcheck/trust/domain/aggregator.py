"""Trust aggregation: derives a client's review count, average rating and AI safety score."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, Sequence

from clientcheck.obs import metrics
from clientcheck.trust.domain.errors import NotFound
from clientcheck.trust.domain.reviews import ReviewLedger
from clientcheck.trust.domain.store import bounded

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientAggregate:
    """Denormalized trust summary stored alongside the client profile."""

    client_id: int
    total_reviews: int = 0
    average_rating: float | None = None
    ai_safety_score: float | None = None
    updated_at: datetime | None = None

    def values(self) -> tuple[int, float | None, float | None]:
        return (self.total_reviews, self.average_rating, self.ai_safety_score)


@dataclass(slots=True)
class ReconcileReport:
    checked: int
    corrected: int


class ClientStore(Protocol):
    """Client profiles as far as the trust subsystem sees them.

    Soft-deleted profiles keep their aggregate but are not reachable.
    """

    async def is_reachable(self, client_id: int) -> bool:
        ...

    async def get_aggregate(self, client_id: int) -> ClientAggregate | None:
        ...

    async def write_aggregate(self, aggregate: ClientAggregate, *, include_safety: bool) -> ClientAggregate | None:
        """Persist derived fields; ``ai_safety_score`` is only written when ``include_safety``."""

    async def list_client_ids(self) -> Sequence[int]:
        ...


class SafetyHistory(Protocol):
    async def recent_safety_scores(self, client_id: int, *, limit: int) -> Sequence[float]:
        """``overall_score`` of the newest safety assessments, newest first."""


class InMemoryClientStore(ClientStore):
    def __init__(self) -> None:
        self.aggregates: dict[int, ClientAggregate] = {}
        self.deleted: set[int] = set()

    def add_client(self, client_id: int) -> ClientAggregate:
        aggregate = ClientAggregate(client_id=client_id)
        self.aggregates[client_id] = aggregate
        return aggregate

    def soft_delete(self, client_id: int) -> None:
        self.deleted.add(client_id)

    async def is_reachable(self, client_id: int) -> bool:
        return client_id in self.aggregates and client_id not in self.deleted

    async def get_aggregate(self, client_id: int) -> ClientAggregate | None:
        if not await self.is_reachable(client_id):
            return None
        return _copy(self.aggregates[client_id])

    async def write_aggregate(self, aggregate: ClientAggregate, *, include_safety: bool) -> ClientAggregate | None:
        stored = self.aggregates.get(aggregate.client_id)
        if stored is None:
            return None
        stored.total_reviews = aggregate.total_reviews
        stored.average_rating = aggregate.average_rating
        if include_safety:
            stored.ai_safety_score = aggregate.ai_safety_score
        stored.updated_at = aggregate.updated_at
        return _copy(stored)

    async def list_client_ids(self) -> Sequence[int]:
        return sorted(cid for cid in self.aggregates if cid not in self.deleted)


def _copy(aggregate: ClientAggregate) -> ClientAggregate:
    return ClientAggregate(
        client_id=aggregate.client_id,
        total_reviews=aggregate.total_reviews,
        average_rating=aggregate.average_rating,
        ai_safety_score=aggregate.ai_safety_score,
        updated_at=aggregate.updated_at,
    )


def mean(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


class TrustAggregator:
    """Recomputes client aggregates from the active review set and assessment history.

    Recomputation is idempotent and safe to run concurrently for the same
    client: the result depends only on the data it reads, so racing writers
    converge, and any write that changed the data triggers another pass.
    """

    def __init__(
        self,
        reviews: ReviewLedger,
        assessments: SafetyHistory,
        clients: ClientStore,
        *,
        safety_window: int = 5,
        timeout_seconds: float | None = None,
    ) -> None:
        self._reviews = reviews
        self._assessments = assessments
        self._clients = clients
        self._safety_window = safety_window
        self._timeout = timeout_seconds

    async def recompute_client_stats(self, client_id: int) -> ClientAggregate:
        started = time.perf_counter()
        summary = await bounded(
            self._reviews.active_rating_summary(client_id),
            timeout=self._timeout,
            operation="review_summary",
        )
        scores = await bounded(
            self._assessments.recent_safety_scores(client_id, limit=self._safety_window),
            timeout=self._timeout,
            operation="safety_history",
        )
        aggregate = ClientAggregate(
            client_id=client_id,
            total_reviews=summary.count,
            average_rating=summary.average if summary.count else None,
            ai_safety_score=mean(list(scores)),
            updated_at=datetime.now(timezone.utc),
        )
        stored = await bounded(
            self._clients.write_aggregate(aggregate, include_safety=bool(scores)),
            timeout=self._timeout,
            operation="aggregate_write",
        )
        metrics.AGGREGATE_RECOMPUTE_SECONDS.observe(time.perf_counter() - started)
        if stored is None:
            raise NotFound("client_not_found")
        return stored

    async def get_client_aggregate(self, client_id: int) -> ClientAggregate:
        aggregate = await bounded(
            self._clients.get_aggregate(client_id),
            timeout=self._timeout,
            operation="aggregate_read",
        )
        if aggregate is None:
            raise NotFound("client_not_found")
        return aggregate

    async def reconcile_all(self) -> ReconcileReport:
        """Out-of-band repair: recompute every reachable client and count drifted aggregates."""

        checked = 0
        corrected = 0
        client_ids = await bounded(self._clients.list_client_ids(), timeout=self._timeout, operation="client_list")
        for client_id in client_ids:
            before = await bounded(
                self._clients.get_aggregate(client_id),
                timeout=self._timeout,
                operation="aggregate_read",
            )
            after = await self.recompute_client_stats(client_id)
            checked += 1
            if before is None or before.values() != after.values():
                corrected += 1
                logger.info(
                    "client aggregate drift corrected",
                    extra={"client_id": client_id, "before": before.values() if before else None, "after": after.values()},
                )
        return ReconcileReport(checked=checked, corrected=corrected)
