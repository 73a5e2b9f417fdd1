"""Client trust aggregate reads and repair endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from clientcheck.trust.api.deps import get_actor, get_aggregator_dep, require_admin, require_elevated
from clientcheck.trust.domain.aggregator import ClientAggregate, TrustAggregator
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.jobs import reconcile

router = APIRouter(prefix="/api/trust/v1/clients", tags=["trust-clients"])


class ClientTrustOut(BaseModel):
    client_id: int
    total_reviews: int
    average_rating: Optional[float]
    ai_safety_score: Optional[float]
    updated_at: Optional[datetime]

    @classmethod
    def from_aggregate(cls, aggregate: ClientAggregate) -> "ClientTrustOut":
        return cls(
            client_id=aggregate.client_id,
            total_reviews=aggregate.total_reviews,
            average_rating=aggregate.average_rating,
            ai_safety_score=aggregate.ai_safety_score,
            updated_at=aggregate.updated_at,
        )


class ReconcileOut(BaseModel):
    checked: int
    corrected: int


@router.post("/reconcile", response_model=ReconcileOut)
async def reconcile_all(
    aggregator: TrustAggregator = Depends(get_aggregator_dep),
    _: ActorContext = Depends(require_admin),
) -> ReconcileOut:
    report = await reconcile.run(aggregator)
    return ReconcileOut(checked=report.checked, corrected=report.corrected)


@router.get("/{client_id}/trust", response_model=ClientTrustOut)
async def get_client_trust(
    client_id: int,
    aggregator: TrustAggregator = Depends(get_aggregator_dep),
    _: ActorContext = Depends(get_actor),
) -> ClientTrustOut:
    return ClientTrustOut.from_aggregate(await aggregator.get_client_aggregate(client_id))


@router.post("/{client_id}/recompute", response_model=ClientTrustOut)
async def recompute_client(
    client_id: int,
    aggregator: TrustAggregator = Depends(get_aggregator_dep),
    _: ActorContext = Depends(require_elevated),
) -> ClientTrustOut:
    return ClientTrustOut.from_aggregate(await aggregator.recompute_client_stats(client_id))
