"""Out-of-band repair of client aggregates."""

from __future__ import annotations

from clientcheck.trust.domain.aggregator import ReconcileReport, TrustAggregator


async def run(aggregator: TrustAggregator) -> ReconcileReport:
    return await aggregator.reconcile_all()
