from __future__ import annotations

import asyncio

import pytest

from clientcheck.trust.domain.aggregator import ClientAggregate, InMemoryClientStore, TrustAggregator, mean
from clientcheck.trust.domain.assessments import AnalysisType, InMemoryAssessmentStore, ScorerResult
from clientcheck.trust.domain.errors import NotFound, Unavailable
from clientcheck.trust.domain.reviews import InMemoryReviewLedger, NewReview, ReviewStatus


async def _seed_reviews(ledger: InMemoryReviewLedger, client_id: int, ratings, now) -> None:
    for reviewer_id, rating in enumerate(ratings, start=1):
        await ledger.insert(NewReview(client_id=client_id, reviewer_id=reviewer_id, rating=rating), now=now)


async def _seed_safety(store: InMemoryAssessmentStore, client_id: int, scores) -> None:
    for score in scores:
        await store.append(
            client_id,
            ScorerResult(analysis_type=AnalysisType.SAFETY_ASSESSMENT, confidence=0.9, overall_score=score),
        )


@pytest.fixture
def stores(clock):
    ledger = InMemoryReviewLedger()
    assessments = InMemoryAssessmentStore(clock=clock)
    clients = InMemoryClientStore()
    clients.add_client(1)
    clients.add_client(2)
    return ledger, assessments, clients, TrustAggregator(ledger, assessments, clients)


def test_mean_of_empty_sequence_is_none() -> None:
    assert mean([]) is None
    assert mean([2.0, 4.0]) == 3.0


@pytest.mark.asyncio
async def test_recompute_counts_only_active_reviews(stores, clock) -> None:
    ledger, _, _, aggregator = stores
    await _seed_reviews(ledger, 1, [5, 4, 1], clock())
    ledger.reviews[3].status = ReviewStatus.FLAGGED

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.total_reviews == 2
    assert aggregate.average_rating == pytest.approx(4.5)
    assert aggregate.updated_at is not None


@pytest.mark.asyncio
async def test_safety_score_uses_five_most_recent_assessments(stores) -> None:
    _, assessments, _, aggregator = stores
    await _seed_safety(assessments, 1, [9, 9, 9, 1, 1, 1, 1])

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.ai_safety_score == pytest.approx(2.6)


@pytest.mark.asyncio
async def test_safety_score_with_fewer_assessments_than_window(stores) -> None:
    _, assessments, _, aggregator = stores
    await _seed_safety(assessments, 1, [6, 8])

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.ai_safety_score == pytest.approx(7.0)


@pytest.mark.asyncio
async def test_safety_score_untouched_without_assessments(stores, clock) -> None:
    ledger, _, clients, aggregator = stores
    clients.aggregates[1].ai_safety_score = 4.2
    await _seed_reviews(ledger, 1, [3], clock())

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.ai_safety_score == 4.2
    assert aggregate.total_reviews == 1


@pytest.mark.asyncio
async def test_no_active_reviews_resets_to_zero_and_null(stores) -> None:
    _, _, clients, aggregator = stores
    clients.aggregates[1].total_reviews = 3
    clients.aggregates[1].average_rating = 4.0

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.total_reviews == 0
    assert aggregate.average_rating is None


@pytest.mark.asyncio
async def test_recompute_is_idempotent(stores, clock) -> None:
    ledger, assessments, _, aggregator = stores
    await _seed_reviews(ledger, 1, [2, 5], clock())
    await _seed_safety(assessments, 1, [7])

    first = await aggregator.recompute_client_stats(1)
    second = await aggregator.recompute_client_stats(1)

    assert first.values() == second.values() == (2, 3.5, 7.0)


@pytest.mark.asyncio
async def test_clients_are_isolated(stores, clock) -> None:
    ledger, assessments, _, aggregator = stores
    await _seed_reviews(ledger, 2, [1], clock())
    await _seed_safety(assessments, 2, [3])

    aggregate = await aggregator.recompute_client_stats(1)

    assert aggregate.values() == (0, None, None)


@pytest.mark.asyncio
async def test_unknown_client_is_not_found(stores) -> None:
    *_, aggregator = stores
    with pytest.raises(NotFound):
        await aggregator.recompute_client_stats(99)
    with pytest.raises(NotFound):
        await aggregator.get_client_aggregate(99)


@pytest.mark.asyncio
async def test_soft_deleted_client_is_not_readable(stores) -> None:
    _, _, clients, aggregator = stores
    clients.soft_delete(1)

    with pytest.raises(NotFound):
        await aggregator.get_client_aggregate(1)
    assert await clients.list_client_ids() == [2]


@pytest.mark.asyncio
async def test_reconcile_all_corrects_drift(stores, clock) -> None:
    ledger, _, _, aggregator = stores
    await _seed_reviews(ledger, 1, [4, 4], clock())
    await aggregator.recompute_client_stats(1)
    await aggregator.recompute_client_stats(2)
    # Simulate a lost recomputation on client 2.
    await _seed_reviews(ledger, 2, [1], clock())

    report = await aggregator.reconcile_all()

    assert report.checked == 2
    assert report.corrected == 1
    repaired = await aggregator.get_client_aggregate(2)
    assert isinstance(repaired, ClientAggregate)
    assert repaired.values() == (1, 1.0, None)


class _TimingOutClientStore(InMemoryClientStore):
    async def list_client_ids(self):
        raise asyncio.TimeoutError()


@pytest.mark.asyncio
async def test_reconcile_all_reports_store_timeout_as_unavailable() -> None:
    clients = _TimingOutClientStore()
    aggregator = TrustAggregator(InMemoryReviewLedger(), InMemoryAssessmentStore(), clients)

    with pytest.raises(Unavailable):
        await aggregator.reconcile_all()
