"""AI assessment history and ingestion of scorer output."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from clientcheck.obs import metrics
from clientcheck.trust.domain import audit
from clientcheck.trust.domain.aggregator import ClientStore, TrustAggregator
from clientcheck.trust.domain.audit import AuditRecord, AuditSink
from clientcheck.trust.domain.errors import NotFound, Unauthorized, ValidationError
from clientcheck.trust.domain.identity import ActorContext
from clientcheck.trust.domain.store import bounded

logger = logging.getLogger(__name__)

MIN_CONFIDENCE_SCORE = 0.0
MAX_CONFIDENCE_SCORE = 1.0
MIN_AI_SAFETY_SCORE = 0.0
MAX_AI_SAFETY_SCORE = 10.0


class AnalysisType(str, Enum):
    SAFETY_ASSESSMENT = "safety_assessment"
    FACE_DETECTION = "face_detection"
    TEXT_SENTIMENT = "text_sentiment"


class ScorerResult(BaseModel):
    """Shape of a result returned by the external AI scorer."""

    model_config = ConfigDict(extra="forbid")

    analysis_type: AnalysisType
    confidence: float = Field(..., ge=MIN_CONFIDENCE_SCORE, le=MAX_CONFIDENCE_SCORE)
    overall_score: float | None = Field(default=None, ge=MIN_AI_SAFETY_SCORE, le=MAX_AI_SAFETY_SCORE)
    model_version: str | None = Field(default=None, max_length=100)
    processing_time_ms: int | None = Field(default=None, ge=0)
    result_data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_result_shape(self) -> "ScorerResult":
        data = self.result_data
        if self.analysis_type is AnalysisType.SAFETY_ASSESSMENT:
            if self.overall_score is None:
                raise ValueError("overall_score is required for safety assessments")
            if "risk_factors" in data and not isinstance(data["risk_factors"], list):
                raise ValueError("risk_factors must be a list")
        elif self.analysis_type is AnalysisType.FACE_DETECTION:
            if not isinstance(data.get("faces"), list):
                raise ValueError("faces array is required")
            total = data.get("total_faces")
            if not isinstance(total, int) or isinstance(total, bool):
                raise ValueError("total_faces number is required")
        elif self.analysis_type is AnalysisType.TEXT_SENTIMENT:
            if data.get("sentiment") not in ("positive", "negative", "neutral"):
                raise ValueError("sentiment must be positive, negative, or neutral")
            score = data.get("score")
            if not isinstance(score, (int, float)) or isinstance(score, bool) or not -1 <= score <= 1:
                raise ValueError("score must be a number between -1 and 1")
        return self


@dataclass(slots=True)
class AiAssessment:
    id: int
    client_id: int
    analysis_type: AnalysisType
    confidence: float
    created_at: datetime
    overall_score: float | None = None
    model_version: str | None = None
    processing_time_ms: int | None = None
    result_data: Mapping[str, Any] = field(default_factory=dict)


class AssessmentStore(Protocol):
    """Append-only assessment history; only ``confidence`` is ever corrected."""

    async def append(self, client_id: int, result: ScorerResult) -> AiAssessment:
        ...

    async def get(self, assessment_id: int) -> AiAssessment | None:
        ...

    async def latest(self, client_id: int, analysis_type: AnalysisType) -> AiAssessment | None:
        ...

    async def recent_safety_scores(self, client_id: int, *, limit: int) -> Sequence[float]:
        ...

    async def set_confidence(self, assessment_id: int, confidence: float) -> AiAssessment | None:
        ...


class InMemoryAssessmentStore(AssessmentStore):
    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self.assessments: list[AiAssessment] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def append(self, client_id: int, result: ScorerResult) -> AiAssessment:
        assessment = AiAssessment(
            id=len(self.assessments) + 1,
            client_id=client_id,
            analysis_type=result.analysis_type,
            confidence=result.confidence,
            created_at=self._clock(),
            overall_score=result.overall_score,
            model_version=result.model_version,
            processing_time_ms=result.processing_time_ms,
            result_data=dict(result.result_data),
        )
        self.assessments.append(assessment)
        return replace(assessment)

    async def get(self, assessment_id: int) -> AiAssessment | None:
        for assessment in self.assessments:
            if assessment.id == assessment_id:
                return replace(assessment)
        return None

    def _newest_first(self, client_id: int, analysis_type: AnalysisType) -> list[AiAssessment]:
        rows = [a for a in self.assessments if a.client_id == client_id and a.analysis_type is analysis_type]
        return sorted(rows, key=lambda a: (a.created_at, a.id), reverse=True)

    async def latest(self, client_id: int, analysis_type: AnalysisType) -> AiAssessment | None:
        rows = self._newest_first(client_id, analysis_type)
        return replace(rows[0]) if rows else None

    async def recent_safety_scores(self, client_id: int, *, limit: int) -> Sequence[float]:
        rows = self._newest_first(client_id, AnalysisType.SAFETY_ASSESSMENT)[:limit]
        return [float(a.overall_score) for a in rows if a.overall_score is not None]

    async def set_confidence(self, assessment_id: int, confidence: float) -> AiAssessment | None:
        for assessment in self.assessments:
            if assessment.id == assessment_id:
                assessment.confidence = confidence
                return replace(assessment)
        return None


def parse_scorer_result(payload: ScorerResult | Mapping[str, Any]) -> ScorerResult:
    if isinstance(payload, ScorerResult):
        return payload
    try:
        return ScorerResult.model_validate(dict(payload))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "result"
        raise ValidationError(location, first.get("msg", "invalid scorer result")) from exc


class AssessmentService:
    """Validates scorer output, appends it and keeps the client's safety score current."""

    def __init__(
        self,
        store: AssessmentStore,
        clients: ClientStore,
        aggregator: TrustAggregator,
        *,
        audit_sink: AuditSink | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._clients = clients
        self._aggregator = aggregator
        self._audit = audit_sink
        self._timeout = timeout_seconds

    async def ingest(self, client_id: int, payload: ScorerResult | Mapping[str, Any]) -> AiAssessment:
        result = parse_scorer_result(payload)
        if not await bounded(self._clients.is_reachable(client_id), timeout=self._timeout, operation="client_lookup"):
            raise NotFound("client_not_found")
        assessment = await bounded(
            self._store.append(client_id, result),
            timeout=self._timeout,
            operation="assessment_append",
        )
        metrics.ASSESSMENTS_INGESTED.labels(analysis_type=result.analysis_type.value).inc()
        if result.analysis_type is AnalysisType.SAFETY_ASSESSMENT:
            await self._aggregator.recompute_client_stats(client_id)
        logger.info(
            "assessment ingested",
            extra={
                "client_id": client_id,
                "assessment_id": assessment.id,
                "analysis_type": result.analysis_type.value,
                "model_version": result.model_version,
            },
        )
        return assessment

    async def update_confidence(self, assessment_id: int, confidence: float, *, actor: ActorContext) -> AiAssessment:
        if not actor.is_admin:
            raise Unauthorized()
        if not MIN_CONFIDENCE_SCORE <= confidence <= MAX_CONFIDENCE_SCORE:
            raise ValidationError("confidence", "confidence must be between 0 and 1")
        previous = await bounded(self._store.get(assessment_id), timeout=self._timeout, operation="assessment_get")
        updated = await bounded(
            self._store.set_confidence(assessment_id, confidence),
            timeout=self._timeout,
            operation="assessment_correct",
        )
        if updated is None:
            raise NotFound("assessment_not_found")
        if self._audit is not None:
            record = AuditRecord(
                actor_id=actor.actor_id,
                action_type=audit.ANALYSIS_CORRECT,
                target_type="ai_assessment",
                target_id=str(assessment_id),
                details={
                    "previous_confidence": previous.confidence if previous else None,
                    "confidence": confidence,
                },
            )
            await bounded(self._audit.append(record), timeout=self._timeout, operation="audit_append")
        return updated

    async def latest_safety_assessment(self, client_id: int) -> AiAssessment | None:
        return await bounded(
            self._store.latest(client_id, AnalysisType.SAFETY_ASSESSMENT),
            timeout=self._timeout,
            operation="assessment_latest",
        )
