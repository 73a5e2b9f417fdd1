"""AI assessment API used by the scoring pipeline and administrators."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from clientcheck.trust.api.deps import get_actor, get_assessment_service_dep, require_admin, require_elevated
from clientcheck.trust.domain.assessments import AiAssessment, AssessmentService
from clientcheck.trust.domain.errors import NotFound
from clientcheck.trust.domain.identity import ActorContext

router = APIRouter(prefix="/api/trust/v1", tags=["trust-assessments"])


class ConfidenceIn(BaseModel):
    confidence: float = Field(..., ge=0.0, le=1.0)


class AssessmentOut(BaseModel):
    id: int
    client_id: int
    analysis_type: str
    overall_score: Optional[float]
    confidence: float
    model_version: Optional[str]
    processing_time_ms: Optional[int]
    result_data: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_assessment(cls, assessment: AiAssessment) -> "AssessmentOut":
        return cls(
            id=assessment.id,
            client_id=assessment.client_id,
            analysis_type=assessment.analysis_type.value,
            overall_score=assessment.overall_score,
            confidence=assessment.confidence,
            model_version=assessment.model_version,
            processing_time_ms=assessment.processing_time_ms,
            result_data=dict(assessment.result_data),
            created_at=assessment.created_at,
        )


@router.post(
    "/clients/{client_id}/assessments",
    response_model=AssessmentOut,
    status_code=status.HTTP_201_CREATED,
)
async def ingest_assessment(
    client_id: int,
    payload: dict[str, Any],
    service: AssessmentService = Depends(get_assessment_service_dep),
    _: ActorContext = Depends(require_elevated),
) -> AssessmentOut:
    # Validation happens in the domain so scorer errors map to the trust error taxonomy.
    assessment = await service.ingest(client_id, payload)
    return AssessmentOut.from_assessment(assessment)


@router.get("/clients/{client_id}/assessments/latest", response_model=AssessmentOut)
async def latest_safety_assessment(
    client_id: int,
    service: AssessmentService = Depends(get_assessment_service_dep),
    _: ActorContext = Depends(get_actor),
) -> AssessmentOut:
    assessment = await service.latest_safety_assessment(client_id)
    if assessment is None:
        raise NotFound("assessment_not_found")
    return AssessmentOut.from_assessment(assessment)


@router.patch("/assessments/{assessment_id}/confidence", response_model=AssessmentOut)
async def correct_confidence(
    assessment_id: int,
    payload: ConfidenceIn,
    service: AssessmentService = Depends(get_assessment_service_dep),
    actor: ActorContext = Depends(require_admin),
) -> AssessmentOut:
    assessment = await service.update_confidence(assessment_id, payload.confidence, actor=actor)
    return AssessmentOut.from_assessment(assessment)
