"""PostgreSQL persistence for AI assessment history."""

from __future__ import annotations

import json
from typing import Sequence

import asyncpg

from clientcheck.trust.domain.assessments import AiAssessment, AnalysisType, AssessmentStore, ScorerResult
from clientcheck.trust.infra.errors import transient_as_unavailable

_COLUMNS = (
    "id, client_id, analysis_type, overall_score, confidence, model_version, processing_time_ms, result_data, created_at"
)


def _row_to_assessment(row: asyncpg.Record) -> AiAssessment:
    raw = row["result_data"]
    data = json.loads(raw) if isinstance(raw, str) else (raw or {})
    return AiAssessment(
        id=int(row["id"]),
        client_id=int(row["client_id"]),
        analysis_type=AnalysisType(str(row["analysis_type"])),
        confidence=float(row["confidence"]),
        created_at=row["created_at"],
        overall_score=float(row["overall_score"]) if row["overall_score"] is not None else None,
        model_version=row["model_version"],
        processing_time_ms=row["processing_time_ms"],
        result_data=data,
    )


class PostgresAssessmentStore(AssessmentStore):
    """Appends rows to ai_assessments; rows are never updated except for confidence."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def append(self, client_id: int, result: ScorerResult) -> AiAssessment:
        with transient_as_unavailable("assessment_append"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO ai_assessments (client_id, analysis_type, overall_score, confidence, model_version,
                    processing_time_ms, result_data)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                RETURNING {_COLUMNS}
                """,
                client_id,
                result.analysis_type.value,
                result.overall_score,
                result.confidence,
                result.model_version,
                result.processing_time_ms,
                json.dumps(result.result_data),
            )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("failed to insert assessment")
        return _row_to_assessment(row)

    async def get(self, assessment_id: int) -> AiAssessment | None:
        with transient_as_unavailable("assessment_get"):
            row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM ai_assessments WHERE id = $1", assessment_id)
        return _row_to_assessment(row) if row is not None else None

    async def latest(self, client_id: int, analysis_type: AnalysisType) -> AiAssessment | None:
        with transient_as_unavailable("assessment_latest"):
            row = await self._pool.fetchrow(
                f"""
                SELECT {_COLUMNS}
                FROM ai_assessments
                WHERE client_id = $1 AND analysis_type = $2
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                client_id,
                analysis_type.value,
            )
        return _row_to_assessment(row) if row is not None else None

    async def recent_safety_scores(self, client_id: int, *, limit: int) -> Sequence[float]:
        with transient_as_unavailable("safety_history"):
            rows = await self._pool.fetch(
                """
                SELECT overall_score
                FROM ai_assessments
                WHERE client_id = $1 AND analysis_type = $2 AND overall_score IS NOT NULL
                ORDER BY created_at DESC, id DESC
                LIMIT $3
                """,
                client_id,
                AnalysisType.SAFETY_ASSESSMENT.value,
                limit,
            )
        return [float(row["overall_score"]) for row in rows]

    async def set_confidence(self, assessment_id: int, confidence: float) -> AiAssessment | None:
        with transient_as_unavailable("assessment_correct"):
            row = await self._pool.fetchrow(
                f"UPDATE ai_assessments SET confidence = $2 WHERE id = $1 RETURNING {_COLUMNS}",
                assessment_id,
                confidence,
            )
        return _row_to_assessment(row) if row is not None else None
