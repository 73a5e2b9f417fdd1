"""Append-only audit trail for moderation and limiter-relevant actions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

REVIEW_MODERATE = "review_moderate"
ANALYSIS_CORRECT = "analysis_correct"
LIMIT_CONFIGURE = "limit_configure"
LIMIT_RESET = "limit_reset"


@dataclass(slots=True)
class AuditRecord:
    actor_id: int | None
    action_type: str
    target_type: str
    target_id: str
    details: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    """Append-only sink; no query surface is exposed to the core."""

    async def append(self, record: AuditRecord) -> None:
        ...


class InMemoryAuditSink(AuditSink):
    """Reference sink used in tests and developer environments."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    def for_target(self, target_type: str, target_id: str) -> Sequence[AuditRecord]:
        return [rec for rec in self.records if rec.target_type == target_type and rec.target_id == target_id]
