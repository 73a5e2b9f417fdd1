"""Audit records in admin_actions."""

from __future__ import annotations

import json

import asyncpg

from clientcheck.trust.domain.audit import AuditRecord, AuditSink
from clientcheck.trust.infra.errors import transient_as_unavailable


class PostgresAuditSink(AuditSink):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def append(self, record: AuditRecord) -> None:
        with transient_as_unavailable("audit_append"):
            await self._pool.execute(
                """
                INSERT INTO admin_actions (admin_id, action_type, target_type, target_id, details, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                """,
                record.actor_id,
                record.action_type,
                record.target_type,
                record.target_id,
                json.dumps(dict(record.details), default=str),
                record.created_at,
            )
