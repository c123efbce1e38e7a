# roadside/infra/pg_alert_repo_async.py
"""Async PostgreSQL alert repository (asyncpg)."""
from __future__ import annotations

import json
from typing import Optional

from roadside.core.domain import Alert
from roadside.infra.db_resilience_async import safe_db_conn


def _row_to_alert(row) -> Alert:
    meta = row["meta"]
    if isinstance(meta, str):
        meta = json.loads(meta)
    return Alert(
        id=row["id"],
        job_id=row["job_id"],
        customer_id=row["customer_id"],
        title=row["title"],
        body=row["body"],
        severity=row["severity"],
        meta=meta or {},
        created_at=row["created_at"],
    )


class AsyncPostgresAlertRepository:

    async def create(self, alert: Alert) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO alerts (id, job_id, customer_id, title, body, severity, meta, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                """,
                alert.id,
                alert.job_id,
                alert.customer_id,
                alert.title,
                alert.body,
                alert.severity,
                json.dumps(alert.meta),
                alert.created_at,
            )

    async def list_recent(self, limit: int = 50, job_id: Optional[str] = None) -> list[Alert]:
        async with safe_db_conn() as conn:
            if job_id:
                rows = await conn.fetch(
                    "SELECT * FROM alerts WHERE job_id = $1 ORDER BY created_at DESC LIMIT $2",
                    job_id, limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM alerts ORDER BY created_at DESC LIMIT $1",
                    limit,
                )
            return [_row_to_alert(row) for row in rows]

    async def count_for_job(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM alerts WHERE job_id = $1",
                job_id,
            )
