# roadside/infra/pg_capability_repo_async.py
"""Async PostgreSQL capability (link token) repository (asyncpg)."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from roadside.core.domain import Capability, CapabilityRole
from roadside.infra.db_resilience_async import safe_db_conn


def _row_to_capability(row) -> Capability:
    return Capability(
        token=row["token"],
        job_id=row["job_id"],
        role=CapabilityRole(row["role"]),
        issued_at=row["issued_at"],
        revoked_at=row["revoked_at"],
    )


class AsyncPostgresCapabilityRepository:

    async def issue(self, capability: Capability) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO capabilities (token, job_id, role, issued_at, revoked_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                capability.token,
                capability.job_id,
                capability.role.value,
                capability.issued_at,
                capability.revoked_at,
            )

    async def resolve(self, token: str) -> Optional[Capability]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM capabilities WHERE token = $1", token)
            return _row_to_capability(row) if row else None

    async def revoke(
        self,
        job_id: str,
        roles: Iterable[CapabilityRole],
        at: datetime,
        tokens: Optional[Iterable[str]] = None,
    ) -> int:
        role_values = [role.value for role in roles]
        async with safe_db_conn() as conn:
            if tokens is None:
                result = await conn.execute(
                    """
                    UPDATE capabilities SET revoked_at = $3
                    WHERE job_id = $1 AND role = ANY($2::text[]) AND revoked_at IS NULL
                    """,
                    job_id, role_values, at,
                )
            else:
                result = await conn.execute(
                    """
                    UPDATE capabilities SET revoked_at = $3
                    WHERE job_id = $1 AND role = ANY($2::text[]) AND revoked_at IS NULL
                      AND token = ANY($4::text[])
                    """,
                    job_id, role_values, at, list(tokens),
                )
        return int(result.split()[-1]) if result else 0
