# roadside/infra/pg_bid_repo_async.py
"""
Async PostgreSQL bid repository (asyncpg).

Bids are append-only. ``insert_if_open`` locks the job row FOR SHARE
inside the insert's transaction, so the assignment UPDATE (which needs a
row lock) waits until the bid is committed, and a bid can never be
written after bidding closed.
"""
from __future__ import annotations

from typing import Optional

from roadside.core.domain import Bid
from roadside.infra.db_resilience_async import safe_db_conn


def _row_to_bid(row) -> Bid:
    return Bid(
        id=row["id"],
        job_id=row["job_id"],
        vendor_name=row["vendor_name"],
        vendor_phone=row["vendor_phone"],
        price=float(row["price"]),
        eta_minutes=row["eta_minutes"],
        created_at=row["created_at"],
    )


class AsyncPostgresBidRepository:

    async def insert_if_open(self, bid: Bid, vendor_token: str) -> bool:
        async with safe_db_conn(autocommit=False) as conn:
            open_job = await conn.fetchval(
                """
                SELECT id FROM jobs
                WHERE id = $1
                  AND status = 'Unassigned'
                  AND bidding_open
                  AND vendor_token = $2
                FOR SHARE
                """,
                bid.job_id,
                vendor_token,
            )
            if open_job is None:
                return False
            await conn.execute(
                """
                INSERT INTO bids (id, job_id, vendor_name, vendor_phone, price, eta_minutes, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                bid.id,
                bid.job_id,
                bid.vendor_name,
                bid.vendor_phone,
                bid.price,
                bid.eta_minutes,
                bid.created_at,
            )
            return True

    async def get(self, bid_id: str) -> Optional[Bid]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM bids WHERE id = $1", bid_id)
            return _row_to_bid(row) if row else None

    async def list_for_job(self, job_id: str) -> list[Bid]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM bids WHERE job_id = $1 ORDER BY seq",
                job_id,
            )
            return [_row_to_bid(row) for row in rows]

    async def count_for_job(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM bids WHERE job_id = $1",
                job_id,
            )
