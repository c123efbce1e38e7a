# roadside/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

``compare_and_swap`` is a single ``UPDATE ... WHERE <guard> RETURNING *``:
the row is changed only if every guard column still holds the expected
value, and zero returned rows means another writer got there first.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from roadside.core.domain import BidMode, Coordinate, Job, JobStatus, Priority
from roadside.core.ports import check_cas_fields
from roadside.infra.db_resilience_async import safe_db_conn
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)


def _coord(row, prefix: str) -> Optional[Coordinate]:
    lat, lng = row[f"{prefix}_lat"], row[f"{prefix}_lng"]
    if lat is None or lng is None:
        return None
    return Coordinate(lat=lat, lng=lng)


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job."""
    return Job(
        id=row["id"],
        customer_id=row["customer_id"],
        status=JobStatus(row["status"]),
        bid_mode=BidMode(row["bid_mode"]),
        bidding_open=row["bidding_open"],
        vendor_id=row["vendor_id"],
        vendor_name=row["vendor_name"],
        vendor_phone=row["vendor_phone"],
        vendor_token=row["vendor_token"],
        customer_token=row["customer_token"],
        selected_bid_id=row["selected_bid_id"],
        quoted_price=float(row["quoted_price"]),
        final_price=float(row["final_price"]),
        currency=row["currency"],
        pickup_address=row["pickup_address"],
        pickup_coordinate=_coord(row, "pickup"),
        dropoff_address=row["dropoff_address"],
        dropoff_coordinate=_coord(row, "dropoff"),
        service_type=row["service_type"],
        notes=row["notes"],
        priority=Priority(row["priority"]),
        escalated_at=row["escalated_at"],
        cancelled=row["cancelled"],
        cancelled_at=row["cancelled_at"],
        unbid_alert_sent_at=row["unbid_alert_sent_at"],
        assigned_at=row["assigned_at"],
        on_the_way_at=row["on_the_way_at"],
        arrived_at=row["arrived_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _param(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def build_cas_query(
    job_id: str,
    expected: Mapping[str, Any],
    changes: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """
    Render the conditional UPDATE for ``compare_and_swap``.

    Column names come only from the ``CAS_FIELDS`` allowlist; values are
    always bound parameters.
    """
    check_cas_fields(expected)
    check_cas_fields(changes)
    if not changes:
        raise ValueError("compare_and_swap needs at least one change")

    params: list[Any] = [job_id]
    sets = []
    for name, value in changes.items():
        params.append(_param(value))
        sets.append(f"{name} = ${len(params)}")
    sets.append("updated_at = now()")

    guards = ["id = $1"]
    for name, value in expected.items():
        if value is None:
            guards.append(f"{name} IS NULL")
        else:
            params.append(_param(value))
            guards.append(f"{name} = ${len(params)}")

    sql = (
        f"UPDATE jobs SET {', '.join(sets)} "
        f"WHERE {' AND '.join(guards)} "
        f"RETURNING *"
    )
    return sql, params


class AsyncPostgresJobRepository:

    async def insert(self, job: Job) -> None:
        pickup, dropoff = job.pickup_coordinate, job.dropoff_coordinate
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO jobs (
                  id, customer_id, status, bid_mode, bidding_open,
                  quoted_price, final_price, currency,
                  pickup_address, pickup_lat, pickup_lng,
                  dropoff_address, dropoff_lat, dropoff_lng,
                  service_type, notes, priority, escalated_at,
                  created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        $11, $12, $13, $14, $15, $16, $17, $18, $19, $19)
                """,
                job.id,
                job.customer_id,
                job.status.value,
                job.bid_mode.value,
                job.bidding_open,
                job.quoted_price,
                job.final_price,
                job.currency,
                job.pickup_address,
                pickup.lat if pickup else None,
                pickup.lng if pickup else None,
                job.dropoff_address,
                dropoff.lat if dropoff else None,
                dropoff.lng if dropoff else None,
                job.service_type,
                job.notes,
                job.priority.value,
                job.escalated_at,
                job.created_at,
            )

    async def get(self, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

    async def list(
        self,
        *,
        status: Optional[JobStatus] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]:
        conditions = []
        params: list[Any] = []
        idx = 1

        if status is not None:
            conditions.append(f"status = ${idx}")
            params.append(status.value)
            idx += 1

        if query:
            conditions.append(
                f"concat_ws(' ', service_type, pickup_address, dropoff_address, notes) "
                f"ILIKE ${idx}"
            )
            escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"%{escaped}%")
            idx += 1

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ${idx}",
                *params,
            )
            return [_row_to_job(row) for row in rows]

    async def compare_and_swap(
        self,
        job_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[Job]:
        sql, params = build_cas_query(job_id, expected, changes)
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        if row is None:
            logger.debug(
                "compare_and_swap matched no row: job_id=%s guard=%s",
                job_id, sorted(expected),
                extra={"job_id": job_id},
            )
            return None
        return _row_to_job(row)

    async def find_unbid_candidates(self, cutoff: datetime, limit: int) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT j.* FROM jobs j
                WHERE j.status = 'Unassigned'
                  AND NOT j.cancelled
                  AND j.unbid_alert_sent_at IS NULL
                  AND j.bidding_open
                  AND j.created_at <= $1
                  AND NOT EXISTS (SELECT 1 FROM bids b WHERE b.job_id = j.id)
                ORDER BY j.created_at
                LIMIT $2
                """,
                cutoff,
                limit,
            )
            return [_row_to_job(row) for row in rows]
