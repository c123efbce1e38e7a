# roadside/infra/pg_store.py
"""Postgres-backed dispatch store (one asyncpg repository per record type)."""
from __future__ import annotations

from roadside.core.ports import DispatchStore
from roadside.infra.pg_alert_repo_async import AsyncPostgresAlertRepository
from roadside.infra.pg_bid_repo_async import AsyncPostgresBidRepository
from roadside.infra.pg_capability_repo_async import AsyncPostgresCapabilityRepository
from roadside.infra.pg_job_repo_async import AsyncPostgresJobRepository
from roadside.infra.pg_vendor_repo_async import AsyncPostgresVendorRepository


def create_postgres_store() -> DispatchStore:
    return DispatchStore(
        jobs=AsyncPostgresJobRepository(),
        bids=AsyncPostgresBidRepository(),
        vendors=AsyncPostgresVendorRepository(),
        capabilities=AsyncPostgresCapabilityRepository(),
        alerts=AsyncPostgresAlertRepository(),
    )
