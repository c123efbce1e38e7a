# roadside/infra/pg_vendor_repo_async.py
"""
Async PostgreSQL vendor repository (asyncpg).

Vendors are keyed naturally by normalized phone; ``upsert_by_phone`` is a
single ``INSERT ... ON CONFLICT (phone) DO UPDATE`` so concurrent first
assignments of the same vendor converge on one record.
"""
from __future__ import annotations

from typing import Optional

from roadside.core.domain import Coordinate, Vendor
from roadside.core.normalize import normalize_phone
from roadside.infra.db_resilience_async import safe_db_conn


def _row_to_vendor(row) -> Vendor:
    coordinate = None
    if row["lat"] is not None and row["lng"] is not None:
        coordinate = Coordinate(lat=row["lat"], lng=row["lng"])
    return Vendor(
        id=row["id"],
        name=row["name"],
        phone=row["phone"],
        city=row["city"],
        coordinate=coordinate,
        radius_km=row["radius_km"],
        services=list(row["services"] or []),
        heavy_duty=row["heavy_duty"],
        active=row["active"],
        base_address=row["base_address"],
        created_at=row["created_at"],
    )


class AsyncPostgresVendorRepository:

    async def get(self, vendor_id: str) -> Optional[Vendor]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM vendors WHERE id = $1", vendor_id)
            return _row_to_vendor(row) if row else None

    async def get_by_phone(self, phone: str) -> Optional[Vendor]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM vendors WHERE phone = $1",
                normalize_phone(phone),
            )
            return _row_to_vendor(row) if row else None

    async def upsert_by_phone(self, vendor: Vendor, service_type: str | None = None) -> Vendor:
        """
        Create the vendor, or enrich the existing one:

        - a name that is empty or equal to the phone is replaced
        - ``service_type`` is added to ``services`` if missing
        """
        phone = normalize_phone(vendor.phone)
        services = list(vendor.services)
        if service_type and service_type not in services:
            services.append(service_type)
        coordinate = vendor.coordinate

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO vendors (
                  id, name, phone, city, lat, lng, radius_km,
                  services, heavy_duty, active, base_address, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, COALESCE($12, now()))
                ON CONFLICT (phone) DO UPDATE SET
                  name = CASE
                    WHEN vendors.name = '' OR vendors.name = vendors.phone THEN EXCLUDED.name
                    ELSE vendors.name
                  END,
                  services = CASE
                    WHEN $13::text IS NULL OR $13::text = ANY(vendors.services) THEN vendors.services
                    ELSE array_append(vendors.services, $13::text)
                  END
                RETURNING *
                """,
                vendor.id,
                vendor.name,
                phone,
                vendor.city,
                coordinate.lat if coordinate else None,
                coordinate.lng if coordinate else None,
                vendor.radius_km,
                services,
                vendor.heavy_duty,
                vendor.active,
                vendor.base_address,
                vendor.created_at,
                service_type or None,
            )
            return _row_to_vendor(row)
