# roadside/core/ports.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

from roadside.core.domain import (
    Alert,
    Bid,
    Capability,
    CapabilityRole,
    Job,
    JobStatus,
    Vendor,
)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Job attributes a conditional write may test or set. Anything else is a
# programming error and is rejected by every store implementation.
CAS_FIELDS = frozenset({
    "status",
    "bidding_open",
    "cancelled",
    "cancelled_at",
    "vendor_id",
    "vendor_name",
    "vendor_phone",
    "vendor_token",
    "customer_token",
    "selected_bid_id",
    "final_price",
    "notes",
    "priority",
    "escalated_at",
    "unbid_alert_sent_at",
    "assigned_at",
    "on_the_way_at",
    "arrived_at",
    "completed_at",
})


def check_cas_fields(fields: Iterable[str]) -> None:
    unknown = set(fields) - CAS_FIELDS
    if unknown:
        raise ValueError(f"Fields not allowed in compare_and_swap: {sorted(unknown)}")


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncJobStore(Protocol):
    async def insert(self, job: Job) -> None: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def list(
        self,
        *,
        status: Optional[JobStatus] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]: ...

    async def compare_and_swap(
        self,
        job_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[Job]:
        """
        Apply ``changes`` to the job only if every field in ``expected``
        still holds the given value.

        Returns the updated job, or None when zero records matched
        (another writer got there first, or the job does not exist).
        """
        ...

    async def find_unbid_candidates(self, cutoff: datetime, limit: int) -> list[Job]:
        """
        Oldest-first open jobs that have never been alerted, are not
        cancelled, were created at or before ``cutoff`` and have no bids.
        """
        ...


class AsyncBidStore(Protocol):
    async def insert_if_open(self, bid: Bid, vendor_token: str) -> bool:
        """
        Persist ``bid`` only if its job is still Unassigned, open for bidding
        and ``vendor_token`` is the job's current vendor token.

        True  => bid stored
        False => bidding closed (nothing written)
        """
        ...

    async def get(self, bid_id: str) -> Optional[Bid]: ...

    async def list_for_job(self, job_id: str) -> list[Bid]: ...

    async def count_for_job(self, job_id: str) -> int: ...


class AsyncVendorStore(Protocol):
    async def get(self, vendor_id: str) -> Optional[Vendor]: ...

    async def get_by_phone(self, phone: str) -> Optional[Vendor]: ...

    async def upsert_by_phone(self, vendor: Vendor, service_type: str | None = None) -> Vendor:
        """Create ``vendor`` or enrich the existing one with the same phone.

        Returns the canonical record (its id may differ from ``vendor.id``).
        """
        ...


class AsyncCapabilityStore(Protocol):
    async def issue(self, capability: Capability) -> None: ...

    async def resolve(self, token: str) -> Optional[Capability]: ...

    async def revoke(
        self,
        job_id: str,
        roles: Iterable[CapabilityRole],
        at: datetime,
        tokens: Optional[Iterable[str]] = None,
    ) -> int:
        """Revoke live capabilities of ``roles`` for a job (optionally only ``tokens``)."""
        ...


class AsyncAlertStore(Protocol):
    async def create(self, alert: Alert) -> None: ...

    async def list_recent(self, limit: int = 50, job_id: Optional[str] = None) -> list[Alert]: ...

    async def count_for_job(self, job_id: str) -> int: ...


class NotificationDispatcher(Protocol):
    async def dispatch(self, alert: Alert) -> bool:
        """
        Deliver an alert.

        Returns:
            True if delivered/queued, False otherwise
        """
        ...


@dataclass
class DispatchStore:
    """The durable Job/Bid/Vendor store, one repository per record type."""

    jobs: AsyncJobStore
    bids: AsyncBidStore
    vendors: AsyncVendorStore
    capabilities: AsyncCapabilityStore
    alerts: AsyncAlertStore
