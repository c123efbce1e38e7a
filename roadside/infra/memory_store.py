# roadside/infra/memory_store.py
"""
In-memory dispatch store for development and tests.

Each public coroutine yields to the event loop once before touching state
(standing in for the I/O round trip of the Postgres store) and then runs
its read-check-write without further awaits, so conditional writes are
atomic with respect to other coroutines. Records are copied on the way
in and out; callers never share mutable state with the store.
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from roadside.core.domain import (
    Alert,
    Bid,
    Capability,
    CapabilityRole,
    Job,
    JobStatus,
    Vendor,
)
from roadside.core.normalize import normalize_phone
from roadside.core.ports import Clock, DispatchStore, check_cas_fields, utc_now


class _MemoryState:
    def __init__(self) -> None:
        self.jobs: dict[str, Job] = {}
        self.bids: dict[str, Bid] = {}
        self.bid_order: dict[str, list[str]] = {}
        self.vendors: dict[str, Vendor] = {}
        self.vendor_by_phone: dict[str, str] = {}
        self.capabilities: dict[str, Capability] = {}
        self.alerts: list[Alert] = []


class InMemoryJobStore:

    def __init__(self, state: _MemoryState, clock: Clock = utc_now) -> None:
        self._s = state
        self._clock = clock

    async def insert(self, job: Job) -> None:
        await asyncio.sleep(0)
        if job.id in self._s.jobs:
            raise ValueError(f"Job {job.id} already exists")
        self._s.jobs[job.id] = replace(job)

    async def get(self, job_id: str) -> Optional[Job]:
        await asyncio.sleep(0)
        job = self._s.jobs.get(job_id)
        return replace(job) if job else None

    async def list(
        self,
        *,
        status: Optional[JobStatus] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]:
        await asyncio.sleep(0)
        needle = query.lower() if query else None
        out = []
        for job in self._s.jobs.values():
            if status is not None and job.status != status:
                continue
            if needle:
                haystack = " ".join(
                    part or "" for part in
                    (job.service_type, job.pickup_address, job.dropoff_address, job.notes)
                ).lower()
                if needle not in haystack:
                    continue
            out.append(replace(job))
        out.sort(key=lambda j: j.created_at, reverse=True)
        return out[:limit]

    async def compare_and_swap(
        self,
        job_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[Job]:
        check_cas_fields(expected)
        check_cas_fields(changes)
        await asyncio.sleep(0)
        job = self._s.jobs.get(job_id)
        if job is None:
            return None
        for name, value in expected.items():
            if getattr(job, name) != value:
                return None
        updated = replace(job, **changes)
        updated.updated_at = self._clock()
        self._s.jobs[job_id] = updated
        return replace(updated)

    async def find_unbid_candidates(self, cutoff: datetime, limit: int) -> list[Job]:
        await asyncio.sleep(0)
        candidates = [
            job for job in self._s.jobs.values()
            if job.status == JobStatus.UNASSIGNED
            and not job.cancelled
            and job.unbid_alert_sent_at is None
            and job.bidding_open
            and job.created_at <= cutoff
            and not self._s.bid_order.get(job.id)
        ]
        candidates.sort(key=lambda j: j.created_at)
        return [replace(job) for job in candidates[:limit]]


class InMemoryBidStore:

    def __init__(self, state: _MemoryState) -> None:
        self._s = state

    async def insert_if_open(self, bid: Bid, vendor_token: str) -> bool:
        await asyncio.sleep(0)
        job = self._s.jobs.get(bid.job_id)
        if (
            job is None
            or not job.bidding_open
            or job.status != JobStatus.UNASSIGNED
            or job.vendor_token != vendor_token
        ):
            return False
        self._s.bids[bid.id] = replace(bid)
        self._s.bid_order.setdefault(bid.job_id, []).append(bid.id)
        return True

    async def get(self, bid_id: str) -> Optional[Bid]:
        await asyncio.sleep(0)
        bid = self._s.bids.get(bid_id)
        return replace(bid) if bid else None

    async def list_for_job(self, job_id: str) -> list[Bid]:
        await asyncio.sleep(0)
        return [replace(self._s.bids[i]) for i in self._s.bid_order.get(job_id, [])]

    async def count_for_job(self, job_id: str) -> int:
        await asyncio.sleep(0)
        return len(self._s.bid_order.get(job_id, []))


class InMemoryVendorStore:

    def __init__(self, state: _MemoryState) -> None:
        self._s = state

    async def get(self, vendor_id: str) -> Optional[Vendor]:
        await asyncio.sleep(0)
        vendor = self._s.vendors.get(vendor_id)
        return replace(vendor, services=list(vendor.services)) if vendor else None

    async def get_by_phone(self, phone: str) -> Optional[Vendor]:
        await asyncio.sleep(0)
        vendor_id = self._s.vendor_by_phone.get(normalize_phone(phone))
        if vendor_id is None:
            return None
        vendor = self._s.vendors[vendor_id]
        return replace(vendor, services=list(vendor.services))

    async def upsert_by_phone(self, vendor: Vendor, service_type: str | None = None) -> Vendor:
        await asyncio.sleep(0)
        phone = normalize_phone(vendor.phone)
        existing_id = self._s.vendor_by_phone.get(phone)

        if existing_id is None:
            services = list(vendor.services)
            if service_type and service_type not in services:
                services.append(service_type)
            created = replace(vendor, phone=phone, services=services)
            self._s.vendors[created.id] = created
            self._s.vendor_by_phone[phone] = created.id
            return replace(created, services=list(created.services))

        current = self._s.vendors[existing_id]
        if vendor.name and (not current.name or current.name == current.phone):
            current.name = vendor.name
        if service_type and service_type not in current.services:
            current.services.append(service_type)
        return replace(current, services=list(current.services))

    def add(self, vendor: Vendor) -> Vendor:
        """Seed a vendor directly (admin tooling and tests)."""
        phone = normalize_phone(vendor.phone)
        stored = replace(vendor, phone=phone, services=list(vendor.services))
        self._s.vendors[stored.id] = stored
        self._s.vendor_by_phone[phone] = stored.id
        return replace(stored, services=list(stored.services))


class InMemoryCapabilityStore:

    def __init__(self, state: _MemoryState) -> None:
        self._s = state

    async def issue(self, capability: Capability) -> None:
        await asyncio.sleep(0)
        self._s.capabilities[capability.token] = replace(capability)

    async def resolve(self, token: str) -> Optional[Capability]:
        await asyncio.sleep(0)
        capability = self._s.capabilities.get(token)
        return replace(capability) if capability else None

    async def revoke(
        self,
        job_id: str,
        roles: Iterable[CapabilityRole],
        at: datetime,
        tokens: Optional[Iterable[str]] = None,
    ) -> int:
        await asyncio.sleep(0)
        roles = set(roles)
        only = set(tokens) if tokens is not None else None
        revoked = 0
        for capability in self._s.capabilities.values():
            if (
                capability.job_id == job_id
                and capability.role in roles
                and capability.revoked_at is None
                and (only is None or capability.token in only)
            ):
                capability.revoked_at = at
                revoked += 1
        return revoked


class InMemoryAlertStore:

    def __init__(self, state: _MemoryState) -> None:
        self._s = state

    async def create(self, alert: Alert) -> None:
        await asyncio.sleep(0)
        self._s.alerts.append(replace(alert, meta=dict(alert.meta)))

    async def list_recent(self, limit: int = 50, job_id: Optional[str] = None) -> list[Alert]:
        await asyncio.sleep(0)
        alerts = [a for a in self._s.alerts if job_id is None or a.job_id == job_id]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return [replace(a, meta=dict(a.meta)) for a in alerts[:limit]]

    async def count_for_job(self, job_id: str) -> int:
        await asyncio.sleep(0)
        return sum(1 for a in self._s.alerts if a.job_id == job_id)


def create_memory_store(clock: Clock = utc_now) -> DispatchStore:
    """``clock`` stamps ``updated_at`` on conditional writes."""
    state = _MemoryState()
    return DispatchStore(
        jobs=InMemoryJobStore(state, clock),
        bids=InMemoryBidStore(state),
        vendors=InMemoryVendorStore(state),
        capabilities=InMemoryCapabilityStore(state),
        alerts=InMemoryAlertStore(state),
    )
