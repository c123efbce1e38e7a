# tests/test_assignment.py
"""Tests for the assignment coordinator: exactly one winner per job."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import make_bid, make_job_request
from roadside.core.domain import CapabilityRole, JobStatus, Requester, Vendor
from roadside.core.errors import ConflictError, NotFoundError
from roadside.core.models import UpdateJobRequest
from roadside.infra.metrics import get_metrics_collector


async def _job_with_bids(jobs, issuer, ledger, bids=None):
    job = await jobs.create_job(make_job_request())
    links = await issuer.open_bidding(job.id)
    vendor_token = links.vendor_link.rsplit("/", 1)[-1]
    customer_token = links.customer_link.rsplit("/", 1)[-1]
    placed = []
    for submission in bids or [make_bid("Vendor1", "+15550001111", 120, 30),
                               make_bid("Vendor2", "+15550002222", 150, 25)]:
        placed.append(await ledger.submit_bid(vendor_token, submission))
    return job, placed, vendor_token, customer_token


class TestSelectBid:
    @pytest.mark.asyncio
    async def test_towing_scenario(self, jobs, issuer, ledger, coordinator, clock):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)

        result = await coordinator.select_bid(first.id)

        assert result.job.status == JobStatus.ASSIGNED
        assert result.job.final_price == 120
        assert result.job.vendor_phone == "+15550001111"
        assert result.job.vendor_name == "Vendor1"
        assert result.job.selected_bid_id == first.id
        assert result.job.bidding_open is False
        assert result.job.assigned_at == clock.now
        assert result.vendor_portal_token

    @pytest.mark.asyncio
    async def test_concurrent_selects_single_winner(self, jobs, issuer, ledger, coordinator, store):
        bids = [make_bid(f"Vendor{i}", f"+1555000{i:04d}", 100 + i, 20 + i) for i in range(6)]
        job, placed, _, _ = await _job_with_bids(jobs, issuer, ledger, bids)

        results = await asyncio.gather(
            *(coordinator.select_bid(bid.id) for bid in placed),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(conflicts) == len(placed) - 1
        assert all("already_assigned" in c.reasons for c in conflicts)

        stored = await store.jobs.get(job.id)
        assert stored.selected_bid_id == winners[0].bid.id
        assert stored.final_price == winners[0].bid.price
        collector = get_metrics_collector()
        assert collector.get_counter("bid_selections_total", outcome="won") == 1
        assert collector.get_counter("bid_selections_total", outcome="conflict") == len(placed) - 1

    @pytest.mark.asyncio
    async def test_reselecting_same_bid_conflicts(self, jobs, issuer, ledger, coordinator):
        _, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        await coordinator.select_bid(first.id)
        with pytest.raises(ConflictError) as exc_info:
            await coordinator.select_bid(first.id)
        assert exc_info.value.reasons == ["already_assigned", "same_bid"]

    @pytest.mark.asyncio
    async def test_unknown_bid(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.select_bid("missing")

    @pytest.mark.asyncio
    async def test_closed_bidding_conflicts(self, jobs, issuer, ledger, coordinator, store):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        await store.jobs.compare_and_swap(job.id, {}, {"bidding_open": False})
        with pytest.raises(ConflictError) as exc_info:
            await coordinator.select_bid(first.id)
        assert exc_info.value.reasons == ["bidding_closed"]
        assert (await store.jobs.get(job.id)).status == JobStatus.UNASSIGNED

    @pytest.mark.asyncio
    async def test_cancelled_job_conflicts(self, jobs, issuer, ledger, coordinator):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        await jobs.update_job(job.id, UpdateJobRequest(cancelled=True))
        with pytest.raises(ConflictError) as exc_info:
            await coordinator.select_bid(first.id)
        assert exc_info.value.reasons == ["job_cancelled"]

    @pytest.mark.asyncio
    async def test_select_revokes_bid_link(self, jobs, issuer, ledger, coordinator):
        _, (first, _), vendor_token, _ = await _job_with_bids(jobs, issuer, ledger)
        await coordinator.select_bid(first.id)
        with pytest.raises(ConflictError):
            await ledger.submit_bid(vendor_token, make_bid("Late", "+15559999999", 90, 10))

    @pytest.mark.asyncio
    async def test_vendor_portal_capability_issued(self, jobs, issuer, ledger, coordinator):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        result = await coordinator.select_bid(first.id)
        _, portal_job = await issuer.resolve(result.vendor_portal_token, CapabilityRole.VENDOR_ASSIGNED)
        assert portal_job.id == job.id


class TestVendorUpsert:
    @pytest.mark.asyncio
    async def test_new_vendor_created(self, jobs, issuer, ledger, coordinator, store):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        result = await coordinator.select_bid(first.id)

        vendor = await store.vendors.get_by_phone("+15550001111")
        assert vendor.id == result.job.vendor_id
        assert vendor.name == "Vendor1"
        assert vendor.services == ["Towing"]
        assert vendor.radius_km == 25.0
        assert vendor.active is True
        assert vendor.base_address == job.pickup_address

    @pytest.mark.asyncio
    async def test_known_vendor_reused_and_enriched(self, jobs, issuer, ledger, coordinator, store, clock):
        store.vendors.add(Vendor(
            id="vendor-known", name="+15550001111", phone="+1 555 000 1111",
            services=["Jump start"], created_at=clock(),
        ))
        _, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)

        result = await coordinator.select_bid(first.id)

        assert result.job.vendor_id == "vendor-known"
        vendor = await store.vendors.get("vendor-known")
        assert vendor.name == "Vendor1"
        assert vendor.services == ["Jump start", "Towing"]

    @pytest.mark.asyncio
    async def test_upsert_failure_keeps_assignment(self, jobs, issuer, ledger, coordinator, store):
        job, (first, _), _, _ = await _job_with_bids(jobs, issuer, ledger)
        store.vendors.upsert_by_phone = AsyncMock(side_effect=RuntimeError("db down"))

        result = await coordinator.select_bid(first.id)

        assert result.job.status == JobStatus.ASSIGNED
        assert (await store.jobs.get(job.id)).status == JobStatus.ASSIGNED
        assert get_metrics_collector().get_counter(
            "assignment_followup_errors", step="vendor_upsert"
        ) == 1


class TestCustomerSelect:
    @pytest.mark.asyncio
    async def test_customer_token_scoped_to_job(self, jobs, issuer, ledger, coordinator):
        _, (first, _), _, customer_token = await _job_with_bids(jobs, issuer, ledger)
        _, (foreign, _), _, _ = await _job_with_bids(jobs, issuer, ledger)

        with pytest.raises(NotFoundError):
            await coordinator.select_for_customer(customer_token, foreign.id)

        result = await coordinator.select_for_customer(customer_token, first.id)
        assert result.job.status == JobStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_assignment_event_published(self, jobs, issuer, ledger, coordinator, events):
        received = []

        async def listener(event):
            received.append(event)

        async def broken(event):
            raise RuntimeError("listener down")

        events.subscribe(broken)
        events.subscribe(listener)
        job, (first, _), _, customer_token = await _job_with_bids(jobs, issuer, ledger)

        result = await coordinator.select_for_customer(customer_token, first.id)

        assert result.job.status == JobStatus.ASSIGNED
        assert len(received) == 1
        assert received[0].job_id == job.id
        assert received[0].requester == Requester.CUSTOMER.value
        assert get_metrics_collector().get_counter("job_assigned_listener_errors") == 1
