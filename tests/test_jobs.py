# tests/test_jobs.py
"""Tests for the job service: intake, listing, PATCH semantics, vendor portal."""
from __future__ import annotations

import asyncio

import pytest

from conftest import make_bid, make_job_request
from roadside.core.domain import CapabilityRole, JobStatus, Priority, Requester, Vendor
from roadside.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from roadside.core.models import UpdateJobRequest
from roadside.core.state_machine import REQUIRES_ADMIN, VENDOR_REQUIRED


def _patch(**fields) -> UpdateJobRequest:
    return UpdateJobRequest.model_validate(fields)


async def _assigned_job(jobs, issuer, ledger, coordinator):
    job = await jobs.create_job(make_job_request())
    links = await issuer.open_bidding(job.id)
    bid = await ledger.submit_bid(links.vendor_link.rsplit("/", 1)[-1], make_bid())
    result = await coordinator.select_bid(bid.id)
    return result.job, result.vendor_portal_token


class TestCreateAndList:
    @pytest.mark.asyncio
    async def test_create_defaults(self, jobs, clock):
        job = await jobs.create_job(make_job_request(
            pickupAddress={"address": "123  Main St", "lat": 40.1, "lng": -73.9},
            priority="urgent",
        ))
        assert job.status == JobStatus.UNASSIGNED
        assert job.bidding_open is False
        assert job.pickup_address == "123 Main St"
        assert job.pickup_coordinate.lat == 40.1
        assert job.escalated_at == clock.now

    @pytest.mark.asyncio
    async def test_create_with_flat_coordinates(self, jobs):
        job = await jobs.create_job(make_job_request(pickupLat=40.7, pickupLng=-73.9))
        assert job.pickup_address == "123 Main St"
        assert (job.pickup_coordinate.lat, job.pickup_coordinate.lng) == (40.7, -73.9)
        assert job.dropoff_coordinate is None

    @pytest.mark.asyncio
    async def test_list_newest_first_with_search(self, jobs, clock):
        towing = await jobs.create_job(make_job_request(serviceType="Towing"))
        clock.advance(minutes=1)
        lockout = await jobs.create_job(make_job_request(serviceType="Lockout", notes="Keys inside"))
        clock.advance(minutes=1)
        jump = await jobs.create_job(make_job_request(serviceType="Jump start"))

        listed = await jobs.list_jobs()
        assert [j.id for j in listed] == [jump.id, lockout.id, towing.id]

        found = await jobs.list_jobs(query="  KEYS ")
        assert [j.id for j in found] == [lockout.id]

        assert await jobs.list_jobs(status=JobStatus.ASSIGNED) == []

    @pytest.mark.asyncio
    async def test_get_missing(self, jobs):
        with pytest.raises(NotFoundError):
            await jobs.get_job("missing")

    @pytest.mark.asyncio
    async def test_public_status_hides_secrets(self, jobs, issuer):
        job = await jobs.create_job(make_job_request())
        await issuer.open_bidding(job.id)
        status = await jobs.public_status(job.id)
        assert status["status"] == "Unassigned"
        assert "vendorPhone" not in status
        assert "customerId" not in status
        assert not any("token" in key.lower() for key in status)


class TestUpdateJob:
    @pytest.mark.asyncio
    async def test_unassigned_to_arrived_rejected(self, jobs):
        job = await jobs.create_job(make_job_request())
        with pytest.raises(InvalidTransitionError) as exc_info:
            await jobs.update_job(job.id, _patch(status="Arrived"))
        assert exc_info.value.reasons
        assert VENDOR_REQUIRED in exc_info.value.reasons
        assert (await jobs.get_job(job.id)).status == JobStatus.UNASSIGNED

    @pytest.mark.asyncio
    async def test_override_with_vendor(self, jobs, store, clock):
        store.vendors.add(Vendor(id="v1", name="Ace", phone="+15550001111"))
        job = await jobs.create_job(make_job_request())
        updated = await jobs.update_job(
            job.id, _patch(status="Arrived", vendorId="v1", override=True),
        )
        assert updated.status == JobStatus.ARRIVED
        assert updated.vendor_id == "v1"
        assert updated.arrived_at == clock.now

    @pytest.mark.asyncio
    async def test_direct_assignment_closes_bidding(self, jobs, issuer, ledger, store):
        store.vendors.add(Vendor(id="v1", name="Ace", phone="+15550001111"))
        job = await jobs.create_job(make_job_request())
        links = await issuer.open_bidding(job.id)

        updated = await jobs.update_job(job.id, _patch(vendorId="v1"))

        assert updated.status == JobStatus.ASSIGNED
        assert updated.vendor_name == "Ace"
        assert updated.bidding_open is False
        with pytest.raises(ConflictError):
            await ledger.submit_bid(links.vendor_link.rsplit("/", 1)[-1], make_bid())

    @pytest.mark.asyncio
    async def test_unknown_vendor(self, jobs):
        job = await jobs.create_job(make_job_request())
        with pytest.raises(NotFoundError):
            await jobs.update_job(job.id, _patch(vendorId="ghost"))

    @pytest.mark.asyncio
    async def test_forward_edges_stamp_once(self, jobs, issuer, ledger, coordinator, clock):
        job, _ = await _assigned_job(jobs, issuer, ledger, coordinator)
        clock.advance(minutes=5)
        on_way = await jobs.update_job(job.id, _patch(status="OnTheWay"))
        assert on_way.on_the_way_at == clock.now
        clock.advance(minutes=5)
        arrived = await jobs.update_job(job.id, _patch(status="Arrived"))
        assert arrived.arrived_at == clock.now
        assert arrived.on_the_way_at == on_way.on_the_way_at

    @pytest.mark.asyncio
    async def test_unassign_clears_vendor_and_revokes_portal(
        self, jobs, issuer, ledger, coordinator
    ):
        job, portal_token = await _assigned_job(jobs, issuer, ledger, coordinator)
        updated = await jobs.update_job(job.id, _patch(vendorId=None))

        assert updated.status == JobStatus.UNASSIGNED
        assert updated.vendor_id is None
        assert updated.vendor_phone is None
        assert updated.selected_bid_id is None
        with pytest.raises(NotFoundError):
            await issuer.resolve(portal_token, CapabilityRole.VENDOR_ASSIGNED)

    @pytest.mark.asyncio
    async def test_force_complete(self, jobs, issuer, ledger, coordinator):
        job, _ = await _assigned_job(jobs, issuer, ledger, coordinator)
        done = await jobs.update_job(job.id, _patch(status="Completed"))
        assert done.status == JobStatus.COMPLETED
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_priority_notes_and_price(self, jobs, clock):
        job = await jobs.create_job(make_job_request())
        clock.advance(minutes=3)
        updated = await jobs.update_job(
            job.id, _patch(priority="urgent", notes="Blue sedan", finalPrice=140),
        )
        assert updated.priority == Priority.URGENT
        assert updated.escalated_at == clock.now
        assert updated.notes == "Blue sedan"
        assert updated.final_price == 140

    @pytest.mark.asyncio
    async def test_empty_patch(self, jobs):
        job = await jobs.create_job(make_job_request())
        with pytest.raises(ValidationError):
            await jobs.update_job(job.id, _patch())

    @pytest.mark.asyncio
    async def test_cancel_only_unassigned(self, jobs, issuer, ledger, coordinator):
        job, _ = await _assigned_job(jobs, issuer, ledger, coordinator)
        with pytest.raises(ConflictError) as exc_info:
            await jobs.update_job(job.id, _patch(cancelled=True))
        assert exc_info.value.reasons == ["job_assigned"]

    @pytest.mark.asyncio
    async def test_cancel_revokes_links(self, jobs, issuer):
        job = await jobs.create_job(make_job_request())
        links = await issuer.open_bidding(job.id)
        cancelled = await jobs.update_job(job.id, _patch(cancelled=True))
        assert cancelled.cancelled is True
        assert cancelled.bidding_open is False
        with pytest.raises(NotFoundError):
            await issuer.resolve(links.customer_link.rsplit("/", 1)[-1], CapabilityRole.CUSTOMER)
        with pytest.raises(ConflictError):
            await jobs.update_job(job.id, _patch(cancelled=False))

    @pytest.mark.asyncio
    async def test_patch_racing_selection(self, jobs, issuer, ledger, coordinator, store):
        store.vendors.add(Vendor(id="v1", name="Ace", phone="+15550003333"))
        job = await jobs.create_job(make_job_request())
        links = await issuer.open_bidding(job.id)
        bid = await ledger.submit_bid(links.vendor_link.rsplit("/", 1)[-1], make_bid())

        results = await asyncio.gather(
            coordinator.select_bid(bid.id),
            jobs.update_job(job.id, _patch(vendorId="v1")),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert isinstance([r for r in results if isinstance(r, Exception)][0], ConflictError)


class TestVendorPortal:
    @pytest.mark.asyncio
    async def test_view_lists_allowed_next(self, jobs, issuer, ledger, coordinator):
        job, portal_token = await _assigned_job(jobs, issuer, ledger, coordinator)
        view = await jobs.vendor_view(portal_token)
        assert view["id"] == job.id
        assert view["allowedNext"] == ["Unassigned", "OnTheWay"]

    @pytest.mark.asyncio
    async def test_vendor_drives_forward(self, jobs, issuer, ledger, coordinator):
        _, portal_token = await _assigned_job(jobs, issuer, ledger, coordinator)
        for status in (JobStatus.ON_THE_WAY, JobStatus.ARRIVED, JobStatus.COMPLETED):
            job = await jobs.vendor_update_status(portal_token, status)
            assert job.status == status

    @pytest.mark.asyncio
    async def test_vendor_cannot_skip(self, jobs, issuer, ledger, coordinator):
        _, portal_token = await _assigned_job(jobs, issuer, ledger, coordinator)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await jobs.vendor_update_status(portal_token, JobStatus.COMPLETED)
        assert REQUIRES_ADMIN in exc_info.value.reasons

    @pytest.mark.asyncio
    async def test_vendor_only_fields_need_admin(self, jobs, issuer, ledger, coordinator):
        job, _ = await _assigned_job(jobs, issuer, ledger, coordinator)
        with pytest.raises(ConflictError) as exc_info:
            await jobs.update_job(job.id, _patch(finalPrice=1), Requester.VENDOR)
        assert exc_info.value.reasons == [REQUIRES_ADMIN]

    @pytest.mark.asyncio
    async def test_bid_token_is_not_a_portal_token(self, jobs, issuer):
        job = await jobs.create_job(make_job_request())
        links = await issuer.open_bidding(job.id)
        with pytest.raises(NotFoundError):
            await jobs.vendor_view(links.vendor_link.rsplit("/", 1)[-1])
