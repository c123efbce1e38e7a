# roadside/core/dispatch/assignment.py
"""
Assignment Coordinator: picks exactly one winning bid per job.

The only thing that decides the winner is one conditional write on the job:

    match  {id, status=Unassigned, bidding_open=true, cancelled=false}
    set    {status=Assigned, vendor fields, final_price=bid.price,
            bidding_open=false, selected_bid_id, assigned_at}

Concurrent selects on the same job therefore yield one success and
Conflicts for everyone else, with nothing written by the losers. Work
after a won write (vendor upsert, capability changes, event fan-out) is
best effort: it is logged when it fails and never undoes the assignment.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from roadside.core.domain import (
    Bid,
    CapabilityRole,
    Job,
    JobStatus,
    Requester,
    Vendor,
)
from roadside.core.dispatch.events import EventPublisher, JobAssigned
from roadside.core.dispatch.tokens import BiddingTokenIssuer
from roadside.core.errors import ConflictError, NotFoundError
from roadside.core.ports import Clock, DispatchStore, utc_now
from roadside.infra.audit_log import audit_event
from roadside.infra.logging_config import get_logger, mask_phone
from roadside.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


@dataclass
class SelectionResult:
    job: Job
    bid: Bid
    vendor_portal_token: Optional[str] = None


def _lost_reasons(job: Optional[Job], bid: Bid) -> list[str]:
    if job is None:
        return ["job_missing"]
    if job.cancelled:
        return ["job_cancelled"]
    if job.status != JobStatus.UNASSIGNED:
        if job.selected_bid_id == bid.id:
            return ["already_assigned", "same_bid"]
        return ["already_assigned"]
    if not job.bidding_open:
        return ["bidding_closed"]
    return ["stale_state"]


class AssignmentCoordinator:

    def __init__(
        self,
        store: DispatchStore,
        issuer: BiddingTokenIssuer,
        events: EventPublisher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._events = events or EventPublisher()
        self._clock = clock

    async def select_bid(
        self,
        bid_id: str,
        requester: Requester = Requester.ADMIN,
        *,
        job_scope: Optional[str] = None,
    ) -> SelectionResult:
        """
        Make ``bid_id`` the winner of its job.

        Args:
            bid_id: bid to accept
            requester: who is selecting (admin or customer)
            job_scope: when set, the bid must belong to this job

        Raises:
            NotFoundError: bid or job missing (or bid outside ``job_scope``)
            ConflictError: race lost, job cancelled or bidding closed
        """
        with DispatchMetrics.track_selection_time():
            bid = await self._store.bids.get(bid_id)
            if bid is None or (job_scope is not None and bid.job_id != job_scope):
                DispatchMetrics.bid_selection("not_found")
                raise NotFoundError("Bid not found")

            job = await self._store.jobs.get(bid.job_id)
            if job is None:
                DispatchMetrics.bid_selection("not_found")
                raise NotFoundError("Job not found")

            # Resolved before the write so the winning write carries the
            # canonical id for known vendors.
            known = await self._store.vendors.get_by_phone(bid.vendor_phone)
            vendor_id = known.id if known else str(uuid.uuid4())

            now = self._clock()
            updated = await self._store.jobs.compare_and_swap(
                job.id,
                {
                    "status": JobStatus.UNASSIGNED,
                    "bidding_open": True,
                    "cancelled": False,
                },
                {
                    "status": JobStatus.ASSIGNED,
                    "vendor_id": vendor_id,
                    "vendor_name": bid.vendor_name,
                    "vendor_phone": bid.vendor_phone,
                    "final_price": bid.price,
                    "bidding_open": False,
                    "selected_bid_id": bid.id,
                    "assigned_at": now,
                },
            )
            if updated is None:
                current = await self._store.jobs.get(job.id)
                reasons = _lost_reasons(current, bid)
                DispatchMetrics.bid_selection("conflict")
                logger.info(
                    "Bid selection lost: job_id=%s bid_id=%s reasons=%s",
                    job.id, bid.id, reasons,
                    extra={"job_id": job.id, "bid_id": bid.id},
                )
                raise ConflictError("Job is no longer open for selection", reasons)

        DispatchMetrics.bid_selection("won")
        DispatchMetrics.status_transition(JobStatus.UNASSIGNED.value, JobStatus.ASSIGNED.value)
        audit_event(
            "bid.select",
            job_id=job.id,
            actor=requester.value,
            detail=f"vendor={mask_phone(bid.vendor_phone)}",
            extra={"bid_id": bid.id},
        )
        logger.info(
            "Bid selected: job_id=%s bid_id=%s vendor=%s final_price=%s",
            job.id, bid.id, mask_phone(bid.vendor_phone), bid.price,
            extra={"job_id": job.id, "bid_id": bid.id, "actor": requester.value},
        )

        updated = await self._after_assignment(updated, bid, vendor_id)
        portal_token = await self._issue_portal(updated)
        await self._events.publish(JobAssigned(
            job_id=updated.id,
            bid_id=bid.id,
            vendor_id=updated.vendor_id or vendor_id,
            vendor_name=updated.vendor_name,
            vendor_phone=updated.vendor_phone,
            final_price=updated.final_price,
            customer_id=updated.customer_id,
            requester=requester.value,
            assigned_at=now,
        ))
        return SelectionResult(job=updated, bid=bid, vendor_portal_token=portal_token)

    async def select_for_customer(self, customer_token: str, bid_id: str) -> SelectionResult:
        """Customer-link mirror of ``select_bid`` limited to the link's job."""
        _, job = await self._issuer.resolve(customer_token, CapabilityRole.CUSTOMER)
        return await self.select_bid(bid_id, Requester.CUSTOMER, job_scope=job.id)

    # ------------------------------------------------------------------
    # Post-assignment (best effort)
    # ------------------------------------------------------------------

    async def _after_assignment(self, job: Job, bid: Bid, vendor_id: str) -> Job:
        try:
            await self._issuer.revoke(job.id, CapabilityRole.VENDOR_BID)
        except Exception:
            logger.error(
                "Failed to revoke bid capability: job_id=%s", job.id,
                exc_info=True, extra={"job_id": job.id},
            )
            inc_counter("assignment_followup_errors", step="revoke")

        try:
            canonical = await self._store.vendors.upsert_by_phone(
                Vendor(
                    id=vendor_id,
                    name=bid.vendor_name,
                    phone=bid.vendor_phone,
                    base_address=job.pickup_address,
                    coordinate=job.pickup_coordinate,
                    created_at=self._clock(),
                ),
                service_type=job.service_type or None,
            )
        except Exception:
            logger.error(
                "Vendor upsert failed: job_id=%s vendor=%s",
                job.id, mask_phone(bid.vendor_phone),
                exc_info=True, extra={"job_id": job.id},
            )
            inc_counter("assignment_followup_errors", step="vendor_upsert")
            return job

        if canonical.id == vendor_id:
            return job

        # Another writer created the vendor between lookup and upsert.
        repointed = await self._store.jobs.compare_and_swap(
            job.id, {"vendor_id": vendor_id}, {"vendor_id": canonical.id},
        )
        return repointed or job

    async def _issue_portal(self, job: Job) -> Optional[str]:
        try:
            return await self._issuer.issue_vendor_portal(job.id)
        except Exception:
            logger.error(
                "Failed to issue vendor portal link: job_id=%s", job.id,
                exc_info=True, extra={"job_id": job.id},
            )
            inc_counter("assignment_followup_errors", step="vendor_portal")
            return None
