# roadside/core/dispatch/ledger.py
"""
Bid Ledger: accepts bids against a valid open vendor token.

Bids are append-only. Acceptance is a conditional insert on the job's
``bidding_open``/``status``/``vendor_token`` so a bid can never land on a
job whose bidding closed after the token was resolved.
"""
from __future__ import annotations

import uuid
from typing import Any

from roadside.core.domain import Bid, CapabilityRole, Job, JobStatus
from roadside.core.dispatch.tokens import BiddingTokenIssuer
from roadside.core.errors import ConflictError, NotFoundError
from roadside.core.models import BidSubmission
from roadside.core.ports import Clock, DispatchStore, utc_now
from roadside.infra.audit_log import audit_event
from roadside.infra.logging_config import get_logger, mask_phone
from roadside.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _bidding_closed() -> ConflictError:
    return ConflictError("Bidding is closed for this job", ["bidding_closed"])


class BidLedger:

    def __init__(
        self,
        store: DispatchStore,
        issuer: BiddingTokenIssuer,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._clock = clock

    async def _open_job_for(self, vendor_token: str) -> Job:
        capability, job = await self._issuer.resolve(
            vendor_token, CapabilityRole.VENDOR_BID, include_revoked=True,
        )
        if capability.revoked or not job.bidding_open or job.status != JobStatus.UNASSIGNED:
            raise _bidding_closed()
        return job

    async def vendor_preview(self, vendor_token: str) -> dict[str, Any]:
        """
        Minimal job info shown on the vendor bid page.

        Raises:
            NotFoundError: unknown token, or bidding no longer open
        """
        try:
            job = await self._open_job_for(vendor_token)
        except ConflictError:
            raise NotFoundError("Bidding closed")
        return {
            "jobId": job.id,
            "serviceType": job.service_type,
            "pickupAddress": job.pickup_address,
            "dropoffAddress": job.dropoff_address,
            "quotedPrice": job.quoted_price,
            "currency": job.currency,
            "bidMode": job.bid_mode.value,
            "priority": job.priority.value,
        }

    async def submit_bid(self, vendor_token: str, submission: BidSubmission) -> Bid:
        """
        Append a bid for the job behind ``vendor_token``.

        Repeat submissions from the same vendor are separate bids.

        Raises:
            NotFoundError: unknown or superseded token
            ConflictError: bidding closed (before or during the insert)
        """
        with DispatchMetrics.track_submission_time():
            try:
                job = await self._open_job_for(vendor_token)
            except NotFoundError:
                DispatchMetrics.bid_submission("unknown_token")
                raise
            except ConflictError:
                DispatchMetrics.bid_submission("closed")
                raise

            bid = Bid(
                id=str(uuid.uuid4()),
                job_id=job.id,
                vendor_name=submission.vendor_name,
                vendor_phone=submission.vendor_phone,
                price=submission.price,
                eta_minutes=submission.eta_minutes,
                created_at=self._clock(),
            )
            if not await self._store.bids.insert_if_open(bid, vendor_token):
                DispatchMetrics.bid_submission("closed")
                raise _bidding_closed()

        DispatchMetrics.bid_submission("accepted")
        audit_event(
            "bid.submit",
            job_id=job.id,
            actor="vendor",
            extra={"bid_id": bid.id},
        )
        logger.info(
            "Bid accepted: job_id=%s bid_id=%s vendor=%s price=%s eta=%s",
            job.id, bid.id, mask_phone(bid.vendor_phone), bid.price, bid.eta_minutes,
            extra={"job_id": job.id, "bid_id": bid.id},
        )
        return bid

    async def list_bids(self, job_id: str) -> list[Bid]:
        """Bids for a job in submission order."""
        if await self._store.jobs.get(job_id) is None:
            raise NotFoundError("Job not found")
        return await self._store.bids.list_for_job(job_id)

    async def customer_view(self, customer_token: str) -> tuple[Job, list[Bid]]:
        """The job and its bids as seen through a customer link."""
        _, job = await self._issuer.resolve(customer_token, CapabilityRole.CUSTOMER)
        bids = await self._store.bids.list_for_job(job.id)
        return job, bids
