# roadside/core/dispatch/jobs.py
"""
Job service: intake, listing, status PATCHes and the assigned-vendor portal.

Every update is one ``compare_and_swap`` guarded on the status (and vendor)
the caller observed, so a PATCH racing a bid selection either applies to
the state it was validated against or fails with a Conflict.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from roadside.core.domain import (
    CapabilityRole,
    Job,
    JobStatus,
    Priority,
    Requester,
    VENDOR_STATUSES,
)
from roadside.core.dispatch.tokens import BiddingTokenIssuer
from roadside.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from roadside.core.models import CreateJobRequest, UpdateJobRequest
from roadside.core.normalize import normalize_address
from roadside.core.ports import Clock, DispatchStore, utc_now
from roadside.core.state_machine import (
    REQUIRES_ADMIN,
    allowed_targets,
    plan_transition,
    status_timestamp_field,
)
from roadside.infra.audit_log import audit_event
from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

MAX_LIST_LIMIT = 500


class JobService:

    def __init__(
        self,
        store: DispatchStore,
        issuer: BiddingTokenIssuer,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._clock = clock

    # ------------------------------------------------------------------
    # Intake & queries
    # ------------------------------------------------------------------

    async def create_job(self, req: CreateJobRequest, actor: str = "admin") -> Job:
        pickup = normalize_address(req.pickup_address, req.pickup_coordinate)
        if pickup is None or not pickup.text:
            raise ValidationError("pickupAddress is required")
        dropoff = normalize_address(req.dropoff_address, req.dropoff_coordinate)

        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            customer_id=req.customer_id,
            pickup_address=pickup.text,
            pickup_coordinate=pickup.coordinate,
            dropoff_address=dropoff.text if dropoff and dropoff.text else None,
            dropoff_coordinate=dropoff.coordinate if dropoff else None,
            created_at=now,
            updated_at=now,
            status=JobStatus.UNASSIGNED,
            bid_mode=req.bid_mode,
            service_type=req.service_type,
            notes=req.notes,
            priority=req.priority,
            escalated_at=now if req.priority == Priority.URGENT else None,
            quoted_price=req.quoted_price,
            currency=req.currency,
        )
        await self._store.jobs.insert(job)

        audit_event("job.create", job_id=job.id, actor=actor)
        logger.info(
            "Job created: job_id=%s service=%s mode=%s",
            job.id, job.service_type or "-", job.bid_mode.value,
            extra={"job_id": job.id},
        )
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        query: Optional[str] = None,
        limit: int = 100,
    ) -> list[Job]:
        """Newest first, optionally filtered by status and a search string."""
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        query = query.strip() if query else None
        return await self._store.jobs.list(status=status, query=query or None, limit=limit)

    async def public_status(self, job_id: str) -> dict[str, Any]:
        """Customer-facing status page data. No tokens, no phone numbers."""
        job = await self.get_job(job_id)
        data = job.to_dict()
        return {
            key: data[key]
            for key in (
                "id", "status", "serviceType", "pickupAddress", "dropoffAddress",
                "vendorName", "cancelled", "createdAt", "assignedAt",
                "onTheWayAt", "arrivedAt", "completedAt",
            )
        }

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_job(
        self,
        job_id: str,
        req: UpdateJobRequest,
        requester: Requester = Requester.ADMIN,
    ) -> Job:
        """
        Apply a partial update, including status transitions.

        Raises:
            NotFoundError: job (or referenced vendor) missing
            ValidationError: nothing to update, or contradictory fields
            InvalidTransitionError: the state machine refused the move
            ConflictError: the job changed since it was read
        """
        if not req.has_updates():
            raise ValidationError("No updates provided")

        job = await self.get_job(job_id)
        now = self._clock()

        if requester != Requester.ADMIN and (
            req.sent("vendor_id") or req.sent("cancelled") or req.sent("final_price")
        ):
            raise ConflictError("Only admins can change these fields", [REQUIRES_ADMIN])

        changes: dict[str, Any] = {}
        revoke_roles: list[CapabilityRole] = []
        target = req.status

        vendor = None
        vendor_sent = req.sent("vendor_id")
        if vendor_sent:
            if req.vendor_id is None:
                if target is None:
                    target = JobStatus.UNASSIGNED
            else:
                vendor = await self._store.vendors.get(req.vendor_id)
                if vendor is None:
                    raise NotFoundError("Vendor not found")
                if target is None and job.status == JobStatus.UNASSIGNED:
                    target = JobStatus.ASSIGNED

        if req.sent("cancelled") and req.cancelled is not None:
            self._plan_cancel(job, req.cancelled, target, now, changes, revoke_roles)

        if target is not None and target != job.status:
            has_vendor = vendor is not None if vendor_sent else job.vendor_id is not None
            try:
                transition = plan_transition(
                    job.status, target, requester,
                    override=req.override,
                    has_vendor=has_vendor,
                    cancelled=job.cancelled,
                )
            except InvalidTransitionError as exc:
                DispatchMetrics.transition_rejected()
                logger.info(
                    "Transition rejected: job_id=%s %s->%s reasons=%s",
                    job.id, job.status.value, target.value, exc.reasons,
                    extra={"job_id": job.id, "actor": requester.value},
                )
                raise

            changes["status"] = target
            stamp = status_timestamp_field(target)
            if stamp and getattr(job, stamp) is None:
                changes[stamp] = now
            if transition.clears_vendor:
                changes.update(
                    vendor_id=None, vendor_name=None, vendor_phone=None,
                    selected_bid_id=None, bidding_open=False,
                )
                revoke_roles.append(CapabilityRole.VENDOR_ASSIGNED)
            elif job.status == JobStatus.UNASSIGNED:
                changes["bidding_open"] = False
                revoke_roles.append(CapabilityRole.VENDOR_BID)

        if vendor is not None and changes.get("status", job.status) in VENDOR_STATUSES:
            if vendor.id != job.vendor_id:
                changes.update(vendor_id=vendor.id, vendor_name=vendor.name, vendor_phone=vendor.phone)
                if job.vendor_id is not None:
                    revoke_roles.append(CapabilityRole.VENDOR_ASSIGNED)

        if req.sent("priority") and req.priority is not None and req.priority != job.priority:
            changes["priority"] = req.priority
            if req.priority == Priority.URGENT and job.escalated_at is None:
                changes["escalated_at"] = now
        if req.sent("notes") and req.notes is not None:
            changes["notes"] = req.notes
        if req.sent("final_price") and req.final_price is not None:
            changes["final_price"] = req.final_price

        if not changes:
            return job

        updated = await self._store.jobs.compare_and_swap(
            job.id,
            {"status": job.status, "vendor_id": job.vendor_id, "cancelled": job.cancelled},
            changes,
        )
        if updated is None:
            raise ConflictError("Job changed concurrently; re-fetch and retry", ["stale_state"])

        if revoke_roles:
            await self._issuer.revoke(job.id, *revoke_roles)

        if "status" in changes:
            DispatchMetrics.status_transition(job.status.value, updated.status.value)
            audit_event(
                "job.status",
                job_id=job.id,
                actor=requester.value,
                detail=f"{job.status.value}->{updated.status.value}",
                extra={"override": req.override},
            )
        if changes.get("cancelled"):
            audit_event("job.cancel", job_id=job.id, actor=requester.value)

        logger.info(
            "Job updated: job_id=%s fields=%s",
            job.id, sorted(changes),
            extra={"job_id": job.id, "actor": requester.value},
        )
        return updated

    @staticmethod
    def _plan_cancel(
        job: Job,
        cancel: bool,
        target: Optional[JobStatus],
        now: datetime,
        changes: dict[str, Any],
        revoke_roles: list[CapabilityRole],
    ) -> None:
        if not cancel:
            if job.cancelled:
                raise ConflictError("Cancelled jobs cannot be reopened", ["job_cancelled"])
            return
        if job.cancelled:
            return
        if job.status != JobStatus.UNASSIGNED:
            raise ConflictError("Only unassigned jobs can be cancelled", ["job_assigned"])
        if target is not None and target != JobStatus.UNASSIGNED:
            raise ValidationError("Cannot cancel and change status in one request")
        changes.update(cancelled=True, cancelled_at=now, bidding_open=False)
        revoke_roles.extend((CapabilityRole.VENDOR_BID, CapabilityRole.CUSTOMER))

    # ------------------------------------------------------------------
    # Assigned-vendor portal
    # ------------------------------------------------------------------

    async def vendor_view(self, token: str) -> dict[str, Any]:
        _, job = await self._issuer.resolve(token, CapabilityRole.VENDOR_ASSIGNED)
        data = job.to_dict()
        data["allowedNext"] = [s.value for s in allowed_targets(job.status, Requester.VENDOR)]
        return data

    async def vendor_update_status(self, token: str, status: JobStatus) -> Job:
        """Drive the job forward (or hand it back) through the vendor portal."""
        _, job = await self._issuer.resolve(token, CapabilityRole.VENDOR_ASSIGNED)
        return await self.update_job(job.id, UpdateJobRequest(status=status), Requester.VENDOR)
