# roadside/core/dispatch/tokens.py
"""
Bidding Token Issuer.

Tokens are capabilities: ``(token, job_id, role, issued_at, revoked_at)``.
The job row holds the *current* vendor/customer token, and the capability
store holds the revocation ledger. A token grants access only while both
agree, so re-opening bidding invalidates old links in the same
conditional write that publishes the new ones.
"""
from __future__ import annotations

import secrets

from roadside.core.domain import (
    BiddingLinks,
    Capability,
    CapabilityRole,
    Job,
    JobStatus,
)
from roadside.core.errors import ConflictError, NotFoundError
from roadside.core.ports import Clock, DispatchStore, utc_now
from roadside.infra.audit_log import audit_event
from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import inc_counter

logger = get_logger(__name__)

# 24 random bytes -> 32 url-safe characters
TOKEN_BYTES = 24

_JOB_TOKEN_FIELD = {
    CapabilityRole.VENDOR_BID: "vendor_token",
    CapabilityRole.CUSTOMER: "customer_token",
}


def mint_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class BiddingTokenIssuer:
    """Mints, resolves and revokes job capabilities and derives their links."""

    def __init__(
        self,
        store: DispatchStore,
        base_url: str,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def status_url(self, job_id: str) -> str:
        return f"{self._base_url}/status/{job_id}"

    def vendor_link(self, token: str) -> str:
        return f"{self._base_url}/bid/{token}"

    def vendor_portal_link(self, token: str) -> str:
        return f"{self._base_url}/vendor/{token}"

    def customer_link(self, token: str) -> str:
        return f"{self._base_url}/choose/{token}"

    def links_for(self, job: Job) -> BiddingLinks:
        return BiddingLinks(
            status_url=self.status_url(job.id),
            vendor_link=self.vendor_link(job.vendor_token) if job.vendor_token else None,
            customer_link=self.customer_link(job.customer_token) if job.customer_token else None,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def open_bidding(self, job_id: str, actor: str = "admin") -> BiddingLinks:
        """
        Mint a fresh vendor/customer token pair and open the job to bids.

        Calling it again re-mints both tokens; links handed out earlier stop
        working.

        Raises:
            NotFoundError: job does not exist
            ConflictError: job is cancelled, already assigned, or another
                open_bidding call replaced the tokens first
        """
        job = await self._store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        self._ensure_biddable(job)

        vendor_token, customer_token = mint_token(), mint_token()
        updated = await self._store.jobs.compare_and_swap(
            job_id,
            {
                "status": JobStatus.UNASSIGNED,
                "cancelled": False,
                "vendor_token": job.vendor_token,
            },
            {
                "vendor_token": vendor_token,
                "customer_token": customer_token,
                "bidding_open": True,
            },
        )
        if updated is None:
            current = await self._store.jobs.get(job_id)
            if current is None:
                raise NotFoundError("Job not found")
            self._ensure_biddable(current)
            raise ConflictError("Bidding links changed concurrently", ["stale_tokens"])

        now = self._clock()
        for token, role in (
            (vendor_token, CapabilityRole.VENDOR_BID),
            (customer_token, CapabilityRole.CUSTOMER),
        ):
            await self._store.capabilities.issue(
                Capability(token=token, job_id=job_id, role=role, issued_at=now)
            )

        stale = [t for t in (job.vendor_token, job.customer_token) if t]
        if stale:
            await self._store.capabilities.revoke(
                job_id,
                (CapabilityRole.VENDOR_BID, CapabilityRole.CUSTOMER),
                now,
                tokens=stale,
            )

        inc_counter("bidding_opened_total", reopened=str(bool(stale)).lower())
        audit_event(
            "bidding.open",
            job_id=job_id,
            actor=actor,
            detail="reopened" if stale else "",
        )
        logger.info(
            "Bidding opened: job_id=%s reopened=%s", job_id, bool(stale),
            extra={"job_id": job_id},
        )
        return self.links_for(updated)

    async def get_links(self, job_id: str) -> BiddingLinks:
        """
        Links for the job's current tokens.

        Raises:
            NotFoundError: job missing, or bidding was never opened
        """
        job = await self._store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if not job.vendor_token and not job.customer_token:
            raise NotFoundError("Bidding has not been opened for this job")
        return self.links_for(job)

    async def resolve(
        self,
        token: str,
        role: CapabilityRole,
        *,
        include_revoked: bool = False,
    ) -> tuple[Capability, Job]:
        """
        Map a link token to its capability and job.

        Raises:
            NotFoundError: token unknown, of another role, superseded, or
                revoked (unless ``include_revoked``)
        """
        capability = await self._store.capabilities.resolve(token) if token else None
        if capability is None or capability.role != role:
            raise NotFoundError("Invalid or expired link")
        if capability.revoked and not include_revoked:
            raise NotFoundError("Invalid or expired link")

        job = await self._store.jobs.get(capability.job_id)
        if job is None:
            raise NotFoundError("Invalid or expired link")

        field = _JOB_TOKEN_FIELD.get(role)
        if field is not None and getattr(job, field) != token:
            raise NotFoundError("Invalid or expired link")
        return capability, job

    async def issue_vendor_portal(self, job_id: str) -> str:
        """Mint the assigned-vendor capability for a freshly assigned job."""
        token = mint_token()
        await self._store.capabilities.issue(
            Capability(
                token=token,
                job_id=job_id,
                role=CapabilityRole.VENDOR_ASSIGNED,
                issued_at=self._clock(),
            )
        )
        return token

    async def revoke(self, job_id: str, *roles: CapabilityRole) -> int:
        revoked = await self._store.capabilities.revoke(job_id, roles, self._clock())
        if revoked:
            logger.debug(
                "Revoked %d capabilities: job_id=%s roles=%s",
                revoked, job_id, [r.value for r in roles],
                extra={"job_id": job_id},
            )
        return revoked

    @staticmethod
    def _ensure_biddable(job: Job) -> None:
        if job.cancelled:
            raise ConflictError("Job is cancelled", ["job_cancelled"])
        if job.status != JobStatus.UNASSIGNED:
            raise ConflictError("Job is already assigned", ["job_assigned"])
