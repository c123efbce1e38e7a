# roadside/core/state_machine.py
"""
Job lifecycle transitions.

    Unassigned -> Assigned -> OnTheWay -> Arrived -> Completed

Besides the adjacent forward edges two operational edges exist:

* ``unassign``       Assigned -> Unassigned (vendor or admin, clears the vendor)
* ``force_complete`` any open state -> Completed (admin only)

An admin may additionally pass ``override=True`` to take any edge at all.
Whatever the edge, a job that ends up in a vendor-carrying state must have
a vendor.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from roadside.core.domain import JobStatus, Requester, VENDOR_STATUSES
from roadside.core.errors import InvalidTransitionError

# Rejection reason codes (returned to clients in the 409 body)
EDGE_NOT_ALLOWED = "edge_not_allowed"
REQUIRES_ADMIN = "requires_admin"
REQUIRES_OVERRIDE = "requires_override"
OVERRIDE_NOT_PERMITTED = "override_not_permitted"
VENDOR_REQUIRED = "vendor_required"
JOB_CANCELLED = "job_cancelled"
JOB_COMPLETED = "job_completed"


class EdgeKind(str, Enum):
    FORWARD = "forward"
    UNASSIGN = "unassign"
    FORCE_COMPLETE = "force_complete"
    OVERRIDE = "override"


FORWARD_EDGES: frozenset[tuple[JobStatus, JobStatus]] = frozenset({
    (JobStatus.UNASSIGNED, JobStatus.ASSIGNED),
    (JobStatus.ASSIGNED, JobStatus.ON_THE_WAY),
    (JobStatus.ON_THE_WAY, JobStatus.ARRIVED),
    (JobStatus.ARRIVED, JobStatus.COMPLETED),
})

UNASSIGN_EDGE = (JobStatus.ASSIGNED, JobStatus.UNASSIGNED)

# Vendors never assign themselves through a PATCH; winning a bid does that.
VENDOR_EDGES = (FORWARD_EDGES - {(JobStatus.UNASSIGNED, JobStatus.ASSIGNED)}) | {UNASSIGN_EDGE}

ADMIN_EDGES = FORWARD_EDGES | {UNASSIGN_EDGE} | {
    (status, JobStatus.COMPLETED)
    for status in JobStatus
    if status != JobStatus.COMPLETED
}

_EDGES_BY_REQUESTER: dict[Requester, frozenset[tuple[JobStatus, JobStatus]]] = {
    Requester.VENDOR: frozenset(VENDOR_EDGES),
    Requester.ADMIN: frozenset(ADMIN_EDGES),
    Requester.CUSTOMER: frozenset(),
    Requester.SYSTEM: frozenset(),
}


@dataclass(frozen=True)
class Transition:
    current: JobStatus
    target: JobStatus
    kind: EdgeKind

    @property
    def clears_vendor(self) -> bool:
        return self.target == JobStatus.UNASSIGNED

    @property
    def needs_vendor(self) -> bool:
        return self.target in VENDOR_STATUSES


def allowed_targets(current: JobStatus, requester: Requester) -> list[JobStatus]:
    """Targets reachable from ``current`` without an override, in lifecycle order."""
    edges = _EDGES_BY_REQUESTER.get(requester, frozenset())
    return [target for target in JobStatus if (current, target) in edges]


def _edge_kind(current: JobStatus, target: JobStatus) -> EdgeKind | None:
    if (current, target) in FORWARD_EDGES:
        return EdgeKind.FORWARD
    if (current, target) == UNASSIGN_EDGE:
        return EdgeKind.UNASSIGN
    if target == JobStatus.COMPLETED and current != JobStatus.COMPLETED:
        return EdgeKind.FORCE_COMPLETE
    return None


def rejection_reasons(
    current: JobStatus,
    target: JobStatus,
    requester: Requester,
    *,
    override: bool = False,
    has_vendor: bool = False,
    cancelled: bool = False,
) -> list[str]:
    """Return why ``current -> target`` is refused (empty list = allowed)."""
    reasons: list[str] = []

    if cancelled:
        reasons.append(JOB_CANCELLED)

    if override and requester != Requester.ADMIN:
        reasons.append(OVERRIDE_NOT_PERMITTED)
        override = False

    edges = _EDGES_BY_REQUESTER.get(requester, frozenset())
    if (current, target) not in edges and not override:
        reasons.append(EDGE_NOT_ALLOWED)
        if current == JobStatus.COMPLETED:
            reasons.append(JOB_COMPLETED)
        elif (current, target) in ADMIN_EDGES:
            reasons.append(REQUIRES_ADMIN)
        else:
            reasons.append(REQUIRES_OVERRIDE)

    if target in VENDOR_STATUSES and not has_vendor:
        reasons.append(VENDOR_REQUIRED)

    return reasons


def plan_transition(
    current: JobStatus,
    target: JobStatus,
    requester: Requester,
    *,
    override: bool = False,
    has_vendor: bool = False,
    cancelled: bool = False,
) -> Transition:
    """
    Validate a transition request.

    Raises:
        InvalidTransitionError: with machine-readable reasons when refused
    """
    reasons = rejection_reasons(
        current, target, requester,
        override=override, has_vendor=has_vendor, cancelled=cancelled,
    )
    if reasons:
        raise InvalidTransitionError(current.value, target.value, reasons)

    kind = _edge_kind(current, target)
    if kind is None or ((current, target) not in _EDGES_BY_REQUESTER[requester]):
        kind = EdgeKind.OVERRIDE
    return Transition(current=current, target=target, kind=kind)


def status_timestamp_field(status: JobStatus) -> str | None:
    """Job attribute stamped the first time a job enters ``status``."""
    return {
        JobStatus.ASSIGNED: "assigned_at",
        JobStatus.ON_THE_WAY: "on_the_way_at",
        JobStatus.ARRIVED: "arrived_at",
        JobStatus.COMPLETED: "completed_at",
    }.get(status)
