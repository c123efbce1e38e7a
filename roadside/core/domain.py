# roadside/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    ON_THE_WAY = "OnTheWay"
    ARRIVED = "Arrived"
    COMPLETED = "Completed"


# Statuses in which a job must carry a vendor
VENDOR_STATUSES = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.ON_THE_WAY,
    JobStatus.ARRIVED,
    JobStatus.COMPLETED,
})


class BidMode(str, Enum):
    OPEN = "open"
    FIXED = "fixed"


class Priority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"


class CapabilityRole(str, Enum):
    """What a bearer of a link token is allowed to do with one job."""
    VENDOR_BID = "vendor_bid"            # submit bids while bidding is open
    CUSTOMER = "customer"                # view bids, pick a winner
    VENDOR_ASSIGNED = "vendor_assigned"  # drive the job after winning


class Requester(str, Enum):
    """Who is asking for a status transition."""
    VENDOR = "vendor"
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"


# ============================================================================
# VALUE TYPES
# ============================================================================

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float


@dataclass(frozen=True)
class Address:
    """A free-text address with optional coordinates.

    All loosely shaped address payloads are normalized into this at the
    boundary (see ``roadside.core.normalize``).
    """
    text: str
    coordinate: Optional[Coordinate] = None


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class Job:
    """A service request moving through the dispatch lifecycle."""

    id: str
    customer_id: str
    pickup_address: str
    created_at: datetime
    status: JobStatus = JobStatus.UNASSIGNED
    bid_mode: BidMode = BidMode.OPEN
    bidding_open: bool = False
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    vendor_phone: Optional[str] = None
    vendor_token: Optional[str] = None
    customer_token: Optional[str] = None
    selected_bid_id: Optional[str] = None
    quoted_price: float = 0.0
    final_price: float = 0.0
    currency: str = "USD"
    dropoff_address: Optional[str] = None
    pickup_coordinate: Optional[Coordinate] = None
    dropoff_coordinate: Optional[Coordinate] = None
    service_type: str = ""
    notes: str = ""
    priority: Priority = Priority.NORMAL
    escalated_at: Optional[datetime] = None
    cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    unbid_alert_sent_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    on_the_way_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.cancelled and self.status != JobStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """Camel-cased public representation used by the HTTP layer."""
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "vendorId": self.vendor_id,
            "vendorName": self.vendor_name,
            "vendorPhone": self.vendor_phone,
            "status": self.status.value,
            "bidMode": self.bid_mode.value,
            "biddingOpen": self.bidding_open,
            "selectedBidId": self.selected_bid_id,
            "quotedPrice": self.quoted_price,
            "finalPrice": self.final_price,
            "currency": self.currency,
            "pickupAddress": self.pickup_address,
            "dropoffAddress": self.dropoff_address,
            "pickupCoordinate": _coord_dict(self.pickup_coordinate),
            "dropoffCoordinate": _coord_dict(self.dropoff_coordinate),
            "serviceType": self.service_type,
            "notes": self.notes,
            "priority": self.priority.value,
            "escalatedAt": _iso(self.escalated_at),
            "cancelled": self.cancelled,
            "cancelledAt": _iso(self.cancelled_at),
            "createdAt": _iso(self.created_at),
            "unbidAlertSentAt": _iso(self.unbid_alert_sent_at),
            "assignedAt": _iso(self.assigned_at),
            "onTheWayAt": _iso(self.on_the_way_at),
            "arrivedAt": _iso(self.arrived_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass
class Bid:
    """A vendor's price/ETA offer. Append-only."""

    id: str
    job_id: str
    vendor_name: str
    vendor_phone: str
    price: float
    eta_minutes: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "vendorName": self.vendor_name,
            "vendorPhone": self.vendor_phone,
            "price": self.price,
            "etaMinutes": self.eta_minutes,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class Vendor:
    """Canonical vendor record, keyed naturally by phone."""

    id: str
    name: str
    phone: str
    city: Optional[str] = None
    coordinate: Optional[Coordinate] = None
    radius_km: float = 25.0
    services: list[str] = field(default_factory=list)
    heavy_duty: bool = False
    active: bool = True
    base_address: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Capability:
    """An opaque link token scoped to one job and one role."""

    token: str
    job_id: str
    role: CapabilityRole
    issued_at: datetime
    revoked_at: Optional[datetime] = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class Alert:
    """Escalation record handed to the notification dispatcher."""

    id: str
    job_id: str
    title: str
    body: str
    severity: str
    created_at: datetime
    customer_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "customerId": self.customer_id,
            "title": self.title,
            "body": self.body,
            "severity": self.severity,
            "meta": self.meta,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class BiddingLinks:
    """Links derived from a job's capabilities."""

    status_url: str
    vendor_link: Optional[str] = None
    customer_link: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        out = {"statusUrl": self.status_url}
        if self.vendor_link:
            out["vendorLink"] = self.vendor_link
        if self.customer_link:
            out["customerLink"] = self.customer_link
        return out


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _coord_dict(value: Optional[Coordinate]) -> Optional[Dict[str, float]]:
    return {"lat": value.lat, "lng": value.lng} if value else None
