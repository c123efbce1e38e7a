# roadside/core/models.py
"""
Pydantic request models for the dispatch API.

These live *outside* the transport layer so the services can
validate payloads without depending on FastAPI. Field names follow the
camelCase wire format; Python code uses the snake_case attributes.
"""
from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from roadside.core.domain import BidMode, JobStatus, Priority
from roadside.core.normalize import PHONE_MAX_LEN, PHONE_MIN_LEN, normalize_phone

MAX_VENDOR_NAME = 120
MAX_ETA_MINUTES = 720
MAX_BID_PRICE = 1_000_000


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class CreateJobRequest(_CamelModel):
    """Create a job in Unassigned."""

    customer_id: str = Field(..., min_length=1, max_length=128)
    pickup_address: Any = Field(...)
    dropoff_address: Any = None
    pickup_coordinate: Any = None
    dropoff_coordinate: Any = None
    # Flat form fields; folded into the coordinates above when those are unset
    pickup_lat: Any = None
    pickup_lng: Any = None
    dropoff_lat: Any = None
    dropoff_lng: Any = None
    service_type: str = Field(default="", max_length=120)
    notes: str = Field(default="", max_length=4000)
    bid_mode: BidMode = BidMode.OPEN
    priority: Priority = Priority.NORMAL
    quoted_price: float = 0.0
    currency: str = Field(default="USD", min_length=1, max_length=8)

    @field_validator("customer_id", "service_type", "notes", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("pickup_address")
    @classmethod
    def pickup_must_be_present(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("pickupAddress is required")
        return v

    @field_validator("bid_mode", mode="before")
    @classmethod
    def fixed_or_open(cls, v: Any) -> BidMode:
        return BidMode.FIXED if str(v or "").lower() == "fixed" else BidMode.OPEN

    @field_validator("priority", mode="before")
    @classmethod
    def urgent_or_normal(cls, v: Any) -> Priority:
        return Priority.URGENT if str(v or "").lower() == "urgent" else Priority.NORMAL

    @field_validator("quoted_price", mode="before")
    @classmethod
    def numeric_price(cls, v: Any) -> float:
        if v is None or v == "":
            return 0.0
        try:
            price = float(v)
        except (TypeError, ValueError):
            raise ValueError("quotedPrice must be a number")
        if not math.isfinite(price) or price < 0:
            raise ValueError("quotedPrice must be a non-negative number")
        return price

    @field_validator("currency", mode="before")
    @classmethod
    def upper_currency(cls, v: Any) -> Any:
        if v is None or v == "":
            return "USD"
        return str(v).strip().upper()

    @model_validator(mode="after")
    def fold_flat_coordinates(self) -> "CreateJobRequest":
        if self.pickup_coordinate is None and self.pickup_lat is not None and self.pickup_lng is not None:
            self.pickup_coordinate = {"lat": self.pickup_lat, "lng": self.pickup_lng}
        if self.dropoff_coordinate is None and self.dropoff_lat is not None and self.dropoff_lng is not None:
            self.dropoff_coordinate = {"lat": self.dropoff_lat, "lng": self.dropoff_lng}
        return self


class UpdateJobRequest(_CamelModel):
    """
    Partial job update.

    Only fields actually sent are applied (``model_fields_set``), so an
    explicit ``"vendorId": null`` means "unassign" while an absent
    ``vendorId`` means "leave alone".
    """

    status: JobStatus | None = None
    vendor_id: str | None = None
    priority: Priority | None = None
    notes: str | None = Field(default=None, max_length=4000)
    final_price: float | None = Field(default=None, ge=0)
    cancelled: bool | None = None
    override: bool = False

    @field_validator("final_price")
    @classmethod
    def finite_price(cls, v: float | None) -> float | None:
        if v is not None and not math.isfinite(v):
            raise ValueError("finalPrice must be a finite number")
        return v

    def sent(self, name: str) -> bool:
        return name in self.model_fields_set

    def has_updates(self) -> bool:
        return bool(self.model_fields_set - {"override"})


class VendorStatusUpdate(_CamelModel):
    status: JobStatus


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------

class BidSubmission(_CamelModel):
    """A vendor bid. Price is required whatever the job's bid mode."""

    vendor_name: str = Field(..., min_length=1, max_length=MAX_VENDOR_NAME)
    vendor_phone: str = Field(..., min_length=PHONE_MIN_LEN, max_length=PHONE_MAX_LEN)
    eta_minutes: int = Field(..., ge=1, le=MAX_ETA_MINUTES)
    price: float = Field(..., ge=0, le=MAX_BID_PRICE)

    @field_validator("vendor_name", mode="before")
    @classmethod
    def trim_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("vendor_phone", mode="before")
    @classmethod
    def clean_phone(cls, v: Any) -> Any:
        if v is None:
            return v
        return normalize_phone(v)

    @field_validator("price")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("price must be a finite number")
        return v


class SelectBidRequest(_CamelModel):
    bid_id: str = Field(..., min_length=1)
