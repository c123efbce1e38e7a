# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from roadside.core.dispatch import (  # noqa: E402
    AssignmentCoordinator,
    BidLedger,
    BiddingTokenIssuer,
    EventPublisher,
    JobService,
)
from roadside.core.domain import Alert  # noqa: E402
from roadside.core.models import BidSubmission, CreateJobRequest  # noqa: E402
from roadside.infra.memory_store import create_memory_store  # noqa: E402
from roadside.infra.metrics import get_metrics_collector  # noqa: E402

BASE_URL = "https://dispatch.example.com"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for services and the monitor."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    """Notification dispatcher that remembers what it was handed."""

    def __init__(self, deliver: bool = True):
        self.sent: list[Alert] = []
        self.deliver = deliver

    async def dispatch(self, alert: Alert) -> bool:
        self.sent.append(alert)
        return self.deliver


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return create_memory_store(clock=clock)


@pytest.fixture
def issuer(store, clock):
    return BiddingTokenIssuer(store, BASE_URL, clock=clock)


@pytest.fixture
def events():
    return EventPublisher()


@pytest.fixture
def jobs(store, issuer, clock):
    return JobService(store, issuer, clock=clock)


@pytest.fixture
def ledger(store, issuer, clock):
    return BidLedger(store, issuer, clock=clock)


@pytest.fixture
def coordinator(store, issuer, events, clock):
    return AssignmentCoordinator(store, issuer, events, clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


def make_job_request(**overrides) -> CreateJobRequest:
    payload = {
        "customerId": "cust-1",
        "pickupAddress": "123 Main St",
        "serviceType": "Towing",
        "bidMode": "open",
    }
    payload.update(overrides)
    return CreateJobRequest.model_validate(payload)


def make_bid(name: str = "Vendor1", phone: str = "+15550001111", price: float = 120, eta: int = 30):
    return BidSubmission.model_validate(
        {"vendorName": name, "vendorPhone": phone, "price": price, "etaMinutes": eta}
    )
