# roadside/core/dispatch/__init__.py
"""
Dispatch engine: bidding, assignment and escalation of jobs.

- ``tokens`` - BiddingTokenIssuer (capability tokens and links)
- ``ledger`` - BidLedger (accepts bids while bidding is open)
- ``assignment`` - AssignmentCoordinator (atomic winner selection)
- ``jobs`` - JobService (intake, listing, status PATCHes, vendor portal)
- ``monitor`` - UnbidMonitor (one alert per stale bid-less job)
- ``events`` - JobAssigned event fan-out

Every invariant-preserving write goes through ``compare_and_swap`` on the
job store; nothing here holds locks or caches job state between calls.
"""
from roadside.core.dispatch.assignment import AssignmentCoordinator, SelectionResult
from roadside.core.dispatch.events import EventPublisher, JobAssigned
from roadside.core.dispatch.jobs import JobService
from roadside.core.dispatch.ledger import BidLedger
from roadside.core.dispatch.monitor import UnbidMonitor
from roadside.core.dispatch.tokens import BiddingTokenIssuer, mint_token

__all__ = [
    "AssignmentCoordinator",
    "BidLedger",
    "BiddingTokenIssuer",
    "EventPublisher",
    "JobAssigned",
    "JobService",
    "SelectionResult",
    "UnbidMonitor",
    "mint_token",
]
