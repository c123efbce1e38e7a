# roadside/core/dispatch/events.py
"""Assignment domain events and their best-effort fan-out."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobAssigned:
    job_id: str
    bid_id: str | None
    vendor_id: str
    vendor_name: str | None
    vendor_phone: str | None
    final_price: float
    customer_id: str
    requester: str
    assigned_at: datetime


Listener = Callable[[JobAssigned], Awaitable[None]]


class EventPublisher:
    """
    Delivers events to registered async listeners.

    A failing listener is logged and counted; it never undoes the
    assignment that produced the event and never stops other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def publish(self, event: JobAssigned) -> int:
        """Returns the number of listeners that handled the event."""
        delivered = 0
        for listener in list(self._listeners):
            try:
                await listener(event)
                delivered += 1
            except Exception:
                logger.error(
                    "JobAssigned listener failed: job_id=%s listener=%s",
                    event.job_id, getattr(listener, "__name__", repr(listener)),
                    exc_info=True,
                    extra={"job_id": event.job_id},
                )
                inc_counter("job_assigned_listener_errors")
        return delivered
