# roadside/core/dispatch/monitor.py
"""
Unbid Monitor: raises one escalation alert for every job that sat open
for bids past the grace window without receiving any.

Per tick:
    1. query candidates (Unassigned, not cancelled, never alerted, oldest first)
    2. re-validate each one against fresh state
    3. claim it with compare_and_swap on ``unbid_alert_sent_at = NULL``
    4. only the claimant creates the Alert and hands it to the dispatcher

The claim is the only thing that makes alerts at-most-once; the in-memory
busy flag just avoids overlapping ticks inside one process.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from roadside.core.domain import Alert, Job, JobStatus
from roadside.core.ports import Clock, DispatchStore, NotificationDispatcher, utc_now
from roadside.infra.audit_log import audit_event
from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)

ALERT_TITLE = "Job awaiting bids"
ALERT_KIND = "job_unbid_alert"


@dataclass
class TickResult:
    scanned: int = 0
    alerted: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    busy: bool = False

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "alerted": self.alerted,
            "skipped": self.skipped,
            "errors": self.errors,
            "busy": self.busy,
        }


def _format_minutes(minutes: float) -> str:
    return str(int(minutes)) if float(minutes).is_integer() else f"{minutes:g}"


def build_alert(job: Job, alert_minutes: float, sent_at: datetime) -> Alert:
    service = job.service_type or "Service request"
    where = job.pickup_address or "Unknown location"
    minutes = _format_minutes(alert_minutes)
    return Alert(
        id=str(uuid.uuid4()),
        job_id=job.id,
        customer_id=job.customer_id,
        title=ALERT_TITLE,
        body=f"{service} at {where} has no bids after {minutes} minutes.",
        severity="warning",
        created_at=sent_at,
        meta={
            "role": "admin",
            "kind": ALERT_KIND,
            "route": f"/jobs/{job.id}",
            "jobId": job.id,
            "alertMinutes": alert_minutes,
            "alertSentAt": sent_at.isoformat(),
        },
    )


class UnbidMonitor:
    """
    Periodic scanner with an injectable clock.

    Usage:
        monitor = UnbidMonitor(store, dispatcher, alert_minutes=10)
        await monitor.start()      # immediate scan, then every interval
        ...
        await monitor.stop()       # an in-flight tick is allowed to finish
    """

    def __init__(
        self,
        store: DispatchStore,
        dispatcher: NotificationDispatcher,
        *,
        alert_minutes: float = 10,
        interval_seconds: float = 60.0,
        batch_size: int = 25,
        enabled: bool = True,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._alert_minutes = alert_minutes
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._enabled = enabled
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._busy = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self) -> None:
        """Start the scan loop as an asyncio task (no-op when disabled)."""
        if not self._enabled:
            logger.info("Unbid monitor disabled")
            return
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="unbid_monitor")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            "Unbid monitor started: alert_after=%smin interval=%ss batch=%s",
            self._alert_minutes, self._interval, self._batch_size,
        )

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for the current one to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("Unbid monitor stopped")

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error(f"Unbid monitor tick failed: {exc}", exc_info=True)
                inc_counter("unbid_monitor_tick_errors")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def tick(self) -> TickResult:
        """
        Run one scan. Returns immediately with ``busy=True`` if a scan is
        already running in this process.
        """
        if self._busy:
            inc_counter("unbid_monitor_ticks", outcome="busy")
            return TickResult(busy=True)

        self._busy = True
        try:
            with DispatchMetrics.track_tick_time():
                return await self._scan()
        finally:
            self._busy = False

    async def _scan(self) -> TickResult:
        now = self._clock()
        cutoff = now - timedelta(minutes=self._alert_minutes)
        result = TickResult()

        candidates = await self._store.jobs.find_unbid_candidates(cutoff, self._batch_size)
        result.scanned = len(candidates)

        for candidate in candidates:
            try:
                outcome = await self._process(candidate, now, cutoff)
            except Exception:
                logger.error(
                    "Unbid alert failed: job_id=%s", candidate.id,
                    exc_info=True, extra={"job_id": candidate.id},
                )
                inc_counter("unbid_monitor_candidate_errors")
                result.errors.append(candidate.id)
                continue
            if outcome == "alerted":
                result.alerted.append(candidate.id)
            else:
                result.skipped[candidate.id] = outcome

        inc_counter("unbid_monitor_ticks", outcome="ok")
        if result.alerted or result.errors:
            logger.info(
                "Unbid scan: scanned=%d alerted=%d skipped=%d errors=%d",
                result.scanned, len(result.alerted), len(result.skipped), len(result.errors),
            )
        return result

    async def _process(self, candidate: Job, now: datetime, cutoff: datetime) -> str:
        job = await self._store.jobs.get(candidate.id)
        reason = self._skip_reason(job, cutoff)
        if reason is None and await self._store.bids.count_for_job(candidate.id) > 0:
            reason = "has_bids"
        if reason is not None:
            DispatchMetrics.unbid_alert(f"skipped_{reason}")
            return reason

        claimed = await self._store.jobs.compare_and_swap(
            candidate.id,
            {
                "unbid_alert_sent_at": None,
                "status": JobStatus.UNASSIGNED,
                "cancelled": False,
                "bidding_open": True,
            },
            {"unbid_alert_sent_at": now},
        )
        if claimed is None:
            DispatchMetrics.unbid_alert("claim_lost")
            return "claim_lost"

        alert = build_alert(claimed, self._alert_minutes, now)
        await self._store.alerts.create(alert)
        DispatchMetrics.unbid_alert("claimed")
        audit_event(
            "alert.unbid",
            job_id=claimed.id,
            actor="system",
            extra={"alert_id": alert.id},
        )

        delivered = await self._dispatcher.dispatch(alert)
        if not delivered:
            inc_counter("unbid_alert_dispatch_failed")
            logger.warning(
                "Unbid alert not delivered: job_id=%s alert_id=%s", claimed.id, alert.id,
                extra={"job_id": claimed.id, "alert_id": alert.id},
            )
        return "alerted"

    @staticmethod
    def _skip_reason(job: Optional[Job], cutoff: datetime) -> Optional[str]:
        if job is None:
            return "missing"
        if job.unbid_alert_sent_at is not None:
            return "already_alerted"
        if job.cancelled:
            return "cancelled"
        if job.vendor_id is not None or job.status != JobStatus.UNASSIGNED:
            return "assigned"
        if not job.bidding_open:
            return "bidding_closed"
        if job.created_at > cutoff:
            return "too_recent"
        return None

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected monitor death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Unbid monitor task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
