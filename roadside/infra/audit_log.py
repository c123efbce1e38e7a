"""
Audit logging for dispatch decisions.

Records who opened bidding, who bid, who won and who moved a job,
to a dedicated audit logger (separate from the application log).

Events are logged at INFO level to a logger named "audit" so they
can be routed to a separate file / sink via logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    job_id: str | None = None,
    actor: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "bidding.open", "bid.select")
        job_id: Job affected (if applicable)
        actor: Capability role that performed the action (admin, customer, vendor, system)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "job_id": job_id or "",
        "actor": actor or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} job={job_id or '-'} actor={actor or '-'} {detail}",
        extra=record,
    )
