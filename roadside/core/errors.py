"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"message": self.detail}


class ValidationError(DispatchError):
    """Malformed or missing request fields (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Unknown or expired token, job or bid (404)."""

    status_code = 404


class ConflictError(DispatchError):
    """Lost a race or the record is in the wrong state (409).

    ``reasons`` is a list of machine-readable codes; callers should
    re-fetch state rather than retry blindly.
    """

    status_code = 409

    def __init__(self, detail: str = "Conflict", reasons: list[str] | None = None):
        super().__init__(detail)
        self.reasons = list(reasons or [])

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.reasons:
            out["reasons"] = self.reasons
        return out


class InvalidTransitionError(ConflictError):
    """A status change the requester is not allowed to make."""

    def __init__(self, current: str, target: str, reasons: list[str]):
        super().__init__(f"Cannot move job from {current} to {target}", reasons=reasons)
        self.current = current
        self.target = target
