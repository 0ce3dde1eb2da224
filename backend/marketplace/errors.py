# Overview: Domain error taxonomy shared by services and routes.

"""
Domain errors

WHY: Services reject bad requests with a specific reason; routes turn that
reason into an HTTP response without re-deciding the status code. Anything
that is not a DomainError is an unexpected failure and stays opaque to the
caller.
"""

from __future__ import annotations

from datetime import datetime

from .time_utils import to_utc_z


class DomainError(Exception):
    """Base class for rejections surfaced to the caller as structured errors."""

    status_code = 400
    code = "DOMAIN_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **details):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = to_utc_z(value) if isinstance(value, datetime) else value
        return payload


class NotFoundError(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class PreconditionError(DomainError):
    """Wrong input or wrong state for the requested operation."""
    status_code = 400
    code = "PRECONDITION_FAILED"


class StateConflictError(DomainError):
    """The target exists but its current state forbids the transition."""
    status_code = 409
    code = "STATE_CONFLICT"


class IllegalTransitionError(StateConflictError):
    code = "ILLEGAL_TRANSITION"


class NothingToReleaseError(StateConflictError):
    """No eligible allocation and none already paid."""
    code = "NOTHING_TO_RELEASE"


class AuthorizationError(DomainError):
    """
    Wrong actor for the resource.

    The message is always generic so the response never reveals whether
    another party's record exists.
    """
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden", **kwargs):
        super().__init__(message, **kwargs)


class RateLimitError(DomainError):
    status_code = 429
    code = "RATE_LIMITED"


class ConcurrencyConflictError(DomainError):
    status_code = 409
    code = "CONCURRENT_UPDATE"

    def __init__(self, message: str = "Concurrent update detected, try again", **kwargs):
        super().__init__(message, **kwargs)
