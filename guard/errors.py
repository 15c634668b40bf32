"""
guard/errors.py -- Infrastructure failures raised by the access guard.

Ban, suspension and throttling are normal outcomes and are returned as
GuardDecision values (guard/models.py). Only faults that prevent the guard
from knowing a principal's state are exceptions.
"""

from __future__ import annotations


class GuardError(Exception):
    """Base class for access guard failures."""


class StoreUnavailable(GuardError):
    """The throttle store could not be reached or written.

    Callers must pick a policy explicitly; AccessGuard.check_or_fallback()
    applies the configured one (fail-closed by default). Never treat this as
    an Allow by accident.
    """

    def __init__(self, message: str, principal: str | None = None) -> None:
        super().__init__(message)
        self.principal = principal
