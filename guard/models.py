"""
guard/models.py -- Domain dataclasses for the access guard.

Pattern: Data class (pure data containers, no I/O). ThrottleStore maps rows to
ThrottleRecord; checkpoints turn a ThrottleRecord into a GuardDecision.

GuardDecision is a tagged union of four frozen dataclasses. Callers branch
with isinstance() rather than catching exceptions:

    decision = guard.check(user_principal(42), ip_principal("10.0.0.7"))
    if isinstance(decision, Suspended):
        ...

Layer rule: no imports from core/ or from other guard/ modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Union

_USER_PREFIX = "user:"
_IP_PREFIX = "ip:"


def user_principal(user_id: int | str) -> str:
    """Principal key for a user account."""
    value = str(user_id).strip()
    if not value:
        raise ValueError("user id must not be empty")
    return f"{_USER_PREFIX}{value}"


def ip_principal(address: str) -> str:
    """Principal key for a client IP address."""
    value = address.strip()
    if not value:
        raise ValueError("ip address must not be empty")
    return f"{_IP_PREFIX}{value}"


def validate_principal(principal: str) -> str:
    """Return principal unchanged if it carries a known prefix and a value."""
    for prefix in (_USER_PREFIX, _IP_PREFIX):
        if principal.startswith(prefix) and len(principal) > len(prefix):
            return principal
    raise ValueError(f"Invalid principal {principal!r}: expected 'user:<id>' or 'ip:<address>'")


@dataclass
class ThrottleRecord:
    """Attempt counter and lock-out flags for one principal.

    A record with id None has never been persisted -- ThrottleStore.get()
    returns such a zero-valued record for principals it has not seen.

    banned supersedes suspended: a banned record is reported as Banned no
    matter what the suspension fields hold.
    """

    principal: str
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    suspended: bool = False
    suspended_at: datetime | None = None
    banned: bool = False
    banned_at: datetime | None = None
    id: int | None = None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Allow:
    """Credential verification may proceed."""


@dataclass(frozen=True)
class Delay:
    """Too many recent failures; retry after retry_after has elapsed."""

    principal: str
    retry_after: timedelta

    @property
    def retry_after_seconds(self) -> int:
        """retry_after rounded up to whole seconds (Retry-After header value)."""
        seconds = self.retry_after.total_seconds()
        whole = int(seconds)
        return whole + 1 if seconds > whole else whole


@dataclass(frozen=True)
class Suspended:
    """Recoverable lock-out. until is None for an indefinite suspension."""

    principal: str
    until: datetime | None = None


@dataclass(frozen=True)
class Banned:
    """Terminal lock-out; only an administrator can lift it."""

    principal: str


GuardDecision = Union[Allow, Delay, Suspended, Banned]

ALLOW = Allow()


class PrincipalState(str, Enum):
    clear = "clear"
    throttled = "throttled"
    suspended = "suspended"
    banned = "banned"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of AccessGuard.authenticate().

    authenticated is True only when every checkpoint allowed the attempt and
    the caller's verifier accepted the credentials. decision is the guard's
    view after the attempt was recorded, so a failure that tripped the
    suspension threshold comes back as Suspended.
    """

    authenticated: bool
    decision: GuardDecision
