"""
guard/checkpoints.py -- Ordered gates evaluated before credentials are checked.

Pattern: Chain of Responsibility. Each checkpoint looks at one ThrottleRecord
and either returns a GuardDecision (stop here) or None (pass to the next
gate). CheckpointChain returns the first decision, or Allow when every gate
passes.

Default order:
  BanCheckpoint         -- terminal state, must win over everything else
  SuspensionCheckpoint  -- recoverable lock-out; reported as "suspended"
                           rather than "too many attempts"
  ThrottleCheckpoint    -- exponential backoff on recent failures

Checkpoints are pure: they read the record and the supplied clock value and
never touch the store. AccessGuard (guard/service.py) owns every write.

New gates only need an evaluate(record, now) method; the chain runner does
not change.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional, Protocol

from guard.models import ALLOW, Banned, Delay, GuardDecision, Suspended, ThrottleRecord


class Checkpoint(Protocol):
    """Anything with evaluate(record, now) -> decision or None."""

    def evaluate(self, record: ThrottleRecord, now: datetime) -> Optional[GuardDecision]: ...


def backoff_delay(attempt_count: int, free_attempts: int, base: float, cap: float) -> float:
    """Seconds a principal must wait after attempt_count consecutive failures.

    No delay while attempt_count <= free_attempts; afterwards base doubles per
    failure up to cap. Non-decreasing in attempt_count.
    """
    excess = attempt_count - free_attempts
    if excess <= 0:
        return 0.0
    # Past ~64 doublings the cap has long been reached; avoid float overflow.
    if excess > 64:
        return cap
    return min(cap, base * (2 ** (excess - 1)))


class BanCheckpoint:
    def evaluate(self, record: ThrottleRecord, now: datetime) -> Optional[GuardDecision]:
        if record.banned:
            return Banned(principal=record.principal)
        return None


class SuspensionCheckpoint:
    """Reports Suspended while a suspension is in force.

    duration None means suspensions never expire on their own. With a
    duration, a suspension whose until has passed is treated as lifted;
    AccessGuard clears the stored flag before the chain runs.
    """

    def __init__(self, duration: timedelta | None = None) -> None:
        self.duration = duration

    def until(self, record: ThrottleRecord) -> datetime | None:
        if self.duration is None or record.suspended_at is None:
            return None
        return record.suspended_at + self.duration

    def is_expired(self, record: ThrottleRecord, now: datetime) -> bool:
        until = self.until(record)
        return record.suspended and until is not None and now >= until

    def evaluate(self, record: ThrottleRecord, now: datetime) -> Optional[GuardDecision]:
        if not record.suspended or self.is_expired(record, now):
            return None
        return Suspended(principal=record.principal, until=self.until(record))


class ThrottleCheckpoint:
    def __init__(self, free_attempts: int = 3, base_seconds: float = 1.0, cap_seconds: float = 900.0) -> None:
        self.free_attempts = free_attempts
        self.base_seconds = base_seconds
        self.cap_seconds = cap_seconds

    def delay_for(self, attempt_count: int) -> timedelta:
        return timedelta(
            seconds=backoff_delay(attempt_count, self.free_attempts, self.base_seconds, self.cap_seconds)
        )

    def evaluate(self, record: ThrottleRecord, now: datetime) -> Optional[GuardDecision]:
        delay = self.delay_for(record.attempt_count)
        if not delay or record.last_attempt_at is None:
            return None
        remaining = record.last_attempt_at + delay - now
        if remaining > timedelta(0):
            return Delay(principal=record.principal, retry_after=remaining)
        return None


class CheckpointChain:
    """Runs checkpoints in order and returns the first decision."""

    def __init__(self, checkpoints: Iterable[Checkpoint] | None = None) -> None:
        if checkpoints is None:
            checkpoints = (BanCheckpoint(), SuspensionCheckpoint(), ThrottleCheckpoint())
        self.checkpoints: tuple[Checkpoint, ...] = tuple(checkpoints)

    @classmethod
    def from_settings(cls, settings) -> "CheckpointChain":
        """Default chain configured from core.config.Settings."""
        duration = None if settings.suspension_is_indefinite else timedelta(seconds=settings.suspension_seconds)
        return cls(
            (
                BanCheckpoint(),
                SuspensionCheckpoint(duration=duration),
                ThrottleCheckpoint(
                    free_attempts=settings.throttle_free_attempts,
                    base_seconds=settings.throttle_backoff_base_seconds,
                    cap_seconds=settings.throttle_backoff_cap_seconds,
                ),
            )
        )

    def with_checkpoint(self, checkpoint: Checkpoint) -> "CheckpointChain":
        """Return a new chain with checkpoint appended after the existing ones."""
        return CheckpointChain(self.checkpoints + (checkpoint,))

    def suspension_checkpoint(self) -> SuspensionCheckpoint | None:
        for checkpoint in self.checkpoints:
            if isinstance(checkpoint, SuspensionCheckpoint):
                return checkpoint
        return None

    def evaluate(self, record: ThrottleRecord, now: datetime) -> GuardDecision:
        for checkpoint in self.checkpoints:
            decision = checkpoint.evaluate(record, now)
            if decision is not None:
                return decision
        return ALLOW
