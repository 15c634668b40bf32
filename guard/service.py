"""
guard/service.py -- AccessGuard: the one entry point a login handler talks to.

Flow for a login attempt:
  1. check(*principals)      -- read each record, run the checkpoint chain
  2. caller verifies credentials (the guard never compares passwords)
  3. record_success / record_failure on every principal
     (a failure that reaches SUSPENSION_THRESHOLD suspends the principal)

authenticate() bundles the three steps for callers that can hand over a
verifier callable.

Store outages raise StoreUnavailable out of check() and authenticate().
check_or_fallback() and authenticate_or_fallback() apply the configured
policy: fail-closed returns a short Delay, fail-open returns Allow and logs
a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import timedelta

from core.config import Settings, get_settings
from guard.checkpoints import CheckpointChain
from guard.errors import StoreUnavailable
from guard.models import (
    ALLOW,
    Allow,
    AttemptOutcome,
    Banned,
    Delay,
    GuardDecision,
    PrincipalState,
    Suspended,
    ThrottleRecord,
)
from guard.store import ThrottleStore

logger = logging.getLogger("accessguard.guard")


class AccessGuard:
    """Throttle, suspension and ban policy over a ThrottleStore.

    Usage:
        guard = AccessGuard(ThrottleStore())
        outcome = guard.authenticate(
            [user_principal(user.id), ip_principal(request.client.host)],
            lambda: verify_password(form.password, user.hashed_password),
        )
    """

    def __init__(
        self,
        store: ThrottleStore,
        settings: Settings | None = None,
        chain: CheckpointChain | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.chain = chain or CheckpointChain.from_settings(self.settings)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _load(self, principal: str) -> ThrottleRecord:
        """Fetch a record, lifting a time-bounded suspension that has run out."""
        record = self.store.get(principal)
        suspension = self.chain.suspension_checkpoint()
        if suspension is not None and not record.banned and suspension.is_expired(record, self.store.clock()):
            if self.store.unsuspend(principal):
                logger.info("Suspension expired for %s", principal)
            record = self.store.get(principal)
        return record

    def evaluate(self, principal: str) -> GuardDecision:
        return self.chain.evaluate(self._load(principal), self.store.clock())

    def check(self, *principals: str) -> GuardDecision:
        """Return the first non-Allow decision across principals, else Allow.

        Raises StoreUnavailable if any record cannot be read.
        """
        for principal in principals:
            decision = self.evaluate(principal)
            if not isinstance(decision, Allow):
                logger.debug("Access refused for %s: %s", principal, type(decision).__name__)
                return decision
        return ALLOW

    def check_or_fallback(self, *principals: str) -> GuardDecision:
        """check() with the configured STORE_FAILURE_POLICY applied to outages."""
        if not principals:
            return ALLOW
        try:
            return self.check(*principals)
        except StoreUnavailable as exc:
            return self._fallback(exc, principals)

    def _fallback(self, exc: StoreUnavailable, principals: Iterable[str]) -> GuardDecision:
        principals = list(principals)
        if self.settings.store_failure_policy == "open":
            logger.warning("Throttle store unavailable; allowing %s (fail-open)", principals)
            return ALLOW
        logger.warning("Throttle store unavailable; delaying %s (fail-closed)", principals)
        principal = exc.principal or principals[0]
        return Delay(principal=principal, retry_after=timedelta(seconds=self.settings.store_retry_seconds))

    def state(self, principal: str) -> PrincipalState:
        decision = self.evaluate(principal)
        if isinstance(decision, Banned):
            return PrincipalState.banned
        if isinstance(decision, Suspended):
            return PrincipalState.suspended
        if isinstance(decision, Delay):
            return PrincipalState.throttled
        return PrincipalState.clear

    # ------------------------------------------------------------------
    # Attempt outcomes
    # ------------------------------------------------------------------

    def record_failure(self, principal: str) -> ThrottleRecord:
        """Count a failed attempt; suspend once the threshold is reached."""
        # A lapsed suspension still flagged in the store would block the
        # conditional suspend below; lift it first.
        self._load(principal)
        record = self.store.record_failure(principal)
        if (
            record.attempt_count >= self.settings.suspension_threshold
            and not record.suspended
            and not record.banned
        ):
            if self.store.suspend(principal):
                logger.info(
                    "Suspended %s after %d failed attempts (threshold %d)",
                    principal,
                    record.attempt_count,
                    self.settings.suspension_threshold,
                )
            record = self.store.get(principal)
        return record

    def record_success(self, principal: str) -> None:
        self.store.record_success(principal)

    def authenticate(self, principals: Iterable[str], verify: Callable[[], bool]) -> AttemptOutcome:
        """Run one login attempt end to end.

        verify is only called when every principal is allowed. Refused
        attempts leave the store untouched, so a banned principal's counters
        never move. StoreUnavailable propagates.
        """
        principals = list(principals)
        decision = self.check(*principals)
        if not isinstance(decision, Allow):
            return AttemptOutcome(authenticated=False, decision=decision)

        if verify():
            for principal in principals:
                self.record_success(principal)
            return AttemptOutcome(authenticated=True, decision=ALLOW)

        for principal in principals:
            self.record_failure(principal)
        return AttemptOutcome(authenticated=False, decision=self.check(*principals))

    def authenticate_or_fallback(self, principals: Iterable[str], verify: Callable[[], bool]) -> AttemptOutcome:
        """authenticate() with the configured STORE_FAILURE_POLICY applied to outages.

        Fail-closed: the attempt is refused with a short Delay. Fail-open: the
        verifier decides alone and nothing is recorded. verify is called at
        most once even when the outage hits after it ran.
        """
        principals = list(principals)
        if not principals:
            return self.authenticate(principals, verify)
        verified: list[bool] = []

        def verify_once() -> bool:
            verified.append(bool(verify()))
            return verified[-1]

        try:
            return self.authenticate(principals, verify_once)
        except StoreUnavailable as exc:
            decision = self._fallback(exc, principals)
        if not isinstance(decision, Allow):
            return AttemptOutcome(authenticated=False, decision=decision)
        authenticated = verified[0] if verified else verify_once()
        return AttemptOutcome(authenticated=authenticated, decision=ALLOW)

    # ------------------------------------------------------------------
    # Administrative actions
    # ------------------------------------------------------------------

    def suspend(self, principal: str) -> None:
        self._load(principal)
        if self.store.suspend(principal):
            logger.info("Suspended %s (administrative)", principal)

    def unsuspend(self, principal: str) -> None:
        if self.store.unsuspend(principal):
            logger.info("Unsuspended %s (administrative)", principal)

    def ban(self, principal: str) -> None:
        if self.store.ban(principal):
            logger.info("Banned %s (administrative)", principal)

    def unban(self, principal: str) -> None:
        if self.store.unban(principal):
            logger.info("Unbanned %s (administrative)", principal)

    def reset(self, principal: str) -> None:
        self.store.reset(principal)
        logger.info("Reset throttle state for %s (administrative)", principal)
