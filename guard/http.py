"""
guard/http.py -- Translate guard decisions into FastAPI responses.

The guard has no routes of its own. A login handler resolves principals
from the request, asks AccessGuard for a decision, and uses
decision_response() to turn a refusal into a response:

    @router.post("/login")
    def login(request: Request, body: LoginRequest):
        guard: AccessGuard = request.app.state.access_guard
        user = users.get_by_email(body.email)
        principals = request_principals(request, user.id if user else None)
        outcome = guard.authenticate_or_fallback(principals, lambda: check_password(user, body.password))
        refused = decision_response(outcome.decision)
        if refused is not None:
            return refused
        ...

Status mapping:
  Delay      -> 429 Too Many Requests, Retry-After header
  Suspended  -> 403, code "account_suspended", until in ISO 8601 or null
  Banned     -> 403, code "account_banned"
  Allow      -> None (caller continues)

The affected principal rides along in the error body so the login page can
name the account, the way the suspended-user exception once carried it.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from guard.models import Allow, Banned, Delay, GuardDecision, Suspended, ip_principal, user_principal

logger = logging.getLogger("accessguard.http")


class GuardErrorDetail(BaseModel):
    """Machine-readable refusal payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    principal: Optional[str] = None
    until: Optional[str] = None
    retry_after: Optional[int] = None


class GuardErrorResponse(BaseModel):
    """Top-level error envelope, same shape as the rest of the API's 4xx bodies."""

    model_config = ConfigDict(frozen=True)

    error: GuardErrorDetail


def request_principals(request: Request, user_id: int | str | None = None) -> list[str]:
    """Principals to check for this request: the user (if known), then the client IP."""
    principals: list[str] = []
    if user_id is not None:
        principals.append(user_principal(user_id))
    host = request.client.host if request.client else ""
    if host:
        principals.append(ip_principal(host))
    return principals


def _respond(status_code: int, detail: GuardErrorDetail, headers: dict | None = None) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=GuardErrorResponse(error=detail).model_dump(),
        headers=headers,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def decision_response(decision: GuardDecision) -> JSONResponse | None:
    """Return the refusal response for decision, or None when it is Allow."""
    if isinstance(decision, Allow):
        return None
    if isinstance(decision, Banned):
        logger.info("Login refused for %s: banned", decision.principal)
        return _respond(
            403,
            GuardErrorDetail(
                code="account_banned",
                message="This account has been banned.",
                principal=decision.principal,
            ),
        )
    if isinstance(decision, Suspended):
        logger.info("Login refused for %s: suspended", decision.principal)
        return _respond(
            403,
            GuardErrorDetail(
                code="account_suspended",
                message="This account is suspended.",
                principal=decision.principal,
                until=decision.until.isoformat() if decision.until else None,
            ),
        )
    if isinstance(decision, Delay):
        seconds = decision.retry_after_seconds
        return _respond(
            429,
            GuardErrorDetail(
                code="too_many_attempts",
                message=f"Too many failed attempts. Try again in {seconds} seconds.",
                principal=decision.principal,
                retry_after=seconds,
            ),
            headers={"Retry-After": str(seconds)},
        )
    raise TypeError(f"Unknown guard decision: {decision!r}")
