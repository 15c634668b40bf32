"""
tests/test_http.py -- guard/http.py translation of decisions into responses.

A throwaway FastAPI app with one login route stands in for the embedding
application: it resolves principals from the request, runs
AccessGuard.authenticate_or_fallback() and returns decision_response() on refusal.
Going through TestClient checks status codes, headers and the JSON
envelope exactly as a browser would see them.
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy import create_engine

from conftest import T0
from guard.http import decision_response, request_principals
from guard.models import Allow, Banned, Delay, Suspended
from guard.service import AccessGuard
from guard.store import ThrottleStore

_PASSWORDS = {42: "correct horse"}


class _LoginBody(BaseModel):
    user_id: int
    password: str


def _make_app(guard: AccessGuard) -> FastAPI:
    app = FastAPI()

    @app.post("/login")
    def login(request: Request, body: _LoginBody):
        principals = request_principals(request, body.user_id)
        outcome = guard.authenticate_or_fallback(
            principals, lambda: _PASSWORDS.get(body.user_id) == body.password
        )
        refused = decision_response(outcome.decision)
        if refused is not None:
            return refused
        if not outcome.authenticated:
            return {"ok": False}
        return {"ok": True}

    return app


@pytest.fixture
def store(tmp_path, clock) -> Generator[ThrottleStore, None, None]:
    """File-backed store: TestClient runs sync routes in worker threads, and an
    in-memory SQLite database would be a different, empty one in each thread."""
    s = ThrottleStore(f"sqlite:///{tmp_path / 'http_throttle.db'}", clock=clock)
    yield s
    s.close()


@pytest.fixture
def client(guard: AccessGuard) -> Generator[TestClient, None, None]:
    with TestClient(_make_app(guard)) as c:
        yield c


class TestDecisionResponse:
    def test_allow_is_none(self) -> None:
        assert decision_response(Allow()) is None

    def test_delay(self) -> None:
        resp = decision_response(Delay("ip:1.2.3.4", retry_after=timedelta(seconds=4.2)))
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "5"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_suspended_carries_principal_and_until(self) -> None:
        resp = decision_response(Suspended("user:42", until=T0))
        assert resp.status_code == 403
        assert b'"account_suspended"' in resp.body
        assert b'"user:42"' in resp.body
        assert T0.isoformat().encode() in resp.body

    def test_banned(self) -> None:
        resp = decision_response(Banned("user:42"))
        assert resp.status_code == 403
        assert b'"account_banned"' in resp.body

    def test_unknown_decision_rejected(self) -> None:
        with pytest.raises(TypeError):
            decision_response("allow")  # type: ignore[arg-type]


class TestLoginRoute:
    def test_good_password(self, client: TestClient) -> None:
        resp = client.post("/login", json={"user_id": 42, "password": "correct horse"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_bad_password_below_threshold(self, client: TestClient) -> None:
        resp = client.post("/login", json={"user_id": 42, "password": "nope"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}

    def test_repeated_failures_throttle_then_suspend(self, client: TestClient, guard: AccessGuard, clock) -> None:
        for _ in range(3):
            client.post("/login", json={"user_id": 42, "password": "nope"})
        resp = client.post("/login", json={"user_id": 42, "password": "nope"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "too_many_attempts"
        assert resp.json()["error"]["principal"] == "user:42"

        clock.advance(120)
        resp = client.post("/login", json={"user_id": 42, "password": "nope"})
        assert resp.status_code == 403
        body = resp.json()["error"]
        assert body["code"] == "account_suspended"
        assert body["principal"] == "user:42"
        assert body["until"] is None

    def test_banned_user_with_correct_password(self, client: TestClient, guard: AccessGuard) -> None:
        guard.ban("user:42")
        resp = client.post("/login", json={"user_id": 42, "password": "correct horse"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_banned"

    def test_request_principals_include_client_ip(self, client: TestClient, guard: AccessGuard) -> None:
        client.post("/login", json={"user_id": 42, "password": "nope"})
        # TestClient reports its client host as "testclient".
        assert guard.store.get("ip:testclient").attempt_count == 1

    def test_store_outage_fails_closed(self, client: TestClient, guard: AccessGuard, tmp_path) -> None:
        guard.store.engine = create_engine(f"sqlite:///{tmp_path / 'missing-dir' / 'throttle.db'}")
        resp = client.post("/login", json={"user_id": 42, "password": "correct horse"})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "5"
        assert resp.json()["error"]["principal"] == "user:42"
