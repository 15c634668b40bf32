"""
guard/store.py -- SQLAlchemy Core persistence for per-principal throttle state.

Pattern: Repository + Data Mapper. ThrottleStore is the repository;
_row_to_record is the mapper. Checkpoints and request handlers never touch
SQL directly, so every mutation path for throttle state lives in this file.

Atomicity:
  Counter changes are a single UPDATE ... SET attempt_count = attempt_count + 1
  executed inside a transaction, followed by a SELECT in the same transaction.
  Two concurrent failures against the same principal therefore produce 5 and
  6, never 5 and 5. No lock spans more than one principal.

  Rows are created lazily. _ensure_row() checks and inserts in separate
  transactions so SQLite never has to upgrade a read snapshot to a write
  lock; a concurrent insert of the same principal surfaces as IntegrityError
  on the UNIQUE(principal) constraint, which means the row now exists.

Failures:
  OperationalError / InterfaceError (database unreachable, locked past the
  busy timeout, disk gone) are re-raised as StoreUnavailable. They are never
  swallowed: a throttle that fails open is not a throttle.

Schema migration notes:
  suspended, banned, suspended_at, banned_at were added to an existing
  throttle table after the fact. _migrate_throttle_table() adds any that are
  missing so older databases are upgraded on first startup.

Security:
  All queries use bound parameters. No f-strings in SQL except the ALTER
  TABLE column names, which are module constants.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, inspect, or_, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from core.config import get_settings
from guard.errors import StoreUnavailable
from guard.models import ThrottleRecord, validate_principal

logger = logging.getLogger("accessguard.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_throttle = Table(
    "throttle",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal", String(255), nullable=False, unique=True),  # "user:<id>" | "ip:<addr>"
    Column("attempt_count", Integer, nullable=False, server_default="0"),
    Column("last_attempt_at", String(32)),  # ISO 8601
    Column("suspended", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("suspended_at", String(32)),
    Column("banned", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("banned_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# Columns added to pre-existing throttle tables. Names are constants.
_LATE_COLUMNS = [
    ("suspended", "INTEGER NOT NULL DEFAULT 0"),
    ("banned", "INTEGER NOT NULL DEFAULT 0"),
    ("suspended_at", "VARCHAR(32)"),
    ("banned_at", "VARCHAR(32)"),
]


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def _migrate_throttle_table(conn: Connection) -> None:
    """Add the suspension and ban columns to an existing throttle table.

    metadata.create_all() only creates missing tables -- it does not add
    columns to existing ones. The inspector works on SQLite and PostgreSQL
    alike, so no PRAGMA is needed to list current columns.
    """
    existing = {col["name"] for col in inspect(conn).get_columns("throttle")}
    for col, typ in _LATE_COLUMNS:
        if col not in existing:
            conn.execute(text(f"ALTER TABLE throttle ADD COLUMN {col} {typ}"))  # nosemgrep
            logger.info("Added column throttle.%s", col)
    conn.commit()


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a login write.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ThrottleStore:
    """Repository for ThrottleRecord rows.

    Usage:
        store = ThrottleStore()                               # SQLite default
        store = ThrottleStore("postgresql://user:pw@host/db") # PostgreSQL
        record = store.record_failure("user:42")
        store.suspend("user:42")
        store.close()

    clock is injectable so tests can move time without sleeping. It must
    return timezone-aware UTC datetimes.
    """

    def __init__(self, db_url: str | None = None, clock: Callable[[], datetime] | None = None) -> None:
        db_url = db_url or get_settings().throttle_db_url
        self.clock: Callable[[], datetime] = clock or _utcnow
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Login requests are served from a thread pool; one connection may
            # be handed to several threads over its lifetime.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
            with self.engine.connect() as conn:
                _migrate_throttle_table(conn)
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Throttle store unavailable at startup: %s", exc)
            raise StoreUnavailable("Throttle store could not be initialised") from exc

    @contextmanager
    def _transaction(self, principal: str | None = None) -> Iterator[Connection]:
        """Yield a connection inside BEGIN/COMMIT, mapping outages to StoreUnavailable."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Throttle store unavailable (principal=%s): %s", principal, exc)
            raise StoreUnavailable("Throttle store unavailable", principal=principal) from exc

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    def _fetch(self, conn: Connection, principal: str):
        return conn.execute(_throttle.select().where(_throttle.c.principal == principal)).fetchone()

    def _ensure_row(self, principal: str, now: str) -> None:
        """Insert a zero-valued row for principal if none exists yet."""
        with self._transaction(principal) as conn:
            exists = conn.execute(select(_throttle.c.id).where(_throttle.c.principal == principal)).first()
        if exists is not None:
            return
        try:
            with self._transaction(principal) as conn:
                conn.execute(_throttle.insert().values(principal=principal, created_at=now, updated_at=now))
            logger.debug("Created throttle record for %s", principal)
        except IntegrityError:
            # UNIQUE(principal): a concurrent attempt inserted the row first.
            logger.debug("Throttle record for %s created concurrently", principal)

    def _mutate(self, principal: str, values: dict, *conditions, create: bool = False) -> tuple[bool, ThrottleRecord]:
        """Apply one UPDATE to principal's row and read it back atomically.

        conditions narrow the UPDATE (e.g. only when not yet suspended) so
        transitions are decided by the database, not by a stale read.
        Returns (changed, record); record is zero-valued if no row exists.
        """
        principal = validate_principal(principal)
        now = self._now_iso()
        if create:
            self._ensure_row(principal, now)
        stmt = (
            _throttle.update()
            .where(_throttle.c.principal == principal, *conditions)
            .values(updated_at=now, **values)
        )
        with self._transaction(principal) as conn:
            changed = conn.execute(stmt).rowcount > 0
            row = self._fetch(conn, principal)
        record = _row_to_record(row) if row is not None else ThrottleRecord(principal=principal)
        return changed, record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, principal: str) -> ThrottleRecord:
        """Return principal's record, or an unsaved zero-valued one. Never writes."""
        principal = validate_principal(principal)
        with self._transaction(principal) as conn:
            row = self._fetch(conn, principal)
        return _row_to_record(row) if row is not None else ThrottleRecord(principal=principal)

    def list_restricted(self) -> list[ThrottleRecord]:
        """Return every suspended or banned record ordered by principal (audit view)."""
        with self._transaction() as conn:
            rows = conn.execute(
                _throttle.select()
                .where(or_(_throttle.c.suspended == 1, _throttle.c.banned == 1))
                .order_by(_throttle.c.principal)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Attempt outcomes
    # ------------------------------------------------------------------

    def record_failure(self, principal: str) -> ThrottleRecord:
        """Increment attempt_count, stamp last_attempt_at, return the updated record."""
        _, record = self._mutate(
            principal,
            {"attempt_count": _throttle.c.attempt_count + 1, "last_attempt_at": self._now_iso()},
            create=True,
        )
        logger.debug("Failure recorded for %s (attempt_count=%d)", record.principal, record.attempt_count)
        return record

    def record_success(self, principal: str) -> None:
        """Reset attempt_count to 0. Suspension and ban flags are left untouched."""
        self._mutate(principal, {"attempt_count": 0})

    # ------------------------------------------------------------------
    # Suspension / ban
    # ------------------------------------------------------------------

    def suspend(self, principal: str) -> bool:
        """Suspend principal. Returns True if it was not already suspended.

        suspended_at is only written on the false -> true transition, so
        repeated calls do not extend a time-bounded suspension.
        """
        changed, _ = self._mutate(
            principal,
            {"suspended": 1, "suspended_at": self._now_iso()},
            _throttle.c.suspended == 0,
            create=True,
        )
        return changed

    def unsuspend(self, principal: str) -> bool:
        """Lift a suspension and clear the failure count. Returns True if one was lifted."""
        changed, _ = self._mutate(
            principal,
            {"suspended": 0, "suspended_at": None, "attempt_count": 0},
            _throttle.c.suspended == 1,
        )
        return changed

    def ban(self, principal: str) -> bool:
        """Ban principal. Returns True if it was not already banned (banned_at is kept)."""
        changed, _ = self._mutate(
            principal,
            {"banned": 1, "banned_at": self._now_iso()},
            _throttle.c.banned == 0,
            create=True,
        )
        return changed

    def unban(self, principal: str) -> bool:
        """Lift a ban and clear the failure count. Returns True if one was lifted."""
        changed, _ = self._mutate(
            principal,
            {"banned": 0, "banned_at": None, "attempt_count": 0},
            _throttle.c.banned == 1,
        )
        return changed

    def reset(self, principal: str) -> None:
        """Return principal to a clean slate. The row is kept for audit."""
        self._mutate(
            principal,
            {
                "attempt_count": 0,
                "last_attempt_at": None,
                "suspended": 0,
                "suspended_at": None,
                "banned": 0,
                "banned_at": None,
            },
        )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> ThrottleRecord:
    return ThrottleRecord(
        id=row.id,
        principal=row.principal,
        attempt_count=row.attempt_count or 0,
        last_attempt_at=_parse_ts(row.last_attempt_at),
        suspended=bool(row.suspended),
        suspended_at=_parse_ts(row.suspended_at),
        banned=bool(row.banned),
        banned_at=_parse_ts(row.banned_at),
    )
