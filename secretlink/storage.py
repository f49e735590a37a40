# FILE: secretlink/storage.py
"""
Consumption ledger for secret links.

The ledger is the only holder of mutable state: how many redemptions remain
for a token id (jti) and until when. Two record families exist, and a jti
lives in at most one of them:

  - single-use : {jti, expires_at}                  existence == one use left
  - multi-use  : {jti, uses_remaining > 0, expires_at}

Operations:

  - create              : insert into the right family; a missing expiry is
                          replaced by the configured TTL ceiling
  - consume_single_use  : one conditional delete (exists AND unexpired)
  - consume_multi_use   : decrement-or-deny in one transaction; the row is
                          deleted in the same transaction when it hits zero
  - sweep               : delete every record with expires_at <= now

Backends:

  - InMemoryLinkLedger  : dicts behind a lock; tests and single-process dev.
  - SQLiteLinkLedger    : one connection per operation, WAL mode, every
                          mutation inside BEGIN IMMEDIATE so the database
                          write lock serializes consumers across threads and
                          processes. busy_timeout bounds the wait.

Storage driver failures surface as LedgerUnavailable and are not retried
here; retry policy belongs to the caller or the sweeper.

A record whose expires_at equals the consumption instant is treated as
expired.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Tuple

from prometheus_client import Counter, Histogram

from .crypto import ConfigError
from .tokens import to_utc

logger = logging.getLogger(__name__)

_CONSUME = Counter(
    "secretlink_ledger_consume_total",
    "Ledger consumption attempts",
    ["kind", "outcome"],
)
_SWEPT = Counter(
    "secretlink_ledger_swept_total",
    "Expired ledger records removed by sweeps",
)
_TX_LAT = Histogram(
    "secretlink_ledger_tx_latency_seconds",
    "Ledger transaction latency (seconds)",
    buckets=(0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.2, 0.5, 1.0),
)


# ------------------------------
# Errors
# ------------------------------


class LedgerError(Exception):
    """Base class for ledger failures that are not ordinary denials."""


class LedgerUnavailable(LedgerError):
    """The storage layer failed or timed out; the caller may retry."""


class DuplicateLinkError(LedgerError):
    """A record already exists for this jti (issuer bug, not a denial)."""


# ------------------------------
# Helpers
# ------------------------------


def _to_ts(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    return to_utc(dt).timestamp()


def _from_ts(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def _live(expires_ts: Optional[float], now_ts: float) -> bool:
    return expires_ts is None or expires_ts > now_ts


@dataclass(frozen=True)
class LedgerRecord:
    """Read-only view of a ledger row, used by diagnostics and tests."""

    jti: str
    kind: str  # "single" | "multi"
    uses_remaining: int
    expires_at: Optional[datetime]


# ------------------------------
# Abstract interface
# ------------------------------


class LinkLedger(ABC):
    """
    Authoritative store of remaining redemption rights.

    Parameters
    ----------
    max_ttl_s:
        Ceiling applied by create() when no expiry is supplied. None leaves
        such records without an expiry (they are then never swept).
    clock:
        Returns the current UNIX time; injectable for tests.
    """

    backend = "abstract"

    def __init__(
        self,
        *,
        max_ttl_s: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_ttl_s is not None and max_ttl_s <= 0:
            raise ConfigError("max_ttl_s must be positive")
        self._max_ttl_s = max_ttl_s
        self._clock = clock or time.time

    def _now_ts(self, now: Optional[datetime]) -> float:
        if now is None:
            return float(self._clock())
        return to_utc(now).timestamp()

    def create(
        self,
        jti: str,
        uses_allowed: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """
        Insert a single-use record when uses_allowed <= 1, else a multi-use
        record with uses_remaining = uses_allowed.
        """
        expires_ts = _to_ts(expires_at)
        if expires_ts is None and self._max_ttl_s is not None:
            expires_ts = float(self._clock()) + self._max_ttl_s
        if uses_allowed <= 1:
            self.insert_single(jti, expires_ts)
        else:
            self.insert_multi(jti, int(uses_allowed), expires_ts)
        logger.debug("ledger record created", extra={"kind": "single" if uses_allowed <= 1 else "multi"})

    @abstractmethod
    def insert_single(self, jti: str, expires_ts: Optional[float]) -> None:
        """Insert a single-use record; DuplicateLinkError if jti exists."""

    @abstractmethod
    def insert_multi(self, jti: str, count: int, expires_ts: Optional[float]) -> None:
        """Insert a multi-use record; DuplicateLinkError if jti exists."""

    @abstractmethod
    def consume_single_use(self, jti: str, *, now: Optional[datetime] = None) -> bool:
        """
        Atomically delete the single-use record if it exists and is not
        expired. Returns whether a record was removed.
        """

    @abstractmethod
    def consume_multi_use(self, jti: str, *, now: Optional[datetime] = None) -> Optional[int]:
        """
        Atomically decrement uses_remaining of a live multi-use record.

        Returns the count left after the decrement (0 on the last use, when
        the record is already gone), or None when nothing matched.
        """

    @abstractmethod
    def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete all records with a non-null expires_at <= now; return count."""

    @abstractmethod
    def peek(self, jti: str) -> Optional[LedgerRecord]:
        """Return the raw record for jti (expired or not), or None."""

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ------------------------------
# In-memory implementation
# ------------------------------


class InMemoryLinkLedger(LinkLedger):
    """
    Thread-safe in-process ledger.

    Mutual exclusion comes from a process-local lock, so this backend is only
    correct for a single process. Use SQLiteLinkLedger (or another
    transactional store) when the service is replicated.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        max_ttl_s: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__(max_ttl_s=max_ttl_s, clock=clock)
        self._single: Dict[str, Optional[float]] = {}
        # jti -> (uses_remaining, expires_ts)
        self._multi: Dict[str, Tuple[int, Optional[float]]] = {}
        self._g = threading.RLock()

    def _check_absent(self, jti: str) -> None:
        if jti in self._single or jti in self._multi:
            raise DuplicateLinkError(f"ledger record already exists for {jti}")

    def insert_single(self, jti: str, expires_ts: Optional[float]) -> None:
        with self._g:
            self._check_absent(jti)
            self._single[jti] = expires_ts

    def insert_multi(self, jti: str, count: int, expires_ts: Optional[float]) -> None:
        if count <= 0:
            raise ValueError("count must be positive")
        with self._g:
            self._check_absent(jti)
            self._multi[jti] = (int(count), expires_ts)

    def consume_single_use(self, jti: str, *, now: Optional[datetime] = None) -> bool:
        now_ts = self._now_ts(now)
        with self._g:
            if jti in self._single and _live(self._single[jti], now_ts):
                del self._single[jti]
                ok = True
            else:
                ok = False
        _CONSUME.labels("single", "ok" if ok else "denied").inc()
        return ok

    def consume_multi_use(self, jti: str, *, now: Optional[datetime] = None) -> Optional[int]:
        now_ts = self._now_ts(now)
        with self._g:
            rec = self._multi.get(jti)
            if rec is None or rec[0] <= 0 or not _live(rec[1], now_ts):
                _CONSUME.labels("multi", "denied").inc()
                return None
            remaining = rec[0] - 1
            if remaining == 0:
                del self._multi[jti]
            else:
                self._multi[jti] = (remaining, rec[1])
        _CONSUME.labels("multi", "ok").inc()
        return remaining

    def sweep(self, now: Optional[datetime] = None) -> int:
        now_ts = self._now_ts(now)
        with self._g:
            dead_single = [k for k, exp in self._single.items() if exp is not None and exp <= now_ts]
            dead_multi = [k for k, (_, exp) in self._multi.items() if exp is not None and exp <= now_ts]
            for k in dead_single:
                del self._single[k]
            for k in dead_multi:
                del self._multi[k]
        n = len(dead_single) + len(dead_multi)
        _SWEPT.inc(n)
        return n

    def peek(self, jti: str) -> Optional[LedgerRecord]:
        with self._g:
            if jti in self._single:
                return LedgerRecord(jti, "single", 1, _from_ts(self._single[jti]))
            rec = self._multi.get(jti)
            if rec is not None:
                return LedgerRecord(jti, "multi", rec[0], _from_ts(rec[1]))
        return None


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS single_use_links (
  jti        TEXT PRIMARY KEY,
  expires_at REAL
);

CREATE TABLE IF NOT EXISTS multi_use_links (
  jti            TEXT PRIMARY KEY,
  uses_remaining INTEGER NOT NULL CHECK (uses_remaining >= 0),
  expires_at     REAL
);

CREATE INDEX IF NOT EXISTS idx_single_use_expires ON single_use_links(expires_at);
CREATE INDEX IF NOT EXISTS idx_multi_use_expires ON multi_use_links(expires_at);
"""


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK;")
    except sqlite3.Error:
        logger.warning("ledger rollback failed", exc_info=True)


class _SQLite:
    """
    Connection & transaction plumbing.

    Characteristics:
      - a fresh connection per operation, closed when the operation ends;
      - IMMEDIATE transactions take the database write lock up front, so
        concurrent decrements are serialized by SQLite itself;
      - timeout_s bounds how long an operation waits for that lock before
        failing with LedgerUnavailable.
    """

    def __init__(self, path: str, *, timeout_s: float = 5.0) -> None:
        if not path or path in (":memory:", ":mem:"):
            raise ConfigError("SQLite ledger needs a file path; use mem:// for an in-process ledger")
        self._path = path
        self._timeout_s = max(0.001, float(timeout_s))
        with self._connection() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.executescript(_SQL_SCHEMA)
            except sqlite3.Error as exc:
                raise LedgerUnavailable(f"cannot initialize ledger schema: {exc}") from exc

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._timeout_s,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(self._timeout_s * 1000)};")
        except sqlite3.Error as exc:
            raise LedgerUnavailable(f"cannot open ledger: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        """
        IMMEDIATE transaction on a dedicated connection.

        Usage:
            with db.tx() as conn:
                conn.execute(...)

        Anything raised before COMMIT rolls back, including cancellation
        (KeyboardInterrupt, SystemExit). Once COMMIT returns the effect is
        permanent.
        """
        t0 = time.perf_counter()
        with self._connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise LedgerUnavailable(f"cannot begin ledger transaction: {exc}") from exc
            try:
                yield conn
            except sqlite3.IntegrityError:
                _rollback(conn)
                raise
            except sqlite3.Error as exc:
                _rollback(conn)
                raise LedgerUnavailable(f"ledger transaction failed: {exc}") from exc
            except BaseException:
                _rollback(conn)
                raise
            try:
                conn.execute("COMMIT;")
            except sqlite3.Error as exc:
                _rollback(conn)
                raise LedgerUnavailable(f"ledger commit failed: {exc}") from exc
            finally:
                _TX_LAT.observe(max(0.0, time.perf_counter() - t0))

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            try:
                yield conn
            except sqlite3.Error as exc:
                raise LedgerUnavailable(f"ledger read failed: {exc}") from exc


class SQLiteLinkLedger(LinkLedger):
    """
    SQLite-backed implementation of LinkLedger.

    - single_use_links(jti PK, expires_at)
    - multi_use_links(jti PK, uses_remaining, expires_at)

    expires_at is stored as UNIX seconds (REAL); NULL means no expiry.
    """

    backend = "sqlite"

    def __init__(
        self,
        path: str = "secretlink.db",
        *,
        max_ttl_s: Optional[float] = None,
        tx_timeout_s: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__(max_ttl_s=max_ttl_s, clock=clock)
        self._db = _SQLite(path, timeout_s=tx_timeout_s)

    def _insert(self, sql: str, params: Tuple, jti: str) -> None:
        try:
            with self._db.tx() as conn:
                row = conn.execute(
                    "SELECT 1 FROM single_use_links WHERE jti=? "
                    "UNION ALL SELECT 1 FROM multi_use_links WHERE jti=?",
                    (jti, jti),
                ).fetchone()
                if row:
                    raise DuplicateLinkError(f"ledger record already exists for {jti}")
                conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            raise DuplicateLinkError(f"ledger record already exists for {jti}") from exc

    def insert_single(self, jti: str, expires_ts: Optional[float]) -> None:
        self._insert(
            "INSERT INTO single_use_links(jti, expires_at) VALUES(?, ?)",
            (jti, expires_ts),
            jti,
        )

    def insert_multi(self, jti: str, count: int, expires_ts: Optional[float]) -> None:
        if count <= 0:
            raise ValueError("count must be positive")
        self._insert(
            "INSERT INTO multi_use_links(jti, uses_remaining, expires_at) VALUES(?, ?, ?)",
            (jti, int(count), expires_ts),
            jti,
        )

    def consume_single_use(self, jti: str, *, now: Optional[datetime] = None) -> bool:
        now_ts = self._now_ts(now)
        with self._db.tx() as conn:
            cur = conn.execute(
                "DELETE FROM single_use_links "
                "WHERE jti=? AND (expires_at IS NULL OR expires_at > ?)",
                (jti, now_ts),
            )
            ok = cur.rowcount > 0
        _CONSUME.labels("single", "ok" if ok else "denied").inc()
        return ok

    def consume_multi_use(self, jti: str, *, now: Optional[datetime] = None) -> Optional[int]:
        now_ts = self._now_ts(now)
        with self._db.tx() as conn:
            cur = conn.execute(
                "UPDATE multi_use_links SET uses_remaining = uses_remaining - 1 "
                "WHERE jti=? AND uses_remaining > 0 "
                "AND (expires_at IS NULL OR expires_at > ?)",
                (jti, now_ts),
            )
            if cur.rowcount == 0:
                # Nothing written; the empty transaction commits as a no-op.
                remaining = None
            else:
                row = conn.execute(
                    "SELECT uses_remaining FROM multi_use_links WHERE jti=?",
                    (jti,),
                ).fetchone()
                remaining = int(row["uses_remaining"])
                if remaining == 0:
                    conn.execute(
                        "DELETE FROM multi_use_links WHERE jti=? AND uses_remaining=0",
                        (jti,),
                    )
        _CONSUME.labels("multi", "denied" if remaining is None else "ok").inc()
        return remaining

    def sweep(self, now: Optional[datetime] = None) -> int:
        now_ts = self._now_ts(now)
        with self._db.tx() as conn:
            n = conn.execute(
                "DELETE FROM single_use_links WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now_ts,),
            ).rowcount
            n += conn.execute(
                "DELETE FROM multi_use_links WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now_ts,),
            ).rowcount
        _SWEPT.inc(n)
        return n

    def peek(self, jti: str) -> Optional[LedgerRecord]:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT expires_at FROM single_use_links WHERE jti=?", (jti,)
            ).fetchone()
            if row:
                return LedgerRecord(jti, "single", 1, _from_ts(row["expires_at"]))
            row = conn.execute(
                "SELECT uses_remaining, expires_at FROM multi_use_links WHERE jti=?", (jti,)
            ).fetchone()
            if row:
                return LedgerRecord(
                    jti, "multi", int(row["uses_remaining"]), _from_ts(row["expires_at"])
                )
        return None

    def ping(self) -> bool:
        with self._db.read() as conn:
            conn.execute("SELECT 1").fetchone()
        return True


# ------------------------------
# Factory
# ------------------------------


def make_ledger(
    dsn: Optional[str],
    *,
    max_ttl_s: Optional[float] = None,
    tx_timeout_s: float = 5.0,
    clock: Optional[Callable[[], float]] = None,
) -> LinkLedger:
    """
    Factory for LinkLedger backends.

    Accepted DSNs:
      - None, "" or "mem://"          -> InMemoryLinkLedger
      - "sqlite:///path/to/links.db"  -> SQLiteLinkLedger(path="path/to/links.db")

    Anything else raises ConfigError.
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryLinkLedger(max_ttl_s=max_ttl_s, clock=clock)
    dsn = dsn.strip()
    if dsn.lower().startswith("sqlite:///"):
        path = dsn[len("sqlite:///"):]
        return SQLiteLinkLedger(
            path=path,
            max_ttl_s=max_ttl_s,
            tx_timeout_s=tx_timeout_s,
            clock=clock,
        )
    raise ConfigError(f"Unsupported ledger dsn: {dsn}")
