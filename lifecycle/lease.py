"""
Ephemera — Per-Environment Mutation Leases

A lease grants one worker the exclusive right to mutate one
environment for a bounded time. It carries a random token, so a holder
whose lease expired and was taken over cannot renew or release the new
holder's lease.

Backends:
  memory — single process (dev/test)
  sqlite — processes sharing one database file
  redis  — multi-host; SET NX PX plus compare-and-set scripts
"""

from __future__ import annotations

import abc
import logging
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from lifecycle.errors import LeaseLostError

logger = logging.getLogger("ephemera.lease")


@dataclass(frozen=True)
class Lease:
    environment_id: str
    owner: str
    token: str
    expires_at: float

    def remaining(self, now: float | None = None) -> float:
        return self.expires_at - (now if now is not None else time.time())


def _new_token() -> str:
    return uuid.uuid4().hex


class LeaseManager(abc.ABC):
    """Abstract lease manager."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    @abc.abstractmethod
    def acquire(self, environment_id: str, owner: str, ttl: float) -> Lease | None:
        """Take the lease if nobody holds an unexpired one. None when held."""
        ...

    @abc.abstractmethod
    def renew(self, lease: Lease, ttl: float) -> Lease:
        """Extend a held lease. Raises LeaseLostError if it was lost."""
        ...

    @abc.abstractmethod
    def release(self, lease: Lease) -> bool:
        """Give the lease up. False if it had already been lost."""
        ...

    @abc.abstractmethod
    def holder(self, environment_id: str) -> str | None:
        """Owner of the unexpired lease, if any."""
        ...

    def close(self) -> None:
        pass


# ─── In-Memory ───────────────────────────────────────────────────────

class InMemoryLeaseManager(LeaseManager):

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._leases: dict[str, Lease] = {}
        self._lock = threading.Lock()

    def acquire(self, environment_id: str, owner: str, ttl: float) -> Lease | None:
        now = self.clock()
        with self._lock:
            current = self._leases.get(environment_id)
            if current is not None and current.expires_at > now:
                return None
            lease = Lease(environment_id, owner, _new_token(), now + ttl)
            self._leases[environment_id] = lease
            return lease

    def renew(self, lease: Lease, ttl: float) -> Lease:
        now = self.clock()
        with self._lock:
            current = self._leases.get(lease.environment_id)
            if current is None or current.token != lease.token or current.expires_at <= now:
                raise LeaseLostError(lease.environment_id, lease.owner)
            renewed = Lease(lease.environment_id, lease.owner, lease.token, now + ttl)
            self._leases[lease.environment_id] = renewed
            return renewed

    def release(self, lease: Lease) -> bool:
        with self._lock:
            current = self._leases.get(lease.environment_id)
            if current is None or current.token != lease.token:
                return False
            del self._leases[lease.environment_id]
            return True

    def holder(self, environment_id: str) -> str | None:
        with self._lock:
            current = self._leases.get(environment_id)
            if current is None or current.expires_at <= self.clock():
                return None
            return current.owner


# ─── SQLite ──────────────────────────────────────────────────────────

class SQLiteLeaseManager(LeaseManager):
    """Leases in a SQLite table; BEGIN IMMEDIATE makes each check-and-set atomic."""

    def __init__(self, db_path: str | Path = "ephemera.db",
                 clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False,
                                    isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.Lock()
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS leases (
                environment_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                token TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)

    def _locked(self, fn: Callable[[], Any]) -> Any:
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn()
            except Exception:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")
            return result

    def _row(self, environment_id: str):
        return self.conn.execute(
            "SELECT * FROM leases WHERE environment_id = ?", (environment_id,)
        ).fetchone()

    def acquire(self, environment_id: str, owner: str, ttl: float) -> Lease | None:
        now = self.clock()

        def _op():
            row = self._row(environment_id)
            if row is not None and row["expires_at"] > now:
                return None
            lease = Lease(environment_id, owner, _new_token(), now + ttl)
            self.conn.execute(
                "INSERT OR REPLACE INTO leases (environment_id, owner, token, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (lease.environment_id, lease.owner, lease.token, lease.expires_at),
            )
            return lease

        return self._locked(_op)

    def renew(self, lease: Lease, ttl: float) -> Lease:
        now = self.clock()

        def _op():
            cur = self.conn.execute(
                "UPDATE leases SET expires_at = ? "
                "WHERE environment_id = ? AND token = ? AND expires_at > ?",
                (now + ttl, lease.environment_id, lease.token, now),
            )
            if cur.rowcount != 1:
                raise LeaseLostError(lease.environment_id, lease.owner)
            return Lease(lease.environment_id, lease.owner, lease.token, now + ttl)

        return self._locked(_op)

    def release(self, lease: Lease) -> bool:
        def _op():
            cur = self.conn.execute(
                "DELETE FROM leases WHERE environment_id = ? AND token = ?",
                (lease.environment_id, lease.token),
            )
            return cur.rowcount == 1

        return self._locked(_op)

    def holder(self, environment_id: str) -> str | None:
        with self._lock:
            row = self._row(environment_id)
        if row is None or row["expires_at"] <= self.clock():
            return None
        return row["owner"]

    def close(self):
        with self._lock:
            self.conn.close()


# ─── Redis ───────────────────────────────────────────────────────────

_RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLeaseManager(LeaseManager):
    """
    Leases as Redis keys holding "owner|token" with a millisecond TTL.

    Expiry is enforced by Redis, so `clock` only stamps expires_at on
    the returned Lease.
    """

    KEY_PREFIX = "ephemera:lease:"

    def __init__(
        self,
        client: Any = None,
        url: str = "redis://localhost:6379/0",
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        if client is None:
            import redis
            client = redis.Redis.from_url(url, decode_responses=True)
        self.client = client

    def _key(self, environment_id: str) -> str:
        return f"{self.KEY_PREFIX}{environment_id}"

    @staticmethod
    def _value(owner: str, token: str) -> str:
        return f"{owner}|{token}"

    def acquire(self, environment_id: str, owner: str, ttl: float) -> Lease | None:
        token = _new_token()
        ok = self.client.set(
            self._key(environment_id),
            self._value(owner, token),
            nx=True,
            px=int(ttl * 1000),
        )
        if not ok:
            return None
        return Lease(environment_id, owner, token, self.clock() + ttl)

    def renew(self, lease: Lease, ttl: float) -> Lease:
        ok = self.client.eval(
            _RENEW_SCRIPT, 1, self._key(lease.environment_id),
            self._value(lease.owner, lease.token), int(ttl * 1000),
        )
        if not ok:
            raise LeaseLostError(lease.environment_id, lease.owner)
        return Lease(lease.environment_id, lease.owner, lease.token, self.clock() + ttl)

    def release(self, lease: Lease) -> bool:
        removed = self.client.eval(
            _RELEASE_SCRIPT, 1, self._key(lease.environment_id),
            self._value(lease.owner, lease.token),
        )
        return bool(removed)

    def holder(self, environment_id: str) -> str | None:
        raw = self.client.get(self._key(environment_id))
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return raw.split("|", 1)[0]

    def close(self):
        close = getattr(self.client, "close", None)
        if close is not None:
            close()


def create_lease_manager(config: dict[str, Any] | None = None) -> LeaseManager:
    """Build the lease manager named by `lease.backend`."""
    cfg = config or {}
    lease_cfg = cfg.get("lease") or {}
    backend = lease_cfg.get("backend", "sqlite")
    if backend == "memory":
        return InMemoryLeaseManager()
    if backend == "sqlite":
        path = lease_cfg.get("path") or (cfg.get("registry") or {}).get("path", "ephemera.db")
        return SQLiteLeaseManager(path)
    if backend == "redis":
        logger.info("Lease backend: redis (%s)", lease_cfg.get("redis_url"))
        return RedisLeaseManager(url=lease_cfg.get("redis_url", "redis://localhost:6379/0"))
    raise ValueError(f"Unknown lease backend: {backend}")
