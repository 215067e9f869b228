"""
Ephemera — Environment Registry

Durable store of per-environment records keyed by environment id,
with optimistic concurrency on every write and an append-only history
of persisted changes for audit.

  InMemoryRegistry: dev/test, same process
  SQLiteRegistry:   single-file SQLite, survives restarts

Contract:
    get(id)                              → Environment | None
    put(record, expected_generation)     → Environment   (StaleGenerationError)
    list(states=..., closed=...)         → [Environment]
    delete_soft(id, expected_generation) → Environment   (state = Deleted)
    history(id)                          → [dict]

`expected_generation` is the generation the writer read; None means
"no record exists yet". The stored record must still be at that
generation and the new record must carry a strictly higher one.
"""

from __future__ import annotations

import abc
import copy
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Iterable

from lifecycle.errors import InvariantViolation, StaleGenerationError
from lifecycle.types import (
    Environment,
    EnvironmentState,
    ErrorRecord,
    ResourceSet,
)


def _check_write(
    current: Environment | None,
    record: Environment,
    expected_generation: int | None,
) -> None:
    """Shared precondition checks for put()."""
    actual = current.generation if current else None
    if expected_generation != actual:
        raise StaleGenerationError(record.id, expected_generation, actual or 0)
    if actual is not None and record.generation <= actual:
        raise InvariantViolation(
            f"Environment {record.id}: generation must increase "
            f"({actual} → {record.generation})"
        )
    if record.state == EnvironmentState.DELETED and not record.resources.is_empty():
        raise InvariantViolation(
            f"Environment {record.id}: cannot mark deleted while resources remain: "
            f"{record.resources.summary()}"
        )


# ─── Abstract Registry ───────────────────────────────────────────────

class EnvironmentRegistry(abc.ABC):
    """Abstract environment registry. Implementations handle storage."""

    @abc.abstractmethod
    def get(self, environment_id: str) -> Environment | None:
        ...

    @abc.abstractmethod
    def put(self, record: Environment, expected_generation: int | None) -> Environment:
        """Optimistic write. Raises StaleGenerationError on a stale expectation."""
        ...

    @abc.abstractmethod
    def list(
        self,
        states: Iterable[EnvironmentState] | None = None,
        closed: bool | None = None,
        include_deleted: bool = False,
        limit: int = 1000,
    ) -> list[Environment]:
        ...

    @abc.abstractmethod
    def history(self, environment_id: str) -> list[dict[str, Any]]:
        ...

    def delete_soft(
        self,
        environment_id: str,
        expected_generation: int,
        intent_id: str = "",
    ) -> Environment:
        """
        Mark an environment Deleted without purging it or its history.
        Refuses while the record still owns resources.
        """
        current = self.get(environment_id)
        if current is None:
            raise StaleGenerationError(environment_id, expected_generation, 0)
        record = copy.deepcopy(current)
        record.state = EnvironmentState.DELETED
        record.generation = current.generation + 1
        record.updated_at = time.time()
        if intent_id:
            record.last_intent_id = intent_id
        return self.put(record, expected_generation)

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {s.value: 0 for s in EnvironmentState}
        for env in self.list(include_deleted=True, limit=1_000_000):
            counts[env.state.value] += 1
        return counts

    def close(self) -> None:
        pass


# ─── In-Memory Implementation ────────────────────────────────────────

class InMemoryRegistry(EnvironmentRegistry):
    """In-process registry for dev/test. Returns copies, never aliases."""

    def __init__(self):
        self._records: dict[str, Environment] = {}
        self._history: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def get(self, environment_id: str) -> Environment | None:
        with self._lock:
            rec = self._records.get(str(environment_id))
            return copy.deepcopy(rec) if rec else None

    def put(self, record: Environment, expected_generation: int | None) -> Environment:
        with self._lock:
            _check_write(self._records.get(record.id), record, expected_generation)
            stored = copy.deepcopy(record)
            self._records[record.id] = stored
            self._history.append(_history_entry(stored))
            return copy.deepcopy(stored)

    def list(
        self,
        states: Iterable[EnvironmentState] | None = None,
        closed: bool | None = None,
        include_deleted: bool = False,
        limit: int = 1000,
    ) -> list[Environment]:
        wanted = set(states) if states is not None else None
        with self._lock:
            out = []
            for rec in sorted(self._records.values(), key=lambda r: r.created_at):
                if wanted is not None and rec.state not in wanted:
                    continue
                if wanted is None and not include_deleted and rec.is_deleted:
                    continue
                if closed is not None and rec.closed != closed:
                    continue
                out.append(copy.deepcopy(rec))
            return out[:limit]

    def history(self, environment_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(h) for h in self._history
                    if h["environment_id"] == str(environment_id)]


def _history_entry(record: Environment) -> dict[str, Any]:
    return {
        "environment_id": record.id,
        "generation": record.generation,
        "state": record.state.value,
        "intent_id": record.last_intent_id,
        "resources": record.resources.summary(),
        "error": record.last_error.to_dict() if record.last_error else None,
        "recorded_at": record.updated_at or time.time(),
    }


# ─── SQLite Implementation ───────────────────────────────────────────

class _Transaction:
    """
    SQLite write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so the
    generation check and the write are atomic across processes.
    """
    def __init__(self, registry: SQLiteRegistry):
        self.registry = registry

    def __enter__(self):
        self.registry._lock.acquire()
        try:
            self.registry.conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self.registry._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                self.registry.conn.execute("COMMIT")
            else:
                self.registry.conn.execute("ROLLBACK")
        finally:
            self.registry._lock.release()
        return False


class SQLiteRegistry(EnvironmentRegistry):
    """SQLite-backed registry. Safe to share between dispatcher threads."""

    def __init__(self, db_path: str | Path = "ephemera.db"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
        )
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS environments (
                    id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    generation INTEGER NOT NULL,
                    resources TEXT NOT NULL DEFAULT '{}',
                    last_activity_at REAL NOT NULL DEFAULT 0,
                    closed INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    last_intent_id TEXT DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS environment_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    environment_id TEXT NOT NULL,
                    generation INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    intent_id TEXT DEFAULT '',
                    resources TEXT NOT NULL DEFAULT '{}',
                    error TEXT,
                    recorded_at REAL NOT NULL,
                    UNIQUE (environment_id, generation)
                );

                CREATE INDEX IF NOT EXISTS idx_env_state ON environments(state);
                CREATE INDEX IF NOT EXISTS idx_history_env
                    ON environment_history(environment_id);
            """)

    def transaction(self) -> _Transaction:
        return _Transaction(self)

    # ─── Reads ───────────────────────────────────────────────────────

    def get(self, environment_id: str) -> Environment | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM environments WHERE id = ?", (str(environment_id),)
            ).fetchone()
        return self._row_to_environment(row) if row else None

    def list(
        self,
        states: Iterable[EnvironmentState] | None = None,
        closed: bool | None = None,
        include_deleted: bool = False,
        limit: int = 1000,
    ) -> list[Environment]:
        query = "SELECT * FROM environments WHERE 1=1"
        params: list[Any] = []
        if states is not None:
            wanted = [s.value for s in states]
            if not wanted:
                return []
            query += f" AND state IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        elif not include_deleted:
            query += " AND state != ?"
            params.append(EnvironmentState.DELETED.value)
        if closed is not None:
            query += " AND closed = ?"
            params.append(1 if closed else 0)
        query += " ORDER BY created_at ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_environment(r) for r in rows]

    def history(self, environment_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM environment_history WHERE environment_id = ? "
                "ORDER BY generation ASC",
                (str(environment_id),),
            ).fetchall()
        return [
            {
                "environment_id": r["environment_id"],
                "generation": r["generation"],
                "state": r["state"],
                "intent_id": r["intent_id"],
                "resources": json.loads(r["resources"]),
                "error": json.loads(r["error"]) if r["error"] else None,
                "recorded_at": r["recorded_at"],
            }
            for r in rows
        ]

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {s.value: 0 for s in EnvironmentState}
        with self._lock:
            rows = self.conn.execute(
                "SELECT state, COUNT(*) AS cnt FROM environments GROUP BY state"
            ).fetchall()
        for r in rows:
            counts[r["state"]] = r["cnt"]
        return counts

    # ─── Writes ──────────────────────────────────────────────────────

    def put(self, record: Environment, expected_generation: int | None) -> Environment:
        with self.transaction():
            row = self.conn.execute(
                "SELECT * FROM environments WHERE id = ?", (record.id,)
            ).fetchone()
            current = self._row_to_environment(row) if row else None
            _check_write(current, record, expected_generation)

            self.conn.execute("""
                INSERT INTO environments
                (id, state, generation, resources, last_activity_at, closed,
                 last_error, created_at, updated_at, last_intent_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    generation = excluded.generation,
                    resources = excluded.resources,
                    last_activity_at = excluded.last_activity_at,
                    closed = excluded.closed,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at,
                    last_intent_id = excluded.last_intent_id
            """, (
                record.id, record.state.value, record.generation,
                json.dumps(record.resources.to_dict()),
                record.last_activity_at, 1 if record.closed else 0,
                json.dumps(record.last_error.to_dict()) if record.last_error else None,
                record.created_at, record.updated_at, record.last_intent_id,
            ))

            entry = _history_entry(record)
            self.conn.execute("""
                INSERT INTO environment_history
                (environment_id, generation, state, intent_id, resources, error, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                entry["environment_id"], entry["generation"], entry["state"],
                entry["intent_id"], json.dumps(entry["resources"]),
                json.dumps(entry["error"]) if entry["error"] else None,
                entry["recorded_at"],
            ))
        return copy.deepcopy(record)

    def close(self):
        with self._lock:
            self.conn.close()

    def _row_to_environment(self, row) -> Environment:
        return Environment(
            id=row["id"],
            state=EnvironmentState(row["state"]),
            generation=row["generation"],
            resources=ResourceSet.from_dict(json.loads(row["resources"])),
            last_activity_at=row["last_activity_at"],
            closed=bool(row["closed"]),
            last_error=ErrorRecord.from_dict(
                json.loads(row["last_error"]) if row["last_error"] else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_intent_id=row["last_intent_id"] or "",
        )


def create_registry(config: dict[str, Any] | None = None) -> EnvironmentRegistry:
    """Build the registry named by `registry.backend`."""
    reg_cfg = (config or {}).get("registry") or {}
    backend = reg_cfg.get("backend", "sqlite")
    if backend == "memory":
        return InMemoryRegistry()
    if backend == "sqlite":
        return SQLiteRegistry(reg_cfg.get("path", "ephemera.db"))
    raise ValueError(f"Unknown registry backend: {backend}")
