"""
Ephemera — Dispatcher

Routes queued intents to per-environment workers:

  - At most one worker per environment id, created on demand and
    retired once its private queue drains
  - Each worker holds the environment's lease for the whole time it
    applies that environment's intents, in submission order
  - A bounded ThreadPoolExecutor caps concurrent reconciliations
    across all environments

If the lease is held elsewhere (another process, or a crashed holder
whose lease has not expired yet) the worker retries after
`lease_retry_seconds`; queued intents are kept, never dropped.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from lifecycle.errors import LeaseLostError
from lifecycle.intents import IntentQueue, QueueItem, SubmitResult
from lifecycle.lease import Lease, LeaseManager
from lifecycle.reconciler import Outcome, ReconcileResult, Reconciler
from lifecycle.types import Intent, IntentAction, Observation

logger = logging.getLogger("ephemera.dispatcher")


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


class Dispatcher:
    """Per-environment serialized execution over a shared worker pool."""

    def __init__(
        self,
        queue: IntentQueue,
        reconciler: Reconciler,
        lease_manager: LeaseManager,
        max_workers: int = 8,
        lease_ttl: float = 600.0,
        lease_retry_seconds: float = 1.0,
        owner_id: str = "",
    ):
        self.queue = queue
        self.reconciler = reconciler
        self.lease_manager = lease_manager
        self.lease_ttl = lease_ttl
        self.lease_retry_seconds = lease_retry_seconds
        self.owner_id = owner_id or default_owner_id()
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="eph_reconcile",
        )
        self._assigned: set[str] = set()
        self._timers: set[threading.Timer] = set()
        self._cond = threading.Condition()
        self._closed = False
        self._outcomes: Counter = Counter()
        self._recent: deque[ReconcileResult] = deque(maxlen=200)
        self._listeners: list[Callable[[ReconcileResult], None]] = []
        self.queue.on_enqueue = self._schedule

    # ─── Ingress ─────────────────────────────────────────────────────

    def submit(self, intent: Intent) -> SubmitResult:
        return self.queue.submit(intent)

    def observe(self, observation: Observation) -> SubmitResult:
        return self.queue.enqueue_observation(observation)

    def add_listener(self, callback: Callable[[ReconcileResult], None]) -> None:
        """Called with every ReconcileResult, on the worker thread."""
        self._listeners.append(callback)

    # ─── Scheduling ──────────────────────────────────────────────────

    def _schedule(self, environment_id: str) -> None:
        with self._cond:
            if self._closed or environment_id in self._assigned:
                return
            self._assigned.add(environment_id)
        self._executor.submit(self._run_worker, environment_id)

    def _retry_later(self, environment_id: str) -> None:
        def _fire():
            with self._cond:
                self._timers.discard(timer)
                if self._closed:
                    self._assigned.discard(environment_id)
                    self._cond.notify_all()
                    return
            self._executor.submit(self._run_worker, environment_id)

        timer = threading.Timer(self.lease_retry_seconds, _fire)
        timer.daemon = True
        with self._cond:
            self._timers.add(timer)
        timer.start()

    def _run_worker(self, environment_id: str) -> None:
        try:
            lease = self.lease_manager.acquire(environment_id, self.owner_id, self.lease_ttl)
        except Exception:
            logger.exception("Lease acquisition failed for %s", environment_id)
            self._retry_later(environment_id)
            return
        if lease is None:
            logger.info("Lease for %s held elsewhere (%s); retrying in %.1fs",
                        environment_id, self.lease_manager.holder(environment_id),
                        self.lease_retry_seconds)
            self._retry_later(environment_id)
            return

        try:
            self._drain(environment_id, lease)
        finally:
            try:
                self.lease_manager.release(lease)
            except Exception:
                # The lease runs out on its own after lease_ttl
                logger.exception("Lease release failed for %s", environment_id)
            with self._cond:
                self._assigned.discard(environment_id)
                self._cond.notify_all()
            if self.queue.has_pending(environment_id):
                self._schedule(environment_id)

    def _drain(self, environment_id: str, lease: Lease) -> None:
        while True:
            item = self.queue.take_next(environment_id)
            if item is None:
                return
            result = self._process(item, lease)
            self._record(result)
            if result.lease_lost:
                return
            try:
                lease = self.lease_manager.renew(lease, self.lease_ttl)
            except LeaseLostError:
                logger.warning("Lease for %s lost between intents", environment_id)
                return

    def _process(self, item: QueueItem, lease: Lease) -> ReconcileResult:
        env_id = item.environment_id
        try:
            if isinstance(item, Observation):
                return self.reconciler.observe(item, lease=lease)
            return self.reconciler.handle(
                item,
                lease=lease,
                should_yield=lambda: self.queue.has_pending(env_id, IntentAction.CLEANUP),
            )
        except Exception as e:
            logger.exception("Reconciliation crashed for %s", env_id)
            return ReconcileResult(
                environment_id=env_id,
                outcome=Outcome.REJECTED,
                intent_id=getattr(item, "intent_id", "") or getattr(item, "observation_id", ""),
                reason=f"internal error: {type(e).__name__}: {e}",
            )

    def _record(self, result: ReconcileResult) -> None:
        with self._cond:
            self._outcomes[result.outcome.value] += 1
            self._recent.append(result)
        for listener in self._listeners:
            try:
                listener(result)
            except Exception:
                logger.exception("Result listener failed")

    # ─── Control ─────────────────────────────────────────────────────

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no worker is assigned and nothing is queued."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._cond:
            while self._assigned or self.queue.pending_count():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(0.05 if remaining is None else min(remaining, 0.05))
            return True

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for t in timers:
            t.cancel()
        self._executor.shutdown(wait=wait)

    def recent_results(self, environment_id: str | None = None) -> list[ReconcileResult]:
        with self._cond:
            return [r for r in self._recent
                    if environment_id is None or r.environment_id == environment_id]

    def stats(self) -> dict[str, Any]:
        with self._cond:
            return {
                "owner_id": self.owner_id,
                "max_workers": self.max_workers,
                "active_environments": sorted(self._assigned),
                "pending": self.queue.pending_count(),
                "outcomes": dict(self._outcomes),
            }
