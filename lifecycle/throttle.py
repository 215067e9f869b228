"""
Ephemera — Provisioner Throttle

Every provisioner call takes a slot first, so the control plane as a
whole stays inside the cluster API's limits however many environments
reconcile at once:

  - at most `max_concurrent` calls in flight
  - at most `requests_per_minute` calls started per minute (token bucket;
    0 disables the per-minute budget)

A call that gets no slot within `queue_timeout` raises BackpressureError.
It is a TransientError, so the reconciler backs off and retries it like
any other throttling from the cluster; a spent retry budget degrades the
environment with kind "backpressure".

Config in ephemera.yaml:
    rate_limits:
      provisioner:
        max_concurrent: 10
        requests_per_minute: 600
        queue_timeout: 30
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from lifecycle.errors import BackpressureError

logger = logging.getLogger("ephemera.throttle")


@dataclass
class ThrottleConfig:
    max_concurrent: int = 10
    requests_per_minute: int = 600
    queue_timeout: float = 30.0

    @staticmethod
    def from_config(config: dict[str, Any] | None = None) -> ThrottleConfig:
        """Read `rate_limits.provisioner`, falling back to `rate_limits.default`."""
        limits = (config or {}).get("rate_limits") or {}
        section = limits.get("provisioner") or limits.get("default") or {}
        defaults = ThrottleConfig()
        return ThrottleConfig(
            max_concurrent=int(section.get("max_concurrent", defaults.max_concurrent)),
            requests_per_minute=int(section.get(
                "requests_per_minute", defaults.requests_per_minute)),
            queue_timeout=float(section.get("queue_timeout", defaults.queue_timeout)),
        )


class ProvisionerThrottle:
    """
    Shared by every reconciler in one control plane.

        with throttle.slot("ensure_service"):
            provisioner.ensure_service(ns, name, spec)
    """

    def __init__(
        self,
        config: ThrottleConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.config = config or ThrottleConfig()
        self.clock = clock
        self.sleep_fn = sleep_fn
        self._slots = threading.BoundedSemaphore(max(1, self.config.max_concurrent))
        self._lock = threading.Lock()
        self._tokens = float(self.config.requests_per_minute)
        self._refilled_at = clock()
        self._in_flight = 0
        self._calls = 0
        self._delayed = 0
        self._rejected = 0

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> ProvisionerThrottle:
        return cls(ThrottleConfig.from_config(config))

    def _take_token(self) -> float:
        """Consume one token. Returns 0, or the seconds until one is due."""
        per_minute = self.config.requests_per_minute
        if per_minute <= 0:
            return 0.0
        rate = per_minute / 60.0
        with self._lock:
            now = self.clock()
            self._tokens = min(float(per_minute),
                               self._tokens + (now - self._refilled_at) * rate)
            self._refilled_at = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0
            return (1.0 - self._tokens) / rate

    def _reject(self, operation: str, limit: str) -> None:
        with self._lock:
            self._rejected += 1
        logger.warning("Provisioner throttle full for %s (%s)", operation, limit)
        raise BackpressureError(
            f"{operation}: no provisioner slot within "
            f"{self.config.queue_timeout:g}s ({limit})"
        )

    @contextmanager
    def slot(self, operation: str = "call") -> Iterator[None]:
        """Hold one provisioner slot for the duration of the block."""
        deadline = self.clock() + self.config.queue_timeout
        if not self._slots.acquire(timeout=self.config.queue_timeout):
            self._reject(operation, "max_concurrent")
        try:
            delayed = False
            while True:
                wait = self._take_token()
                if wait <= 0:
                    break
                remaining = deadline - self.clock()
                if remaining <= 0:
                    self._reject(operation, "requests_per_minute")
                delayed = True
                self.sleep_fn(min(wait, remaining))

            with self._lock:
                self._calls += 1
                self._delayed += int(delayed)
                self._in_flight += 1
            try:
                yield
            finally:
                with self._lock:
                    self._in_flight -= 1
        finally:
            self._slots.release()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "calls": self._calls,
                "delayed": self._delayed,
                "rejected": self._rejected,
                "in_flight": self._in_flight,
                "max_concurrent": self.config.max_concurrent,
                "requests_per_minute": self.config.requests_per_minute,
            }
