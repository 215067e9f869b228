"""
Ephemera — Staleness Sweeper

Periodically scans environments in Active, Provisioning or Degraded
and proposes Cleanup for every one that is closed or has been idle
longer than the inactivity threshold.

The sweeper only submits intents through the queue; it never writes
the registry, so cleanup it proposes is serialized and leased exactly
like an operator's.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from lifecycle.intents import SubmitResult
from lifecycle.store import EnvironmentRegistry
from lifecycle.types import (
    SWEEPABLE_STATES,
    Environment,
    Intent,
    IntentAction,
    IntentSource,
)

logger = logging.getLogger("ephemera.sweeper")


@dataclass
class SweeperConfig:
    interval_seconds: float = 900.0
    inactivity_threshold_hours: float = 24.0

    @property
    def inactivity_threshold_seconds(self) -> float:
        return self.inactivity_threshold_hours * 3600.0

    @staticmethod
    def from_config(config: dict[str, Any] | None = None) -> SweeperConfig:
        section = (config or {}).get("sweeper") or {}
        return SweeperConfig(
            interval_seconds=float(section.get("interval_seconds", 900.0)),
            inactivity_threshold_hours=float(section.get("inactivity_threshold_hours", 24.0)),
        )


@dataclass
class SweepProposal:
    environment_id: str
    reason: str             # closed | inactive
    idle_seconds: float
    status: str = ""        # queue verdict for the submitted cleanup
    intent_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment_id": self.environment_id,
            "reason": self.reason,
            "idle_seconds": round(self.idle_seconds, 1),
            "status": self.status,
            "intent_id": self.intent_id,
        }


class StalenessSweeper:

    def __init__(
        self,
        registry: EnvironmentRegistry,
        submit: Callable[[Intent], SubmitResult],
        config: SweeperConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.submit = submit
        self.config = config or SweeperConfig()
        self.clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def eligibility(self, env: Environment, now: float) -> str | None:
        """'closed', 'inactive', or None when the environment should stay."""
        if env.state not in SWEEPABLE_STATES:
            return None
        if env.closed:
            return "closed"
        if now - env.last_activity_at > self.config.inactivity_threshold_seconds:
            return "inactive"
        return None

    def run_once(self, now: float | None = None) -> list[SweepProposal]:
        """One scan. Returns the cleanups proposed."""
        now = self.clock() if now is None else now
        proposals: list[SweepProposal] = []
        for env in self.registry.list(states=SWEEPABLE_STATES, limit=1_000_000):
            reason = self.eligibility(env, now)
            if reason is None:
                continue
            intent = Intent.create(env.id, IntentAction.CLEANUP, IntentSource.SWEEPER,
                                   requested_at=now)
            result = self.submit(intent)
            proposals.append(SweepProposal(
                environment_id=env.id,
                reason=reason,
                idle_seconds=now - env.last_activity_at,
                status=result.status.value,
                intent_id=intent.intent_id,
            ))
            logger.info("Proposed cleanup for %s (%s): %s",
                        env.id, reason, result.status.value)
        logger.debug("Sweep complete: %d proposed", len(proposals))
        return proposals

    # ─── Periodic ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="eph_sweeper", daemon=True)
        self._thread.start()
        logger.info("Sweeper started (interval=%.0fs, threshold=%.1fh)",
                    self.config.interval_seconds, self.config.inactivity_threshold_hours)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.config.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Sweep failed; retrying next interval")
