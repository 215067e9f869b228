"""
Ephemera — Intent Queue

Ingress point for lifecycle commands. Validates each intent, folds
near-duplicates for the same environment into one queued unit, and
keeps a private FIFO per environment for the dispatcher to drain.

Coalescing looks only at the newest unit still waiting in that
environment's queue, and only if it arrived within the window:

    pending  + new              → result
    deploy   + deploy           → deploy (newest)
    deploy   + restart          → deploy (restart absorbed)
    restart  + restart|deploy   → new intent
    deploy|restart + cleanup    → cleanup
    cleanup  + cleanup          → cleanup (newest)
    cleanup  + deploy|restart   → appended behind the cleanup

A Cleanup is never dropped in favor of a later Deploy.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Union

from lifecycle.types import (
    Intent,
    IntentAction,
    Observation,
    validate_environment_id,
)

logger = logging.getLogger("ephemera.intents")

QueueItem = Union[Intent, Observation]

A = IntentAction


class SubmitStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    COALESCED = "coalesced"
    REJECTED = "rejected"


@dataclass
class SubmitResult:
    status: SubmitStatus
    environment_id: str
    intent_id: str = ""
    reason: str = ""
    coalesced_into: str = ""

    @property
    def accepted(self) -> bool:
        return self.status != SubmitStatus.REJECTED

    def to_dict(self) -> dict:
        out = {
            "status": self.status.value,
            "environment_id": self.environment_id,
            "intent_id": self.intent_id,
        }
        if self.reason:
            out["reason"] = self.reason
        if self.coalesced_into:
            out["coalesced_into"] = self.coalesced_into
        return out


@dataclass
class _Unit:
    item: QueueItem
    enqueued_at: float


def _merge(pending: A, new: A) -> str:
    """'replace', 'keep' or 'append' for a new action against the pending one."""
    if pending == A.CLEANUP:
        return "replace" if new == A.CLEANUP else "append"
    if new == A.CLEANUP:
        return "replace"
    if pending == A.DEPLOY and new == A.RESTART:
        return "keep"
    return "replace"


class IntentQueue:
    """
    Per-environment FIFO queues with coalescing and a pending cap.

    Thread-safe. `on_enqueue(environment_id)` is invoked after every
    accepted submission so a dispatcher can schedule a worker.
    """

    def __init__(
        self,
        coalesce_window: float = 2.0,
        max_pending_per_environment: int = 32,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.coalesce_window = coalesce_window
        self.max_pending = max_pending_per_environment
        self.clock = clock
        self.on_enqueue: Callable[[str], None] | None = None
        self._queues: dict[str, deque[_Unit]] = {}
        self._lock = threading.Lock()

    def submit(self, intent: Intent) -> SubmitResult:
        errors = validate_environment_id(intent.environment_id)
        if errors:
            return SubmitResult(SubmitStatus.REJECTED, str(intent.environment_id),
                                intent.intent_id, reason="; ".join(errors))

        env_id = intent.environment_id
        with self._lock:
            queue = self._queues.setdefault(env_id, deque())
            now = self.clock()
            result = self._coalesce(queue, intent, now)
            if result is None:
                if len(queue) >= self.max_pending:
                    logger.warning("Backpressure on %s: %d pending", env_id, len(queue))
                    return SubmitResult(SubmitStatus.REJECTED, env_id,
                                        intent.intent_id, reason="backpressure")
                queue.append(_Unit(intent, now))
                result = SubmitResult(SubmitStatus.ACCEPTED, env_id, intent.intent_id)

        logger.debug("Intent %s %s for %s: %s", intent.intent_id,
                     intent.action.value, env_id, result.status.value)
        self._notify(env_id)
        return result

    def _coalesce(self, queue: deque[_Unit], intent: Intent, now: float) -> SubmitResult | None:
        if not queue:
            return None
        tail = queue[-1]
        if not isinstance(tail.item, Intent):
            return None
        if now - tail.enqueued_at > self.coalesce_window:
            return None

        decision = _merge(tail.item.action, intent.action)
        if decision == "append":
            return None
        if decision == "keep":
            return SubmitResult(SubmitStatus.COALESCED, intent.environment_id,
                                intent.intent_id, coalesced_into=tail.item.intent_id)
        queue[-1] = _Unit(intent, now)
        return SubmitResult(SubmitStatus.COALESCED, intent.environment_id,
                            intent.intent_id, coalesced_into=intent.intent_id)

    def enqueue_observation(self, observation: Observation) -> SubmitResult:
        errors = validate_environment_id(observation.environment_id)
        env_id = str(observation.environment_id)
        if errors:
            return SubmitResult(SubmitStatus.REJECTED, env_id,
                                observation.observation_id, reason="; ".join(errors))
        with self._lock:
            queue = self._queues.setdefault(env_id, deque())
            if len(queue) >= self.max_pending:
                return SubmitResult(SubmitStatus.REJECTED, env_id,
                                    observation.observation_id, reason="backpressure")
            queue.append(_Unit(observation, self.clock()))
        self._notify(env_id)
        return SubmitResult(SubmitStatus.ACCEPTED, env_id, observation.observation_id)

    def _notify(self, environment_id: str) -> None:
        if self.on_enqueue is not None:
            self.on_enqueue(environment_id)

    # ─── Consumer side ───────────────────────────────────────────────

    def take_next(self, environment_id: str) -> QueueItem | None:
        """Pop the oldest unit for an environment. Taken units are never coalesced."""
        with self._lock:
            queue = self._queues.get(environment_id)
            if not queue:
                self._queues.pop(environment_id, None)
                return None
            return queue.popleft().item

    def has_pending(self, environment_id: str, action: IntentAction | None = None) -> bool:
        with self._lock:
            queue = self._queues.get(environment_id)
            if not queue:
                return False
            if action is None:
                return True
            return any(isinstance(u.item, Intent) and u.item.action == action
                       for u in queue)

    def pending(self, environment_id: str) -> list[QueueItem]:
        with self._lock:
            return [u.item for u in self._queues.get(environment_id, ())]

    def pending_count(self, environment_id: str | None = None) -> int:
        with self._lock:
            if environment_id is not None:
                return len(self._queues.get(environment_id, ()))
            return sum(len(q) for q in self._queues.values())

    def environments(self) -> list[str]:
        with self._lock:
            return [env for env, q in self._queues.items() if q]
