"""
Ephemera — Per-Environment Reconciler

Drives one environment from its recorded state toward the state the
next intent implies, calling the provisioner and persisting every
change to the registry before moving on.

Flow for one intent:
    1. Read the record, pick a Plan from the transition table
    2. Reject (no write) when the plan says so
    3. Conflict if the record moved past the intent's submitted generation
    4. Execute the plan step by step; every persisted write bumps
       generation, and the lease is renewed before every write and every
       provisioner attempt (health polls included)
    5. Terminal states (Active, Degraded, Deleted) emit a StatusEvent

Creation order:  namespace → cache → services → routes → DNS
Teardown order:  routes → services → DNS → cache → namespace

Transient provisioner errors are retried in place (infra.retry); once
the budget is spent, or on any permanent error, the environment goes
Degraded with last_error set.
"""

from __future__ import annotations

import copy
import enum
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from infra.logging import ReconcileLogger
from infra.notifier import NullNotifier, StatusNotifier
from infra.retry import RetryExhausted, RetryPolicy, call_with_retry, get_retry_policy
from lifecycle.errors import (
    ConflictError,
    EnvironmentNotFound,
    InvalidTransition,
    LeaseLostError,
    ProvisionerError,
    TransientError,
)
from lifecycle.lease import Lease, LeaseManager
from lifecycle.machine import Plan, assert_transition, plan
from lifecycle.provisioner import HealthStatus, ResourceProvisioner
from lifecycle.store import EnvironmentRegistry
from lifecycle.throttle import ProvisionerThrottle
from lifecycle.types import (
    DEFAULT_SERVICES,
    TERMINAL_STATUS_STATES,
    Environment,
    EnvironmentState,
    ErrorRecord,
    Intent,
    IntentAction,
    NamingScheme,
    Observation,
    ResourceHandle,
    ResourceKind,
    ResourceSet,
    ServiceSpec,
    StatusEvent,
)

logger = logging.getLogger("ephemera.reconciler")

S = EnvironmentState


@dataclass
class HealthWaitConfig:
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 300.0

    @staticmethod
    def from_config(config: dict[str, Any] | None = None) -> HealthWaitConfig:
        section = (config or {}).get("health") or {}
        return HealthWaitConfig(
            poll_interval_seconds=float(section.get("poll_interval_seconds", 5.0)),
            timeout_seconds=float(section.get("timeout_seconds", 300.0)),
        )


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    DEGRADED = "degraded"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    environment_id: str
    outcome: Outcome
    state: EnvironmentState | None = None
    generation: int = 0
    intent_id: str = ""
    reason: str = ""
    error: ErrorRecord | None = None
    lease_lost: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.APPLIED, Outcome.IGNORED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment_id": self.environment_id,
            "outcome": self.outcome.value,
            "state": self.state.value if self.state else None,
            "generation": self.generation,
            "intent_id": self.intent_id,
            "reason": self.reason,
            "error": self.error.to_dict() if self.error else None,
        }


# ─── Internal control flow ───────────────────────────────────────────

class _StepFailed(Exception):
    def __init__(self, error: ErrorRecord):
        self.error = error
        super().__init__(f"{error.kind}: {error.message}")


class _Superseded(Exception):
    pass


@dataclass
class _Run:
    """Mutable state of one handle()/observe() call."""
    environment_id: str
    intent_id: str
    rlog: ReconcileLogger
    lease: Lease | None = None
    record: Environment | None = None
    should_yield: Callable[[], bool] | None = None
    skip_recorded: bool = False
    events: list[StatusEvent] = field(default_factory=list)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, (TransientError, TimeoutError, ConnectionError))


def _to_error_record(error: BaseException, now: float) -> ErrorRecord:
    if isinstance(error, RetryExhausted):
        last = error.last_error
        if isinstance(last, ProvisionerError):
            kind = last.kind
        elif isinstance(last, TimeoutError):
            kind = "timeout"
        else:
            kind = "transient"
        return ErrorRecord(kind, str(last), retry_count=error.attempts, at=now)
    if isinstance(error, ProvisionerError):
        return ErrorRecord(error.kind, str(error), at=now)
    return ErrorRecord("unexpected", f"{type(error).__name__}: {error}", at=now)


def _get_handle(res: ResourceSet, kind: ResourceKind, key: str = "") -> ResourceHandle | None:
    if kind == ResourceKind.SERVICE:
        return res.services.get(key)
    if kind == ResourceKind.ROUTE:
        return res.routes.get(key)
    return getattr(res, kind.value)


def _with_handle(res: ResourceSet, kind: ResourceKind, key: str,
                 handle: ResourceHandle | None) -> ResourceSet:
    out = copy.deepcopy(res)
    if kind in (ResourceKind.SERVICE, ResourceKind.ROUTE):
        bucket = out.services if kind == ResourceKind.SERVICE else out.routes
        if handle is None:
            bucket.pop(key, None)
        else:
            bucket[key] = handle
    else:
        setattr(out, kind.value, handle)
    return out


# ═══════════════════════════════════════════════════════════════════
# Reconciler
# ═══════════════════════════════════════════════════════════════════

class Reconciler:
    """
    Stateless between calls; safe to share across dispatcher workers as
    long as each environment is handled by one worker at a time.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        provisioner: ResourceProvisioner,
        naming: NamingScheme | None = None,
        services: list[ServiceSpec] | None = None,
        retry_policy: RetryPolicy | None = None,
        throttle: ProvisionerThrottle | None = None,
        health: HealthWaitConfig | None = None,
        notifier: StatusNotifier | None = None,
        lease_manager: LeaseManager | None = None,
        lease_ttl: float = 600.0,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.provisioner = provisioner
        self.naming = naming or NamingScheme()
        self.services = list(services) if services else list(DEFAULT_SERVICES)
        self.retry_policy = retry_policy or get_retry_policy()
        self.throttle = throttle or ProvisionerThrottle()
        self.health = health or HealthWaitConfig()
        self.notifier = notifier or NullNotifier()
        self.lease_manager = lease_manager
        self.lease_ttl = lease_ttl
        self.clock = clock
        self.sleep_fn = sleep_fn

    # ─── Intents ─────────────────────────────────────────────────────

    def handle(
        self,
        intent: Intent,
        lease: Lease | None = None,
        should_yield: Callable[[], bool] | None = None,
    ) -> ReconcileResult:
        """
        Apply one intent. The caller must hold the environment's lease.

        `should_yield` is polled between provisioning steps; returning
        True stops a deploy or restart after the current step.
        """
        t0 = time.monotonic()
        rlog = ReconcileLogger(intent.environment_id, intent.intent_id, intent.action.value)
        rlog.on_intent_received(intent.source.value, intent.submitted_generation)
        run = _Run(intent.environment_id, intent.intent_id, rlog,
                   lease=lease, should_yield=should_yield)
        run.record = self.registry.get(intent.environment_id)

        try:
            result = self._handle(run, intent)
        except ConflictError as e:
            rlog.on_conflict(str(e))
            result = self._result(run, Outcome.CONFLICT, reason=str(e))
            result.lease_lost = isinstance(e, LeaseLostError)
        finally:
            self._flush_events(run)

        rlog.on_reconcile_end(result.outcome.value,
                              result.state.value if result.state else "absent",
                              time.monotonic() - t0)
        return result

    def _handle(self, run: _Run, intent: Intent) -> ReconcileResult:
        state = run.record.state if run.record else None
        chosen = plan(state, intent.action)

        if chosen == Plan.REJECT_NOT_FOUND:
            reason = str(EnvironmentNotFound(intent.environment_id))
            run.rlog.on_intent_rejected(reason, state.value if state else "absent")
            return self._result(run, Outcome.REJECTED, reason=reason)
        if chosen == Plan.REJECT_INVALID:
            reason = str(InvalidTransition(
                f"cannot {intent.action.value} an environment in state {state.value}"))
            run.rlog.on_intent_rejected(reason, state.value)
            return self._result(run, Outcome.REJECTED, reason=reason)

        if (run.record is not None and intent.submitted_generation is not None
                and run.record.generation > intent.submitted_generation):
            return self._record_conflict(run, intent)

        try:
            if chosen in (Plan.PROVISION, Plan.RESUME_PROVISION, Plan.UPDATE):
                if chosen == Plan.PROVISION:
                    self._begin_lifecycle(run)
                run.skip_recorded = chosen == Plan.RESUME_PROVISION
                self._provision(run, prune=chosen == Plan.UPDATE)
            elif chosen == Plan.RESTART:
                self._restart(run)
            elif chosen == Plan.DRAIN:
                self._drain(run)
            elif chosen == Plan.DRAIN_THEN_PROVISION:
                self._drain(run)
                self._begin_lifecycle(run)
                self._provision(run)
        except _Superseded:
            run.rlog.on_intent_superseded(run.record.state.value, IntentAction.CLEANUP.value)
            return self._result(run, Outcome.SUPERSEDED, reason="cleanup pending")
        except _StepFailed as failed:
            self._degrade(run, failed.error)
            return self._result(run, Outcome.DEGRADED, reason=failed.error.message,
                                error=failed.error)
        return self._result(run, Outcome.APPLIED)

    def _record_conflict(self, run: _Run, intent: Intent) -> ReconcileResult:
        reason = (f"intent observed generation {intent.submitted_generation}, "
                  f"record is at {run.record.generation}")
        run.rlog.on_conflict(reason)
        error = ErrorRecord("conflict", reason, at=self.clock())
        self._persist(run, last_error=error)
        run.events.append(self._event(run.record, run.intent_id, error))
        return self._result(run, Outcome.CONFLICT, reason=reason, error=error)

    # ─── Observations ────────────────────────────────────────────────

    def observe(self, observation: Observation, lease: Lease | None = None) -> ReconcileResult:
        """Apply externally observed activity/closure. Never changes state."""
        rlog = ReconcileLogger(observation.environment_id, observation.observation_id)
        run = _Run(observation.environment_id, observation.observation_id, rlog, lease=lease)
        run.record = self.registry.get(observation.environment_id)
        if run.record is None or run.record.is_deleted:
            return self._result(run, Outcome.IGNORED, reason="environment does not exist")

        changes: dict[str, Any] = {}
        if (observation.activity_at is not None
                and observation.activity_at > run.record.last_activity_at):
            changes["last_activity_at"] = observation.activity_at
        if observation.closed is not None and observation.closed != run.record.closed:
            changes["closed"] = observation.closed
        if not changes:
            return self._result(run, Outcome.IGNORED, reason="no change")

        try:
            self._persist(run, **changes)
        except ConflictError as e:
            rlog.on_conflict(str(e))
            result = self._result(run, Outcome.CONFLICT, reason=str(e))
            result.lease_lost = isinstance(e, LeaseLostError)
            return result
        rlog.on_observation(changes, run.record.generation)
        return self._result(run, Outcome.APPLIED)

    # ─── Plans ───────────────────────────────────────────────────────

    def _begin_lifecycle(self, run: _Run) -> None:
        """Create the record, or reopen a Deleted one, in Requested."""
        now = self.clock()
        if run.record is None:
            record = Environment.create(run.environment_id, now)
            record.generation = 1
            record.last_intent_id = run.intent_id
            self._renew(run)
            run.record = self.registry.put(record, expected_generation=None)
            run.rlog.on_transition("absent", S.REQUESTED.value, run.record.generation)
            return
        self._persist(
            run,
            state=S.REQUESTED,
            resources=ResourceSet(),
            closed=False,
            last_error=None,
            last_activity_at=now,
        )

    def _provision(self, run: _Run, prune: bool = False) -> None:
        if run.record.state != S.PROVISIONING:
            self._persist(run, state=S.PROVISIONING)

        env_id = run.environment_id
        p = self.provisioner

        ns = self._ensure(run, ResourceKind.NAMESPACE, "", self.naming.namespace(env_id),
                          lambda name: p.ensure_namespace(name))
        cache = self._ensure(run, ResourceKind.CACHE, "", self.naming.cache_prefix(env_id),
                             lambda name: p.ensure_cache(ns, name))

        service_handles: dict[str, ResourceHandle] = {}
        for spec in self.services:
            declared = replace(spec, env={
                **spec.env,
                "CACHE_PREFIX": cache.name,
                "ENVIRONMENT_ID": env_id,
            })
            service_handles[spec.name] = self._ensure(
                run, ResourceKind.SERVICE, spec.name,
                self.naming.service(env_id, spec.name),
                lambda name, s=declared: p.ensure_service(ns, name, s),
            )

        for spec in self.services:
            svc = service_handles[spec.name]
            self._ensure(
                run, ResourceKind.ROUTE, spec.name,
                self.naming.route(env_id, spec.name),
                lambda name, s=svc, prefix=spec.path_prefix: p.ensure_route(ns, s, name, prefix),
            )

        self._ensure(run, ResourceKind.DNS, "", self.naming.dns(env_id),
                     lambda name: p.ensure_dns(ns, name))

        if prune:
            self._prune_undeclared(run)

        self._wait_healthy(run, list(service_handles.values()))
        self._persist(run, state=S.ACTIVE, last_error=None,
                      last_activity_at=self.clock())

    def _restart(self, run: _Run) -> None:
        if run.record.state != S.RESTARTING:
            self._persist(run, state=S.RESTARTING)

        ns = run.record.resources.namespace
        services = [run.record.resources.services[k]
                    for k in sorted(run.record.resources.services)]
        for svc in services:
            self._check_yield(run)
            t0 = time.monotonic()
            self._call(run, "restart_service", svc.name,
                       lambda s=svc: self.provisioner.restart_service(ns, s))
            run.rlog.on_resource_ensured(ResourceKind.SERVICE.value, svc.name,
                                         time.monotonic() - t0)

        self._wait_healthy(run, services)
        self._persist(run, state=S.ACTIVE, last_error=None,
                      last_activity_at=self.clock())

    def _drain(self, run: _Run) -> None:
        if run.record.state != S.DRAINING:
            self._persist(run, state=S.DRAINING)

        # Recorded handles win; names from the naming contract catch
        # anything created before a crash but never recorded.
        recorded = run.record.resources
        expected = self.naming.expected_resources(run.environment_id, self.services)
        p = self.provisioner

        def _targets(kind: ResourceKind, rec: dict, exp: dict) -> list[tuple[str, ResourceHandle]]:
            keys = sorted(set(rec) | set(exp))
            return [(k, rec.get(k) or exp[k]) for k in keys]

        steps: list[tuple[ResourceKind, str, ResourceHandle, Callable]] = []
        for key, h in _targets(ResourceKind.ROUTE, recorded.routes, expected.routes):
            steps.append((ResourceKind.ROUTE, key, h, p.remove_route))
        for key, h in _targets(ResourceKind.SERVICE, recorded.services, expected.services):
            steps.append((ResourceKind.SERVICE, key, h, p.remove_service))
        steps.append((ResourceKind.DNS, "", recorded.dns or expected.dns, p.remove_dns))
        steps.append((ResourceKind.CACHE, "", recorded.cache or expected.cache, p.remove_cache))
        steps.append((ResourceKind.NAMESPACE, "", recorded.namespace or expected.namespace,
                      p.remove_namespace))

        for kind, key, handle, remove in steps:
            t0 = time.monotonic()
            self._call(run, f"remove_{kind.value}", handle.name, lambda h=handle, r=remove: r(h))
            run.rlog.on_resource_removed(kind.value, handle.name, time.monotonic() - t0)
            if _get_handle(run.record.resources, kind, key) is not None:
                self._persist(run, resources=_with_handle(run.record.resources, kind, key, None))

        self._mark_deleted(run)

    def _prune_undeclared(self, run: _Run) -> None:
        """Remove services (and their routes) no longer declared."""
        declared = {s.name for s in self.services}
        for kind, bucket, remove in (
            (ResourceKind.ROUTE, run.record.resources.routes, self.provisioner.remove_route),
            (ResourceKind.SERVICE, run.record.resources.services, self.provisioner.remove_service),
        ):
            for key in sorted(set(bucket) - declared):
                handle = bucket[key]
                t0 = time.monotonic()
                self._call(run, f"remove_{kind.value}", handle.name,
                           lambda h=handle, r=remove: r(h))
                run.rlog.on_resource_removed(kind.value, handle.name, time.monotonic() - t0)
                self._persist(run, resources=_with_handle(run.record.resources, kind, key, None))

    # ─── Steps ───────────────────────────────────────────────────────

    def _ensure(self, run: _Run, kind: ResourceKind, key: str, name: str,
                fn: Callable[[str], ResourceHandle]) -> ResourceHandle:
        self._check_yield(run)
        recorded = _get_handle(run.record.resources, kind, key)
        if run.skip_recorded and recorded is not None and recorded.name == name:
            return recorded

        t0 = time.monotonic()
        handle = self._call(run, f"ensure_{kind.value}", name, lambda: fn(name),
                            on_abandoned=lambda late: self._reap_late(run.environment_id, late))
        run.rlog.on_resource_ensured(kind.value, handle.name, time.monotonic() - t0)
        if recorded != handle:
            self._persist(run, resources=_with_handle(run.record.resources, kind, key, handle))
        return handle

    def _call(self, run: _Run, operation: str, name: str, fn: Callable[[], Any],
              on_abandoned: Callable[[Any], None] | None = None) -> Any:
        """
        One provisioner call under the throttle, deadline and retry policy.
        The lease is renewed before every attempt, so a long retry or
        health wait never outlives it.
        """
        def attempt():
            self._renew(run)
            with self.throttle.slot(operation):
                return fn()

        def on_retry(n: int, error: BaseException, delay: float) -> None:
            run.rlog.on_provisioner_retry(operation, n, self.retry_policy.max_attempts,
                                          str(error), delay)

        try:
            return call_with_retry(
                attempt,
                self.retry_policy,
                operation=f"{operation}:{name}",
                is_retryable=_is_transient,
                on_retry=on_retry,
                on_abandoned=on_abandoned,
                sleep_fn=self.sleep_fn,
            )
        except (RetryExhausted, ProvisionerError) as e:
            raise _StepFailed(_to_error_record(e, self.clock())) from e
        except ConflictError:
            raise
        except Exception as e:
            logger.exception("Unexpected provisioner failure in %s for %s",
                             operation, run.environment_id)
            raise _StepFailed(_to_error_record(e, self.clock())) from e

    def _wait_healthy(self, run: _Run, services: list[ResourceHandle]) -> None:
        """Poll until every service is healthy. Each poll renews the lease via _call."""
        pending = list(services)
        waited = 0.0
        interval = max(self.health.poll_interval_seconds, 0.0)
        while True:
            pending = [
                svc for svc in pending
                if self._call(run, "check_health", svc.name,
                              lambda s=svc: self.provisioner.check_health(s))
                != HealthStatus.HEALTHY
            ]
            if not pending:
                return
            if waited >= self.health.timeout_seconds:
                raise _StepFailed(ErrorRecord(
                    "health_timeout",
                    f"not healthy after {self.health.timeout_seconds:.0f}s: "
                    f"{', '.join(s.name for s in pending)}",
                    at=self.clock(),
                ))
            self._check_yield(run)
            self.sleep_fn(interval)
            waited += interval or 1.0

    def _reap_late(self, environment_id: str, handle: ResourceHandle) -> None:
        """
        An ensure_* call that missed its deadline finished anyway. While the
        environment still wants its resources the name-derived handle is
        adopted by the next ensure; once it is draining or gone, teardown
        may already be past it, so remove it here.
        """
        record = self.registry.get(environment_id)
        if record is not None and record.state not in (S.DRAINING, S.DELETED):
            return
        logger.warning("Removing %s %s created after its call was abandoned",
                       handle.kind.value, handle.name)
        removers = {
            ResourceKind.NAMESPACE: self.provisioner.remove_namespace,
            ResourceKind.CACHE: self.provisioner.remove_cache,
            ResourceKind.SERVICE: self.provisioner.remove_service,
            ResourceKind.ROUTE: self.provisioner.remove_route,
            ResourceKind.DNS: self.provisioner.remove_dns,
        }
        removers[handle.kind](handle)

    def _check_yield(self, run: _Run) -> None:
        if run.should_yield is not None and run.should_yield():
            raise _Superseded()

    # ─── Persistence ─────────────────────────────────────────────────

    def _renew(self, run: _Run) -> None:
        if run.lease is None or self.lease_manager is None:
            return
        try:
            run.lease = self.lease_manager.renew(run.lease, self.lease_ttl)
        except LeaseLostError:
            logger.warning("Lease lost for %s mid-reconciliation", run.environment_id)
            raise

    def _persist(self, run: _Run, **changes) -> Environment:
        """Write the record with `changes`, bumping generation."""
        old = run.record
        new_state = changes.get("state", old.state)
        if new_state != old.state:
            assert_transition(old.state, new_state)

        self._renew(run)
        record = copy.deepcopy(old)
        for key, value in changes.items():
            setattr(record, key, value)
        record.generation = old.generation + 1
        record.updated_at = self.clock()
        record.last_intent_id = run.intent_id
        run.record = self.registry.put(record, expected_generation=old.generation)
        self._after_write(run, old)
        return run.record

    def _mark_deleted(self, run: _Run) -> None:
        old = run.record
        assert_transition(old.state, S.DELETED)
        self._renew(run)
        run.record = self.registry.delete_soft(
            run.environment_id, expected_generation=old.generation, intent_id=run.intent_id)
        self._after_write(run, old)

    def _after_write(self, run: _Run, old: Environment) -> None:
        new = run.record
        if new.state == old.state:
            return
        run.rlog.on_transition(old.state.value, new.state.value, new.generation)
        if new.state in TERMINAL_STATUS_STATES:
            run.events.append(self._event(new, run.intent_id, new.last_error))

    def _degrade(self, run: _Run, error: ErrorRecord) -> None:
        run.rlog.on_degraded(error.kind, error.message, error.retry_count)
        if run.record.state == S.DEGRADED:
            self._persist(run, last_error=error)
            run.events.append(self._event(run.record, run.intent_id, error))
            return
        self._persist(run, state=S.DEGRADED, last_error=error)

    # ─── Status ──────────────────────────────────────────────────────

    def _event(self, record: Environment, intent_id: str,
               error: ErrorRecord | None) -> StatusEvent:
        return StatusEvent(
            environment_id=record.id,
            state=record.state,
            generation=record.generation,
            resources_summary=record.resources.summary(),
            error=error,
            intent_id=intent_id,
            emitted_at=self.clock(),
        )

    def _flush_events(self, run: _Run) -> None:
        events, run.events = run.events, []
        for event in events:
            try:
                self.notifier.publish(event)
            except Exception:
                logger.exception("Status notification failed for %s", event.environment_id)

    def _result(self, run: _Run, outcome: Outcome, reason: str = "",
                error: ErrorRecord | None = None) -> ReconcileResult:
        record = run.record
        return ReconcileResult(
            environment_id=run.environment_id,
            outcome=outcome,
            state=record.state if record else None,
            generation=record.generation if record else 0,
            intent_id=run.intent_id,
            reason=reason,
            error=error,
        )
