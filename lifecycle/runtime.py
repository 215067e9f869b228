"""
Ephemera — Control Plane Runtime

Wires registry, leases, provisioner, queue, reconciler, dispatcher and
sweeper into one object driven from configuration. Everything outside
the lifecycle package (HTTP surface, CLI) talks to a ControlPlane.

    plane = ControlPlane.from_config()
    plane.start()
    plane.deploy("1234")
    plane.wait_idle()
    plane.get("1234").state        # EnvironmentState.ACTIVE
"""

from __future__ import annotations

import importlib
import logging
import time
from typing import Any, Callable

from infra.config import load_config
from infra.notifier import StatusNotifier, build_notifier
from infra.retry import RetryPolicy, get_retry_policy
from lifecycle.dispatcher import Dispatcher
from lifecycle.intents import IntentQueue, SubmitResult
from lifecycle.lease import LeaseManager, create_lease_manager
from lifecycle.provisioner import InMemoryProvisioner, ResourceProvisioner
from lifecycle.reconciler import HealthWaitConfig, Reconciler
from lifecycle.store import EnvironmentRegistry, create_registry
from lifecycle.sweeper import StalenessSweeper, SweeperConfig, SweepProposal
from lifecycle.throttle import ProvisionerThrottle, ThrottleConfig
from lifecycle.types import (
    DEFAULT_SERVICES,
    Environment,
    EnvironmentState,
    Intent,
    IntentAction,
    IntentSource,
    NamingScheme,
    Observation,
    ServiceSpec,
)

logger = logging.getLogger("ephemera.runtime")


def load_services(config: dict[str, Any]) -> list[ServiceSpec]:
    """
    Declared services. A name that ends with "-<other declared name>"
    is refused: environment "a-x" with service "web" and environment "a"
    with service "x-web" would both own "pr-a-x-web".
    """
    raw = ((config.get("environment") or {}).get("services")) or []
    services = [ServiceSpec.from_dict(s) for s in raw] or list(DEFAULT_SERVICES)
    names = [s.name for s in services]
    if len(set(names)) != len(names):
        raise ValueError(f"environment.services declares a name twice: {names}")
    for name in names:
        clash = [other for other in names if name.endswith(f"-{other}")]
        if clash:
            raise ValueError(f"service {name!r} ends with declared service {clash[0]!r}; "
                             "resource names would be ambiguous")
    return services


def load_naming(config: dict[str, Any]) -> NamingScheme:
    env_cfg = config.get("environment") or {}
    return NamingScheme(
        prefix=str(env_cfg.get("prefix", "pr")),
        domain=str(env_cfg.get("domain", "preview.local")),
    )


def load_provisioner(config: dict[str, Any]) -> ResourceProvisioner:
    """
    Provisioner named by `provisioner.factory` ("package.module:callable").
    The callable receives the config dict. Empty means the in-memory cluster.
    """
    factory = ((config.get("provisioner") or {}).get("factory")) or ""
    if not factory:
        logger.info("Provisioner: in-memory cluster")
        return InMemoryProvisioner()
    module_name, _, attr = factory.partition(":")
    if not attr:
        raise ValueError(f"provisioner.factory must look like 'module:callable', got {factory!r}")
    module = importlib.import_module(module_name)
    provisioner = getattr(module, attr)(config)
    if not isinstance(provisioner, ResourceProvisioner):
        raise TypeError(f"{factory} returned {type(provisioner).__name__}, "
                        "not a ResourceProvisioner")
    logger.info("Provisioner: %s", factory)
    return provisioner


def check_lease_ttl(
    lease_ttl: float,
    health: HealthWaitConfig,
    policy: RetryPolicy,
    throttle: ThrottleConfig,
) -> None:
    """
    Refuse a lease TTL that a single reconciliation step could outlive.

    The reconciler renews before every write and every provisioner
    attempt, so the longest gap between renewals is one attempt (throttle
    queue + call deadline) plus the backoff after it. The TTL must also
    cover the whole health wait.
    """
    backoff = 0.0
    if policy.max_attempts > 1:
        backoff = min(policy.backoff_max,
                      policy.backoff_base * 2 ** (policy.max_attempts - 2)) * (1 + policy.jitter)
    attempt_gap = throttle.queue_timeout + (policy.call_timeout_seconds or 0.0) + backoff
    longest = max(health.timeout_seconds, health.poll_interval_seconds, attempt_gap)
    if lease_ttl <= longest:
        raise ValueError(
            f"lease.ttl_seconds ({lease_ttl:g}) must exceed {longest:g}s: the health "
            f"wait is {health.timeout_seconds:g}s and one provisioner attempt can "
            f"take {attempt_gap:g}s between lease renewals"
        )


class ControlPlane:
    """Facade over one process's share of the control loop."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        provisioner: ResourceProvisioner,
        lease_manager: LeaseManager,
        config: dict[str, Any] | None = None,
        notifier: StatusNotifier | None = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        cfg = config or {}
        self.config = cfg
        self.registry = registry
        self.provisioner = provisioner
        self.lease_manager = lease_manager
        self.clock = clock

        dispatch_cfg = cfg.get("dispatcher") or {}
        lease_cfg = cfg.get("lease") or {}
        lease_ttl = float(lease_cfg.get("ttl_seconds", 600.0))
        health = HealthWaitConfig.from_config(cfg)
        retry_policy = get_retry_policy(cfg)
        throttle_cfg = ThrottleConfig.from_config(cfg)
        check_lease_ttl(lease_ttl, health, retry_policy, throttle_cfg)

        self.queue = IntentQueue(
            coalesce_window=float(dispatch_cfg.get("coalesce_window_seconds", 2.0)),
            max_pending_per_environment=int(dispatch_cfg.get("max_pending_per_environment", 32)),
        )
        self.reconciler = Reconciler(
            registry=registry,
            provisioner=provisioner,
            naming=load_naming(cfg),
            services=load_services(cfg),
            retry_policy=retry_policy,
            throttle=ProvisionerThrottle(throttle_cfg),
            health=health,
            notifier=notifier or build_notifier(cfg),
            lease_manager=lease_manager,
            lease_ttl=lease_ttl,
            clock=clock,
            sleep_fn=sleep_fn,
        )
        self.dispatcher = Dispatcher(
            queue=self.queue,
            reconciler=self.reconciler,
            lease_manager=lease_manager,
            max_workers=int(dispatch_cfg.get("max_workers", 8)),
            lease_ttl=lease_ttl,
            lease_retry_seconds=float(lease_cfg.get("retry_seconds", 1.0)),
        )
        self.sweeper = StalenessSweeper(
            registry=registry,
            submit=self.dispatcher.submit,
            config=SweeperConfig.from_config(cfg),
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any] | None = None,
        provisioner: ResourceProvisioner | None = None,
        notifier: StatusNotifier | None = None,
    ) -> ControlPlane:
        cfg = config if config is not None else load_config()
        return cls(
            registry=create_registry(cfg),
            provisioner=provisioner or load_provisioner(cfg),
            lease_manager=create_lease_manager(cfg),
            config=cfg,
            notifier=notifier,
        )

    # ─── Intent submission ───────────────────────────────────────────

    def submit(
        self,
        environment_id: str,
        action: IntentAction | str,
        source: IntentSource | str = IntentSource.MANUAL,
        submitted_generation: int | None = None,
    ) -> SubmitResult:
        intent = Intent.create(
            environment_id, action, source,
            submitted_generation=submitted_generation,
            requested_at=self.clock(),
        )
        return self.dispatcher.submit(intent)

    def deploy(self, environment_id: str, **kwargs) -> SubmitResult:
        return self.submit(environment_id, IntentAction.DEPLOY, **kwargs)

    def restart(self, environment_id: str, **kwargs) -> SubmitResult:
        return self.submit(environment_id, IntentAction.RESTART, **kwargs)

    def cleanup(self, environment_id: str, **kwargs) -> SubmitResult:
        return self.submit(environment_id, IntentAction.CLEANUP, **kwargs)

    # ─── Observations ────────────────────────────────────────────────

    def record_activity(self, environment_id: str, at: float | None = None) -> SubmitResult:
        obs = Observation.create(environment_id,
                                 activity_at=at if at is not None else self.clock())
        return self.dispatcher.observe(obs)

    def mark_closed(self, environment_id: str, closed: bool = True) -> SubmitResult:
        return self.dispatcher.observe(Observation.create(environment_id, closed=closed))

    # ─── Reads ───────────────────────────────────────────────────────

    def get(self, environment_id: str) -> Environment | None:
        return self.registry.get(environment_id)

    def list(self, state: EnvironmentState | str | None = None,
             closed: bool | None = None, limit: int = 1000) -> list[Environment]:
        if state is None:
            return self.registry.list(closed=closed, limit=limit)
        return self.registry.list(states=[EnvironmentState(state)], closed=closed, limit=limit)

    def history(self, environment_id: str) -> list[dict[str, Any]]:
        return self.registry.history(environment_id)

    def sweep(self, now: float | None = None) -> list[SweepProposal]:
        return self.sweeper.run_once(now)

    def stats(self) -> dict[str, Any]:
        return {
            "environments": self.registry.stats(),
            "dispatcher": self.dispatcher.stats(),
            "throttle": self.reconciler.throttle.stats(),
        }

    # ─── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic sweeper. Workers start on demand."""
        self.sweeper.start()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.dispatcher.wait_idle(timeout)

    def stop(self, wait: bool = True) -> None:
        self.sweeper.stop()
        self.dispatcher.shutdown(wait=wait)
        self.lease_manager.close()
        self.registry.close()
