"""
Ephemera — Resource Provisioner

Capability interface the reconciler drives, plus an in-memory cluster
used for local runs and tests.

Every operation is idempotent on its logical inputs: ensure_* returns
the existing resource when one with the expected name is present, and
remove_* is a no-op when the target is already gone. Failures are
raised as TransientError (retry) or PermanentError (degrade).
"""

from __future__ import annotations

import abc
import enum
import threading
import time
from collections import Counter
from typing import Any

from lifecycle.errors import PermanentError, TransientError
from lifecycle.types import ResourceHandle, ResourceKind, ServiceSpec


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ResourceProvisioner(abc.ABC):
    """
    Cluster, routing, DNS and cache operations for one environment.

    Names passed in come from the naming contract; implementations
    must use them verbatim so ownership can be rediscovered by name.
    """

    # ─── Create / update ─────────────────────────────────────────────

    @abc.abstractmethod
    def ensure_namespace(self, name: str) -> ResourceHandle:
        ...

    @abc.abstractmethod
    def ensure_cache(self, namespace: ResourceHandle, prefix: str) -> ResourceHandle:
        ...

    @abc.abstractmethod
    def ensure_service(self, namespace: ResourceHandle, name: str,
                       spec: ServiceSpec) -> ResourceHandle:
        """Create the service, or converge an existing one to `spec`."""
        ...

    @abc.abstractmethod
    def ensure_route(self, namespace: ResourceHandle, service: ResourceHandle,
                     name: str, path_prefix: str) -> ResourceHandle:
        ...

    @abc.abstractmethod
    def ensure_dns(self, namespace: ResourceHandle, name: str) -> ResourceHandle:
        ...

    @abc.abstractmethod
    def restart_service(self, namespace: ResourceHandle,
                        service: ResourceHandle) -> ResourceHandle:
        """Replace the service's instances in place, keeping its identity."""
        ...

    # ─── Remove (no-op when absent) ──────────────────────────────────

    @abc.abstractmethod
    def remove_route(self, route: ResourceHandle) -> None:
        ...

    @abc.abstractmethod
    def remove_service(self, service: ResourceHandle) -> None:
        ...

    @abc.abstractmethod
    def remove_dns(self, dns: ResourceHandle) -> None:
        ...

    @abc.abstractmethod
    def remove_cache(self, cache: ResourceHandle) -> None:
        ...

    @abc.abstractmethod
    def remove_namespace(self, namespace: ResourceHandle) -> None:
        ...

    # ─── Health ──────────────────────────────────────────────────────

    @abc.abstractmethod
    def check_health(self, service: ResourceHandle) -> HealthStatus:
        ...


# ═══════════════════════════════════════════════════════════════════
# In-Memory Cluster
# ═══════════════════════════════════════════════════════════════════

class InMemoryProvisioner(ResourceProvisioner):
    """
    Simulated cluster kept in dicts.

    Test hooks:
      calls         — ordered (operation, name) log of every invocation
      created       — Counter of (kind, name) creations; >1 means a duplicate
      inject()      — make an operation raise the next N times
      set_health()  — script check_health results per service name
      latency       — seconds each call sleeps (to widen race windows)
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.resources: dict[ResourceKind, dict[str, dict[str, Any]]] = {
            kind: {} for kind in ResourceKind
        }
        self.calls: list[tuple[str, str]] = []
        self.created: Counter = Counter()
        self._faults: dict[str, list[BaseException]] = {}
        self._health: dict[str, list[HealthStatus]] = {}
        self._seq = 0
        self._lock = threading.RLock()

    # ─── Test hooks ──────────────────────────────────────────────────

    def inject(self, operation: str, error: BaseException, times: int = 1) -> None:
        """Raise `error` from the next `times` calls to `operation`."""
        with self._lock:
            self._faults.setdefault(operation, []).extend([error] * times)

    def set_health(self, service_name: str, *statuses: HealthStatus) -> None:
        """Script results; the last status repeats once the script runs out."""
        with self._lock:
            self._health[service_name] = list(statuses)

    def exists(self, kind: ResourceKind, name: str) -> bool:
        with self._lock:
            return name in self.resources[kind]

    def names(self, kind: ResourceKind) -> list[str]:
        with self._lock:
            return sorted(self.resources[kind])

    def operations(self) -> list[str]:
        with self._lock:
            return [op for op, _ in self.calls]

    # ─── Internals ───────────────────────────────────────────────────

    def _enter(self, operation: str, name: str) -> None:
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            self.calls.append((operation, name))
            pending = self._faults.get(operation)
            if pending:
                raise pending.pop(0)

    def _ensure(self, kind: ResourceKind, name: str, **attrs) -> ResourceHandle:
        with self._lock:
            existing = self.resources[kind].get(name)
            if existing is not None:
                existing.update(attrs)
                return ResourceHandle(kind, name, existing["ref"])
            self._seq += 1
            ref = f"{kind.value}-{self._seq}"
            self.resources[kind][name] = {"ref": ref, **attrs}
            self.created[(kind, name)] += 1
            return ResourceHandle(kind, name, ref)

    def _remove(self, kind: ResourceKind, name: str) -> None:
        with self._lock:
            self.resources[kind].pop(name, None)

    def _require_namespace(self, namespace: ResourceHandle) -> None:
        if namespace.name not in self.resources[ResourceKind.NAMESPACE]:
            raise TransientError(
                f"namespace {namespace.name} not visible yet", kind="not_found")

    # ─── Create / update ─────────────────────────────────────────────

    def ensure_namespace(self, name: str) -> ResourceHandle:
        self._enter("ensure_namespace", name)
        return self._ensure(ResourceKind.NAMESPACE, name)

    def ensure_cache(self, namespace: ResourceHandle, prefix: str) -> ResourceHandle:
        self._enter("ensure_cache", prefix)
        with self._lock:
            self._require_namespace(namespace)
            return self._ensure(ResourceKind.CACHE, prefix, namespace=namespace.name)

    def ensure_service(self, namespace: ResourceHandle, name: str,
                       spec: ServiceSpec) -> ResourceHandle:
        self._enter("ensure_service", name)
        if spec.replicas < 0:
            raise PermanentError(f"invalid replica count {spec.replicas}", kind="invalid_spec")
        with self._lock:
            self._require_namespace(namespace)
            return self._ensure(
                ResourceKind.SERVICE, name,
                namespace=namespace.name, spec=spec.to_dict(), revision=1,
            )

    def ensure_route(self, namespace: ResourceHandle, service: ResourceHandle,
                     name: str, path_prefix: str) -> ResourceHandle:
        self._enter("ensure_route", name)
        with self._lock:
            if service.name not in self.resources[ResourceKind.SERVICE]:
                raise PermanentError(
                    f"route {name} targets missing service {service.name}",
                    kind="dangling_route",
                )
            return self._ensure(
                ResourceKind.ROUTE, name,
                namespace=namespace.name, service=service.name, path_prefix=path_prefix,
            )

    def ensure_dns(self, namespace: ResourceHandle, name: str) -> ResourceHandle:
        self._enter("ensure_dns", name)
        with self._lock:
            self._require_namespace(namespace)
            return self._ensure(ResourceKind.DNS, name, namespace=namespace.name)

    def restart_service(self, namespace: ResourceHandle,
                        service: ResourceHandle) -> ResourceHandle:
        self._enter("restart_service", service.name)
        with self._lock:
            existing = self.resources[ResourceKind.SERVICE].get(service.name)
            if existing is None:
                raise PermanentError(
                    f"service {service.name} does not exist", kind="not_found")
            existing["revision"] = existing.get("revision", 1) + 1
            return ResourceHandle(ResourceKind.SERVICE, service.name, existing["ref"])

    # ─── Remove ──────────────────────────────────────────────────────

    def remove_route(self, route: ResourceHandle) -> None:
        self._enter("remove_route", route.name)
        self._remove(ResourceKind.ROUTE, route.name)

    def remove_service(self, service: ResourceHandle) -> None:
        self._enter("remove_service", service.name)
        with self._lock:
            for route_name, route in self.resources[ResourceKind.ROUTE].items():
                if route.get("service") == service.name:
                    raise PermanentError(
                        f"service {service.name} still routed by {route_name}",
                        kind="dependency",
                    )
            self._remove(ResourceKind.SERVICE, service.name)

    def remove_dns(self, dns: ResourceHandle) -> None:
        self._enter("remove_dns", dns.name)
        self._remove(ResourceKind.DNS, dns.name)

    def remove_cache(self, cache: ResourceHandle) -> None:
        self._enter("remove_cache", cache.name)
        self._remove(ResourceKind.CACHE, cache.name)

    def remove_namespace(self, namespace: ResourceHandle) -> None:
        self._enter("remove_namespace", namespace.name)
        with self._lock:
            for kind in (ResourceKind.SERVICE, ResourceKind.ROUTE,
                         ResourceKind.DNS, ResourceKind.CACHE):
                for name, attrs in self.resources[kind].items():
                    if attrs.get("namespace") == namespace.name:
                        raise PermanentError(
                            f"namespace {namespace.name} still holds {kind.value} {name}",
                            kind="dependency",
                        )
            self._remove(ResourceKind.NAMESPACE, namespace.name)

    # ─── Health ──────────────────────────────────────────────────────

    def check_health(self, service: ResourceHandle) -> HealthStatus:
        self._enter("check_health", service.name)
        with self._lock:
            if service.name not in self.resources[ResourceKind.SERVICE]:
                return HealthStatus.UNKNOWN
            script = self._health.get(service.name)
            if not script:
                return HealthStatus.HEALTHY
            if len(script) > 1:
                return script.pop(0)
            return script[0]
