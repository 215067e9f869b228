"""
Ephemera — Lifecycle Type Definitions

Data structures for environments, intents, observations, provisioned
resource handles, status events, and the naming contract every
provisioned resource follows.
"""

from __future__ import annotations

import enum
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any


# ─── States & Actions ────────────────────────────────────────────────

class EnvironmentState(str, enum.Enum):
    """Lifecycle states for a preview environment."""
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    RESTARTING = "restarting"
    DRAINING = "draining"
    DELETED = "deleted"
    DEGRADED = "degraded"


class IntentAction(str, enum.Enum):
    DEPLOY = "deploy"
    RESTART = "restart"
    CLEANUP = "cleanup"


class IntentSource(str, enum.Enum):
    """Where an intent came from."""
    MANUAL = "manual"          # explicit operator command (/deploy comment)
    AUTOMATIC = "automatic"    # change-request opened/updated
    SWEEPER = "sweeper"


# States the sweeper inspects
SWEEPABLE_STATES = frozenset({
    EnvironmentState.ACTIVE,
    EnvironmentState.PROVISIONING,
    EnvironmentState.DEGRADED,
})

# States that emit a status event when entered
TERMINAL_STATUS_STATES = frozenset({
    EnvironmentState.ACTIVE,
    EnvironmentState.DEGRADED,
    EnvironmentState.DELETED,
})


# ─── Resources ───────────────────────────────────────────────────────

class ResourceKind(str, enum.Enum):
    NAMESPACE = "namespace"
    CACHE = "cache"
    SERVICE = "service"
    ROUTE = "route"
    DNS = "dns"


@dataclass(frozen=True)
class ResourceHandle:
    """
    Opaque handle returned by the provisioner.

    `name` follows the naming contract and is enough to find the
    resource again; `ref` is whatever id the platform assigned.
    """
    kind: ResourceKind
    name: str
    ref: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "name": self.name, "ref": self.ref}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ResourceHandle:
        return ResourceHandle(
            kind=ResourceKind(data["kind"]),
            name=data["name"],
            ref=data.get("ref", ""),
        )


@dataclass
class ResourceSet:
    """
    Resources owned by one environment, populated incrementally as
    provisioning succeeds. Services and routes are keyed by service name.
    """
    namespace: ResourceHandle | None = None
    cache: ResourceHandle | None = None
    services: dict[str, ResourceHandle] = field(default_factory=dict)
    routes: dict[str, ResourceHandle] = field(default_factory=dict)
    dns: ResourceHandle | None = None

    def is_empty(self) -> bool:
        return (
            self.namespace is None
            and self.cache is None
            and not self.services
            and not self.routes
            and self.dns is None
        )

    def handles(self) -> list[ResourceHandle]:
        """All handles in creation order."""
        out: list[ResourceHandle] = []
        if self.namespace:
            out.append(self.namespace)
        if self.cache:
            out.append(self.cache)
        out.extend(self.services[k] for k in sorted(self.services))
        out.extend(self.routes[k] for k in sorted(self.routes))
        if self.dns:
            out.append(self.dns)
        return out

    def summary(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace.name if self.namespace else None,
            "cache": self.cache.name if self.cache else None,
            "services": sorted(h.name for h in self.services.values()),
            "routes": sorted(h.name for h in self.routes.values()),
            "dns": self.dns.name if self.dns else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace.to_dict() if self.namespace else None,
            "cache": self.cache.to_dict() if self.cache else None,
            "services": {k: v.to_dict() for k, v in self.services.items()},
            "routes": {k: v.to_dict() for k, v in self.routes.items()},
            "dns": self.dns.to_dict() if self.dns else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> ResourceSet:
        data = data or {}

        def _one(key: str) -> ResourceHandle | None:
            raw = data.get(key)
            return ResourceHandle.from_dict(raw) if raw else None

        return ResourceSet(
            namespace=_one("namespace"),
            cache=_one("cache"),
            services={k: ResourceHandle.from_dict(v)
                      for k, v in (data.get("services") or {}).items()},
            routes={k: ResourceHandle.from_dict(v)
                    for k, v in (data.get("routes") or {}).items()},
            dns=_one("dns"),
        )


@dataclass
class ServiceSpec:
    """Declared compute service for every environment."""
    name: str
    image: str = ""
    replicas: int = 1
    health_check_path: str = "/healthz"
    path_prefix: str = "/"
    env: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ServiceSpec:
        return ServiceSpec(
            name=str(data["name"]),
            image=str(data.get("image", "")),
            replicas=int(data.get("replicas", 1)),
            health_check_path=str(data.get("health_check_path", "/healthz")),
            path_prefix=str(data.get("path_prefix", "/")),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "replicas": self.replicas,
            "health_check_path": self.health_check_path,
            "path_prefix": self.path_prefix,
            "env": dict(self.env),
        }


DEFAULT_SERVICES = [ServiceSpec(name="web")]


# ─── Naming Contract ─────────────────────────────────────────────────

_ID_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,38}[a-z0-9])?$")


def validate_environment_id(environment_id: Any) -> list[str]:
    """Return validation errors for an environment identifier."""
    if environment_id is None or str(environment_id).strip() == "":
        return ["environment_id is required"]
    if not _ID_PATTERN.match(str(environment_id)):
        return [
            "environment_id must be 1-40 lowercase letters, digits or '-', "
            "starting and ending with a letter or digit"
        ]
    return []


@dataclass(frozen=True)
class NamingScheme:
    """
    Deterministic resource names derived from the environment id.

    Ownership of any resource can be reconstructed from its name alone,
    so "already exists" checks and teardown need no separate index.
    Valid ids are already DNS-label safe and are used verbatim, so two
    distinct ids never map to the same names.
    """
    prefix: str = "pr"
    domain: str = "preview.local"

    def namespace(self, environment_id: str) -> str:
        return f"{self.prefix}-{environment_id}"

    def cache_prefix(self, environment_id: str) -> str:
        return f"{self.namespace(environment_id)}:"

    def service(self, environment_id: str, service_name: str) -> str:
        return f"{self.namespace(environment_id)}-{service_name}"

    def route(self, environment_id: str, service_name: str) -> str:
        return f"{self.namespace(environment_id)}-{service_name}-route"

    def dns(self, environment_id: str) -> str:
        return f"{self.namespace(environment_id)}.{self.domain}"

    def expected_resources(
        self,
        environment_id: str,
        services: list[ServiceSpec],
    ) -> ResourceSet:
        """Handles every declared resource would have, by name only."""
        return ResourceSet(
            namespace=ResourceHandle(ResourceKind.NAMESPACE, self.namespace(environment_id)),
            cache=ResourceHandle(ResourceKind.CACHE, self.cache_prefix(environment_id)),
            services={
                s.name: ResourceHandle(ResourceKind.SERVICE, self.service(environment_id, s.name))
                for s in services
            },
            routes={
                s.name: ResourceHandle(ResourceKind.ROUTE, self.route(environment_id, s.name))
                for s in services
            },
            dns=ResourceHandle(ResourceKind.DNS, self.dns(environment_id)),
        )


# ─── Environment ─────────────────────────────────────────────────────

@dataclass
class ErrorRecord:
    """Last error seen on an environment, kept for observability."""
    kind: str
    message: str
    retry_count: int = 0
    at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retry_count": self.retry_count,
            "at": self.at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> ErrorRecord | None:
        if not data:
            return None
        return ErrorRecord(
            kind=data["kind"],
            message=data.get("message", ""),
            retry_count=int(data.get("retry_count", 0)),
            at=float(data.get("at", 0.0)),
        )


@dataclass
class Environment:
    """
    Registry record for one change-request's environment.
    Mutated only by the reconciler holding the environment's lease.
    """
    id: str
    state: EnvironmentState
    generation: int = 0
    resources: ResourceSet = field(default_factory=ResourceSet)
    last_activity_at: float = 0.0
    closed: bool = False
    last_error: ErrorRecord | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    last_intent_id: str = ""

    @staticmethod
    def create(environment_id: str, now: float | None = None) -> Environment:
        now = now if now is not None else time.time()
        return Environment(
            id=str(environment_id),
            state=EnvironmentState.REQUESTED,
            generation=0,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_deleted(self) -> bool:
        return self.state == EnvironmentState.DELETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "generation": self.generation,
            "resources": self.resources.summary(),
            "last_activity_at": self.last_activity_at,
            "closed": self.closed,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_intent_id": self.last_intent_id,
        }


# ─── Intents & Observations ──────────────────────────────────────────

@dataclass
class Intent:
    """A single requested lifecycle action for one environment."""
    environment_id: str
    action: IntentAction
    source: IntentSource = IntentSource.MANUAL
    requested_at: float = 0.0
    submitted_generation: int | None = None
    intent_id: str = ""

    @staticmethod
    def create(
        environment_id: str,
        action: IntentAction | str,
        source: IntentSource | str = IntentSource.MANUAL,
        submitted_generation: int | None = None,
        requested_at: float | None = None,
    ) -> Intent:
        return Intent(
            environment_id=str(environment_id),
            action=IntentAction(action),
            source=IntentSource(source),
            requested_at=requested_at if requested_at is not None else time.time(),
            submitted_generation=submitted_generation,
            intent_id=f"int_{uuid.uuid4().hex[:12]}",
        )


@dataclass
class Observation:
    """
    Externally observed fact about an environment (traffic seen,
    change-request closed). Applied under the lease like an intent,
    but never changes lifecycle state.
    """
    environment_id: str
    activity_at: float | None = None
    closed: bool | None = None
    observed_at: float = 0.0
    observation_id: str = ""

    @staticmethod
    def create(
        environment_id: str,
        activity_at: float | None = None,
        closed: bool | None = None,
    ) -> Observation:
        return Observation(
            environment_id=str(environment_id),
            activity_at=activity_at,
            closed=closed,
            observed_at=time.time(),
            observation_id=f"obs_{uuid.uuid4().hex[:12]}",
        )


# ─── Status Surface ──────────────────────────────────────────────────

@dataclass
class StatusEvent:
    """Emitted after Active, Degraded or Deleted is reached, and on conflicts."""
    environment_id: str
    state: EnvironmentState
    generation: int
    resources_summary: dict[str, Any]
    error: ErrorRecord | None = None
    intent_id: str = ""
    emitted_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "environment_id": self.environment_id,
            "state": self.state.value,
            "generation": self.generation,
            "resources_summary": self.resources_summary,
            "intent_id": self.intent_id,
            "emitted_at": self.emitted_at,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload
