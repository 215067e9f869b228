"""
Ephemera — Environment Lifecycle

The control loop for ephemeral per-change-request preview environments:
an optimistic-concurrency registry, an intent queue with coalescing,
per-environment leased workers, the reconciler state machine, and a
staleness sweeper that proposes cleanup.

Usage:
    from lifecycle.runtime import ControlPlane

    plane = ControlPlane.from_config()
    plane.deploy("1234")
    plane.wait_idle()
    print(plane.get("1234").state)
"""

from lifecycle.types import (
    Environment,
    EnvironmentState,
    Intent,
    IntentAction,
    IntentSource,
    Observation,
    ResourceHandle,
    ResourceKind,
    ResourceSet,
    ServiceSpec,
    NamingScheme,
    StatusEvent,
)
from lifecycle.errors import (
    EphemeraError,
    ConflictError,
    StaleGenerationError,
    LeaseLostError,
    TransientError,
    PermanentError,
)

__all__ = [
    "Environment",
    "EnvironmentState",
    "Intent",
    "IntentAction",
    "IntentSource",
    "Observation",
    "ResourceHandle",
    "ResourceKind",
    "ResourceSet",
    "ServiceSpec",
    "NamingScheme",
    "StatusEvent",
    "EphemeraError",
    "ConflictError",
    "StaleGenerationError",
    "LeaseLostError",
    "TransientError",
    "PermanentError",
]
