"""
Ephemera — Error Taxonomy

  Transient  — rate limited, timed out, not-yet-visible. Retried with
               backoff inside the reconciler; only surfaces once the
               retry budget is spent.
  Conflict   — stale generation, lease held or lost. Never retried
               blindly; the caller re-reads and resubmits.
  Permanent  — quota exceeded, invalid spec, foreign resource state.
               Surfaced immediately; environment goes Degraded.
"""

from __future__ import annotations

from infra.retry import DeadlineExceeded, RetryExhausted

__all__ = [
    "EphemeraError",
    "ProvisionerError",
    "TransientError",
    "PermanentError",
    "BackpressureError",
    "ConflictError",
    "StaleGenerationError",
    "LeaseLostError",
    "EnvironmentNotFound",
    "InvalidTransition",
    "InvariantViolation",
    "DeadlineExceeded",
    "RetryExhausted",
]


class EphemeraError(Exception):
    """Base class for control plane errors."""
    pass


# ─── Provisioner ─────────────────────────────────────────────────────

class ProvisionerError(EphemeraError):
    """
    Error raised by a Resource Provisioner call.

    `kind` is a short machine-readable reason (rate_limited,
    quota_exceeded, invalid_spec, ...) recorded on the environment.
    """
    default_kind = "provisioner_error"

    def __init__(self, message: str, kind: str = ""):
        self.kind = kind or self.default_kind
        super().__init__(message)


class TransientError(ProvisionerError):
    default_kind = "transient"


class PermanentError(ProvisionerError):
    default_kind = "permanent"


class BackpressureError(TransientError):
    """No provisioner slot freed up within the throttle's queue timeout."""
    default_kind = "backpressure"


# ─── Conflicts ───────────────────────────────────────────────────────

class ConflictError(EphemeraError):
    """Concurrent modification detected. Re-read state and resubmit."""
    pass


class StaleGenerationError(ConflictError):
    """A write or intent presented a generation the record has moved past."""

    def __init__(self, environment_id: str, expected: int | None, actual: int):
        self.environment_id = environment_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Environment {environment_id}: expected generation {expected}, "
            f"current is {actual}"
        )


class LeaseLostError(ConflictError):
    """The mutation lease expired or was taken over mid-reconciliation."""

    def __init__(self, environment_id: str, owner: str):
        self.environment_id = environment_id
        self.owner = owner
        super().__init__(f"Lease for {environment_id} no longer held by {owner}")


# ─── Lifecycle ───────────────────────────────────────────────────────

class EnvironmentNotFound(EphemeraError):
    """Raised when an intent other than deploy targets an absent environment."""

    def __init__(self, environment_id: str):
        self.environment_id = environment_id
        super().__init__(f"environment does not exist: {environment_id}")


class InvalidTransition(EphemeraError):
    """Raised when an intent is not allowed from the current state."""
    pass


class InvariantViolation(EphemeraError):
    """A write would break a registry invariant (e.g. deleting with resources)."""
    pass
