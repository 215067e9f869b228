"""
Ephemera — Environment State Machine

Pure logic, no I/O. Decides what a reconciliation must do for a
(current state, intent action) pair and guards every state change.
The reconciler wires this to the provisioner and the registry.

    (absent)/Deleted  + deploy   → provision from scratch
    Requested/Provisioning/Degraded/Restarting + deploy → resume provisioning
    Active            + deploy   → update in place (re-ensure everything)
    Draining          + deploy   → finish draining, then provision
    Active/Restarting + restart  → restart services in place
    anything live     + cleanup  → drain to Deleted
    (absent)/Deleted  + restart|cleanup → rejected, environment does not exist
"""

from __future__ import annotations

import enum

from lifecycle.errors import InvalidTransition
from lifecycle.types import EnvironmentState, IntentAction

S = EnvironmentState


class Plan(str, enum.Enum):
    PROVISION = "provision"
    RESUME_PROVISION = "resume_provision"
    UPDATE = "update"
    RESTART = "restart"
    DRAIN = "drain"
    DRAIN_THEN_PROVISION = "drain_then_provision"
    REJECT_NOT_FOUND = "reject_not_found"
    REJECT_INVALID = "reject_invalid"


# Allowed transitions: from_state → set of valid to_states
_TRANSITIONS: dict[EnvironmentState, set[EnvironmentState]] = {
    S.REQUESTED:    {S.PROVISIONING, S.DRAINING, S.DEGRADED},
    S.PROVISIONING: {S.ACTIVE, S.DRAINING, S.DEGRADED},
    S.ACTIVE:       {S.PROVISIONING, S.RESTARTING, S.DRAINING, S.DEGRADED},
    S.RESTARTING:   {S.ACTIVE, S.PROVISIONING, S.DRAINING, S.DEGRADED},
    S.DRAINING:     {S.DELETED, S.DEGRADED},
    S.DEGRADED:     {S.PROVISIONING, S.DRAINING},
    S.DELETED:      {S.REQUESTED},
}

_PLANS: dict[tuple[EnvironmentState, IntentAction], Plan] = {
    (S.DELETED, IntentAction.DEPLOY): Plan.PROVISION,
    (S.REQUESTED, IntentAction.DEPLOY): Plan.RESUME_PROVISION,
    (S.PROVISIONING, IntentAction.DEPLOY): Plan.RESUME_PROVISION,
    (S.DEGRADED, IntentAction.DEPLOY): Plan.RESUME_PROVISION,
    (S.RESTARTING, IntentAction.DEPLOY): Plan.RESUME_PROVISION,
    (S.ACTIVE, IntentAction.DEPLOY): Plan.UPDATE,
    (S.DRAINING, IntentAction.DEPLOY): Plan.DRAIN_THEN_PROVISION,

    (S.ACTIVE, IntentAction.RESTART): Plan.RESTART,
    (S.RESTARTING, IntentAction.RESTART): Plan.RESTART,

    (S.REQUESTED, IntentAction.CLEANUP): Plan.DRAIN,
    (S.PROVISIONING, IntentAction.CLEANUP): Plan.DRAIN,
    (S.ACTIVE, IntentAction.CLEANUP): Plan.DRAIN,
    (S.RESTARTING, IntentAction.CLEANUP): Plan.DRAIN,
    (S.DEGRADED, IntentAction.CLEANUP): Plan.DRAIN,
    (S.DRAINING, IntentAction.CLEANUP): Plan.DRAIN,
}


def plan(state: EnvironmentState | None, action: IntentAction) -> Plan:
    """
    Decide what handling `action` requires from `state`.

    `state` is None when no record exists yet.
    """
    if state is None:
        return Plan.PROVISION if action == IntentAction.DEPLOY else Plan.REJECT_NOT_FOUND
    if state == S.DELETED and action != IntentAction.DEPLOY:
        return Plan.REJECT_NOT_FOUND
    return _PLANS.get((state, action), Plan.REJECT_INVALID)


def can_transition(from_state: EnvironmentState, to_state: EnvironmentState) -> bool:
    return to_state in _TRANSITIONS.get(from_state, set())


def assert_transition(from_state: EnvironmentState, to_state: EnvironmentState) -> None:
    """Raise InvalidTransition unless from_state → to_state is allowed."""
    if not can_transition(from_state, to_state):
        allowed = sorted(s.value for s in _TRANSITIONS.get(from_state, set()))
        raise InvalidTransition(
            f"{from_state.value} → {to_state.value} is not allowed. "
            f"Valid transitions: {allowed}"
        )
