"""Helpers for Cluster API style status conditions.

Conditions are stored as immutable tuples; every helper returns a new tuple.
``lastTransitionTime`` only moves when a condition's status flips.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import Condition, ConditionSeverity, ConditionStatus

# Machine condition types
INSTANCE_PROVISIONED = "InstanceProvisioned"
NETWORK_ATTACHED = "NetworkAttached"
BOOTSTRAP_READY = "BootstrapReady"

# Cluster condition types
CREDENTIALS_RESOLVED = "CredentialsResolved"
LOCATION_AVAILABLE = "LocationAvailable"
ENDPOINT_PUBLISHED = "EndpointPublished"

# Shared condition types
READY = "Ready"
DEGRADED = "Degraded"

# Reasons
WAITING_FOR_CLUSTER = "WaitingForClusterInfrastructure"
WAITING_FOR_BOOTSTRAP_DATA = "WaitingForBootstrapData"
WAITING_FOR_BOOTSTRAP = "WaitingForBootstrap"
WAITING_FOR_MACHINES = "WaitingForMachines"
WAITING_FOR_SECRET = "WaitingForCredentialsSecret"
REQUEST_IN_PROGRESS = "RequestInProgress"
REQUEST_STALE = "RequestStale"
TRANSIENT_ERROR = "TransientError"
INVALID_CREDENTIALS = "InvalidCredentials"
LOCATION_NOT_FOUND = "LocationNotFound"
CREATE_ERROR = "CreateError"
NETWORK_ERROR = "NetworkError"
DELETE_ERROR = "DeleteError"
INSTANCE_NOT_FOUND = "InstanceNotFound"
DELETING = "Deleting"


def get_condition(conditions: tuple[Condition, ...], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_true(conditions: tuple[Condition, ...], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(
    conditions: tuple[Condition, ...],
    condition: Condition,
    now: datetime | None = None,
) -> tuple[Condition, ...]:
    """Insert or replace ``condition``, keeping the list sorted by type.

    The transition time of an existing condition is kept when its status did
    not change, so repeated passes do not churn the status.
    """
    existing = get_condition(conditions, condition.type)
    if existing is not None and existing.status == condition.status:
        transition = existing.last_transition_time
    else:
        transition = now or datetime.now(UTC)
    condition = condition.model_copy(update={"last_transition_time": transition})

    if existing is not None and existing == condition:
        return conditions

    others = [c for c in conditions if c.type != condition.type]
    # Ready first, the rest alphabetically
    return tuple(sorted([*others, condition], key=lambda c: (c.type != READY, c.type)))


def mark_true(
    conditions: tuple[Condition, ...],
    condition_type: str,
    now: datetime | None = None,
) -> tuple[Condition, ...]:
    return set_condition(
        conditions,
        Condition(type=condition_type, status=ConditionStatus.TRUE),
        now,
    )


def mark_false(
    conditions: tuple[Condition, ...],
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
    now: datetime | None = None,
) -> tuple[Condition, ...]:
    return set_condition(
        conditions,
        Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            reason=reason,
            severity=severity,
            message=message,
        ),
        now,
    )


def mark_degraded(
    conditions: tuple[Condition, ...],
    reason: str,
    message: str,
    now: datetime | None = None,
) -> tuple[Condition, ...]:
    """Record a transient problem without touching the phase."""
    return set_condition(
        conditions,
        Condition(
            type=DEGRADED,
            status=ConditionStatus.TRUE,
            reason=reason,
            severity=ConditionSeverity.WARNING,
            message=message,
        ),
        now,
    )


def clear_condition(
    conditions: tuple[Condition, ...], condition_type: str
) -> tuple[Condition, ...]:
    return tuple(c for c in conditions if c.type != condition_type)
