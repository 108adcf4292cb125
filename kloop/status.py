"""
This module holds the common functionality used to represent the status of
reconciled resources.

Status is controller-authored and holds:

* observedGeneration: the metadata.generation the controller last processed
* conditions: a list of conditions keyed by "type"

A condition has the schema:
{
    "type": "Available",
    "status": "True" | "False" | "Unknown",
    "reason": "CamelCaseReason",
    "message": "Human readable detail",
    "lastTransitionTime": "2024-01-01T00:00:00Z",
}

lastTransitionTime only moves when status changes.
"""

# Standard
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .constants import TIMESTAMP_FORMAT
from .resource import Resource

log = alog.use_channel("STTUS")

## Public ######################################################################

# The "type" values of the conditions managed by the runtime
AVAILABLE_CONDITION = "Available"
DEGRADED_CONDITION = "Degraded"
READY_CONDITION = "Ready"

# Status keys
CONDITIONS_KEY = "conditions"
OBSERVED_GENERATION_KEY = "observedGeneration"
TIMESTAMP_KEY = "lastTransitionTime"


class ConditionStatus(Enum):
    """The tri-state value of a condition"""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class AvailableReason(Enum):
    """Reason constants for the Available condition"""

    # All dependents exist and report ready
    READY = "Ready"

    # Dependents were created or are not yet ready
    CREATING = "Creating"


class DegradedReason(Enum):
    """Reason constants for the Degraded condition"""

    # The last reconcile converged without error
    RECONCILED = "Reconciled"

    # The desired state is malformed and will not converge until edited
    INVALID_SPEC = "InvalidSpec"

    # The last reconcile failed and will be retried with backoff
    RECONCILE_ERROR = "ReconcileError"

    # External cleanup during deletion failed
    CLEANUP_FAILED = "CleanupFailed"


@dataclass
class Condition:
    """One entry of status.conditions"""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None

    @classmethod
    def from_dict(cls, condition: dict) -> "Condition":
        return cls(
            type=condition.get("type"),
            status=ConditionStatus(condition.get("status", "Unknown")),
            reason=condition.get("reason", ""),
            message=condition.get("message", ""),
            last_transition_time=condition.get(TIMESTAMP_KEY),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            TIMESTAMP_KEY: self.last_transition_time,
        }


def make_condition(
    condition_type: str,
    status: Union[bool, ConditionStatus],
    reason: Union[Enum, str] = "",
    message: str = "",
) -> Condition:
    """Helper to build a Condition from python values"""
    if isinstance(status, bool):
        status = ConditionStatus.TRUE if status else ConditionStatus.FALSE
    if isinstance(reason, Enum):
        reason = reason.value
    return Condition(
        type=condition_type, status=status, reason=reason, message=message
    )


def get_condition(condition_type: str, current_status: dict) -> dict:
    """Get the condition of the given type from the status dict, or an empty
    dict if it is not present
    """
    for condition in current_status.get(CONDITIONS_KEY, []):
        if condition.get("type") == condition_type:
            return condition
    return {}


def is_condition_true(condition_type: str, current_status: dict) -> bool:
    """Check whether the condition of the given type has status True"""
    return (
        get_condition(condition_type, current_status).get("status")
        == ConditionStatus.TRUE.value
    )


def set_condition(current_status: dict, condition: Condition) -> dict:
    """Set a condition in the given status dict in place. Conditions are keyed
    by type, and the transition time is carried over from the existing
    condition unless the status value changed.

    Args:
        current_status:  dict
            The status dict to update
        condition:  Condition
            The new value for the condition

    Returns:
        current_status:  dict
            The updated status dict
    """
    conditions = current_status.setdefault(CONDITIONS_KEY, [])
    existing = None
    for index, cond in enumerate(conditions):
        if cond.get("type") == condition.type:
            existing = index
            break

    new_condition = condition.to_dict()
    if existing is not None:
        old_condition = conditions[existing]
        if old_condition.get("status") == condition.status.value:
            new_condition[TIMESTAMP_KEY] = old_condition.get(TIMESTAMP_KEY)
        else:
            new_condition[TIMESTAMP_KEY] = _now()
        log.debug3("Updating condition %s: %s", condition.type, new_condition)
        conditions[existing] = new_condition
    else:
        new_condition[TIMESTAMP_KEY] = _now()
        log.debug3("Adding condition %s: %s", condition.type, new_condition)
        conditions.append(new_condition)
    return current_status


def set_observed_generation(current_status: dict, generation: Optional[int]) -> dict:
    """Record the generation the controller has processed"""
    current_status[OBSERVED_GENERATION_KEY] = generation
    return current_status


def is_status_stale(resource: Resource) -> bool:
    """A resource is stale if the controller has not yet observed its current
    desired-state generation
    """
    return resource.observed_generation != resource.generation


def make_updated_status(
    current_status: dict,
    conditions: List[Condition],
    observed_generation: Optional[int] = None,
) -> dict:
    """Create an updated copy of a status with the given conditions applied.
    Conditions of other types and other status keys are preserved.

    Args:
        current_status:  dict
            The current status of the resource
        conditions:  List[Condition]
            The conditions to set
        observed_generation:  Optional[int]
            If not None, the generation to record as observed

    Returns:
        updated_status:  dict
            The new status. The input is not modified
    """
    updated_status = copy.deepcopy(current_status or {})
    for condition in conditions:
        set_condition(updated_status, condition)
    if observed_generation is not None:
        set_observed_generation(updated_status, observed_generation)
    return updated_status


def status_changed(current_status: dict, updated_status: dict) -> bool:
    """Check whether two status dicts differ in a way worth persisting"""
    diff = DeepDiff(current_status or {}, updated_status or {}, ignore_order=True)
    if diff:
        log.debug4("Status diff: %s", diff)
    return bool(diff)


## Implementation Details ######################################################


def _now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
