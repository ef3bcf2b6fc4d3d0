"""
This module holds the status condition aggregator shared by all reconcilers.

Every owner carries a list of conditions of the form:
{
    "type": "Ready",
    "status": "True" | "False" | "Unknown",
    "reason": "Ready",
    "message": "",
    "observedGeneration": 3,
    "lastTransitionTime": "2024-01-01T00:00:00Z",
}

There is at most one condition per type. Upserts keep the order in which types
were first added. The status subresource is only written when the conditions
(ignoring transition times) or other reported fields actually change, since a
status-only write would otherwise re-trigger the owner's own reconcile.
"""

# Standard
from typing import Any, Dict, List, Optional
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster
from .managed_object import ManagedObject
from .utils import format_timestamp, now

log = alog.use_channel("STTUS")

## Public ######################################################################

# Condition status values
TRUE = "True"
FALSE = "False"

# Condition types
READY_CONDITION = "Ready"
PROVISIONED_CONDITION = "Provisioned"
ROLLED_OUT_CONDITION = "RolledOut"
DATAPLANE_READY_CONDITION = "DataPlaneReady"
CONTROLPLANE_READY_CONDITION = "ControlPlaneReady"
GATEWAY_ACCEPTED_CONDITION = "GatewayAccepted"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"


class ConditionReason:  # pylint: disable=too-few-public-methods
    """Reason constants shared across condition types"""

    READY = "Ready"
    PROVISIONED = "Provisioned"
    DEPENDENCIES_NOT_READY = "DependenciesNotReady"
    RESOURCE_CREATED_OR_UPDATED = "ResourceCreatedOrUpdated"
    WAITING_TO_BECOME_READY = "WaitingToBecomeReady"
    VALIDATION_FAILED = "ValidationFailed"
    NO_DATAPLANE = "NoDataPlane"
    ACCEPTED = "Accepted"
    INVALID_PARAMETERS = "InvalidParameters"


def make_condition(
    type_name: str,
    status: str,
    reason: str,
    message: str = "",
    observed_generation: int = 0,
) -> dict:
    """Create a condition dict with the current time as the transition time"""
    return {
        "type": type_name,
        "status": status,
        "reason": reason,
        "message": message,
        "observedGeneration": observed_generation,
        TIMESTAMP_KEY: format_timestamp(now()),
    }


def get_condition(type_name: str, conditions: List[dict]) -> Optional[dict]:
    """Get the condition of the given type

    Args:
        type_name:  str
            The name of the condition to fetch
        conditions:  List[dict]
            The conditions of the owner

    Returns:
        condition:  Optional[dict]
            The condition if present, otherwise None
    """
    for cond in conditions or []:
        if cond.get("type") == type_name:
            return cond
    return None


def is_condition_true(type_name: str, conditions: List[dict]) -> bool:
    cond = get_condition(type_name, conditions)
    return cond is not None and cond.get("status") == TRUE


def set_condition(conditions: List[dict], condition: dict) -> List[dict]:
    """Upsert a condition by type. A condition whose status is unchanged keeps
    its original transition time. The list is updated in place and returned.
    """
    for idx, existing in enumerate(conditions):
        if existing.get("type") != condition["type"]:
            continue
        if existing.get("status") == condition["status"] and existing.get(
            TIMESTAMP_KEY
        ):
            condition = {**condition, TIMESTAMP_KEY: existing[TIMESTAMP_KEY]}
        conditions[idx] = condition
        return conditions
    conditions.append(condition)
    return conditions


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a transition timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current owner
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True
    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"['{TIMESTAMP_KEY}']"),
        )
    )


## Aggregator ##################################################################


class ConditionsAggregator:
    """Collects the condition and status field updates of one reconcile pass
    and writes them in a single status patch
    """

    def __init__(self, deploy_manager: DeployManagerBase, owner: ManagedObject):
        self.deploy_manager = deploy_manager
        self.owner = owner
        self._current_status = copy.deepcopy(owner.status)
        self.conditions = copy.deepcopy(self._current_status.get("conditions") or [])
        self._fields: Dict[str, Any] = {}

    def set(
        self,
        type_name: str,
        status: str,
        reason: str,
        message: str = "",
        observed_generation: Optional[int] = None,
    ) -> dict:
        """Upsert a condition, by default with the owner's current generation"""
        if observed_generation is None:
            observed_generation = self.owner.generation
        condition = make_condition(
            type_name,
            status,
            reason,
            message,
            observed_generation=observed_generation,
        )
        set_condition(self.conditions, condition)
        return condition

    def set_if_absent(self, type_name: str, status: str, reason: str, message=""):
        """Only add the condition if the owner does not have it yet"""
        if self.get(type_name) is None:
            self.set(type_name, status, reason, message)

    def remove(self, type_name: str):
        self.conditions = [
            cond for cond in self.conditions if cond.get("type") != type_name
        ]

    def get(self, type_name: str) -> Optional[dict]:
        return get_condition(type_name, self.conditions)

    def is_true(self, type_name: str) -> bool:
        return is_condition_true(type_name, self.conditions)

    def set_field(self, key: str, value: Any):
        """Report a top-level status field alongside the conditions"""
        self._fields[key] = value

    def get_field(self, key: str, dflt: Any = None) -> Any:
        """Read a top-level status field, preferring a value set during this
        pass over the stored one
        """
        if key in self._fields:
            return self._fields[key]
        return self._current_status.get(key, dflt)

    def ready(self, sub_types: List[str]) -> bool:
        """Derive the Ready condition as the conjunction of the sub-conditions.
        When not ready, the reason and message of the first unmet sub-condition
        are surfaced.
        """
        for type_name in sub_types:
            cond = self.get(type_name)
            if cond is None or cond.get("status") != TRUE:
                message = (
                    (cond or {}).get("message")
                    or f"{type_name} condition is not yet True"
                )
                reason = (
                    (cond or {}).get("reason") or ConditionReason.DEPENDENCIES_NOT_READY
                )
                self.set(READY_CONDITION, FALSE, reason, message)
                return False
        self.set(READY_CONDITION, TRUE, ConditionReason.READY)
        return True

    def new_status(self) -> dict:
        return {**self._fields, "conditions": self.conditions}

    def changed(self) -> bool:
        new_status = self.new_status()
        current = {key: self._current_status.get(key) for key in new_status}
        return status_changed(current, new_status)

    def apply(self) -> bool:
        """Write the status if it changed

        Returns:
            changed:  bool
                True if a status patch was issued
        """
        if not self.changed():
            log.debug2("Status of %s has not changed", self.owner)
            return False
        new_status = self.new_status()
        log.debug3("Updating status of %s: %s", self.owner, new_status)
        success, _ = self.deploy_manager.set_status(
            kind=self.owner.kind,
            name=self.owner.name,
            namespace=self.owner.namespace,
            status=new_status,
            api_version=self.owner.api_version,
        )
        assert_cluster(success, f"Failed to update status of {self.owner}")
        self._current_status.update(copy.deepcopy(new_status))
        return True
