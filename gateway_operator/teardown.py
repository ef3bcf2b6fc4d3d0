"""
Finalizer gated teardown of the cluster scoped children of an owner.

Cluster scoped children (ValidatingWebhookConfigurations, ClusterRoleBindings,
ClusterRoles) cannot carry a native owner reference to a namespaced owner, so
they are not garbage collected. Each kind is guarded by its own finalizer on
the owner and removed in a fixed order, one stage per reconcile:

WaitingForGracePeriod -> DeletingWebhookConfigurations
-> RemovingWebhookConfigurationFinalizer -> DeletingRoleBindings
-> RemovingRoleBindingFinalizer -> DeletingRoles -> RemovingRoleFinalizer
-> Done

Every stage that mutates the cluster ends the pass. The resulting watch event
starts the next pass, which recomputes the stage from the owner's finalizers
and the remaining children, so the sequence resumes correctly after a restart.
"""

# Standard
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

# First Party
import alog

# Local
from . import constants
from .census import ChildIdentity, census
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster
from .managed_object import ManagedObject
from .utils import now as utcnow

log = alog.use_channel("TRDWN")

RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"
ADMISSION_API_VERSION = "admissionregistration.k8s.io/v1"

# The finalizers added to an owner, in the order they are removed
TEARDOWN_FINALIZERS = [
    constants.CLEANUP_VALIDATING_WEBHOOK_CONFIGURATION_FINALIZER,
    constants.CLEANUP_CLUSTER_ROLE_BINDING_FINALIZER,
    constants.CLEANUP_CLUSTER_ROLE_FINALIZER,
]


class TeardownStage(Enum):
    """The named stages of the teardown sequence"""

    WAITING_FOR_GRACE_PERIOD = "WaitingForGracePeriod"
    DELETING_WEBHOOK_CONFIGURATIONS = "DeletingWebhookConfigurations"
    REMOVING_WEBHOOK_CONFIGURATION_FINALIZER = "RemovingWebhookConfigurationFinalizer"
    DELETING_ROLE_BINDINGS = "DeletingRoleBindings"
    REMOVING_ROLE_BINDING_FINALIZER = "RemovingRoleBindingFinalizer"
    DELETING_ROLES = "DeletingRoles"
    REMOVING_ROLE_FINALIZER = "RemovingRoleFinalizer"
    DONE = "Done"


@dataclass
class TeardownResult:
    """The stage executed by a teardown pass and how long to wait before the
    next one, if a timed wait is needed
    """

    stage: TeardownStage
    requeue_after: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.stage == TeardownStage.DONE


## Public ######################################################################


def cluster_role_binding_identity(managed_by: str) -> ChildIdentity:
    return ChildIdentity(
        kind="ClusterRoleBinding",
        api_version=RBAC_API_VERSION,
        managed_by=managed_by,
        cluster_scoped=True,
    )


def cluster_role_identity(managed_by: str) -> ChildIdentity:
    return ChildIdentity(
        kind="ClusterRole",
        api_version=RBAC_API_VERSION,
        managed_by=managed_by,
        cluster_scoped=True,
    )


def webhook_configuration_identity(managed_by: str) -> ChildIdentity:
    return ChildIdentity(
        kind="ValidatingWebhookConfiguration",
        api_version=ADMISSION_API_VERSION,
        managed_by=managed_by,
        cluster_scoped=True,
    )


def ensure_finalizers(deploy_manager: DeployManagerBase, owner: ManagedObject) -> bool:
    """Add the teardown finalizers to the owner if any are missing. Must run
    before any cluster scoped child is created.

    Returns:
        changed:  bool
            True if the owner was patched
    """
    missing = [fin for fin in TEARDOWN_FINALIZERS if fin not in owner.finalizers]
    if not missing:
        return False
    log.debug("Adding finalizers %s to %s", missing, owner)
    _patch_finalizers(deploy_manager, owner, owner.finalizers + missing)
    return True


def run_teardown(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    managed_by: str,
    current_time: Optional[datetime] = None,
) -> TeardownResult:
    """Execute the next stage of the teardown sequence for an owner that is
    being deleted

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used for all cluster access
        owner:  ManagedObject
            The owner with a deletionTimestamp set
        managed_by:  str
            The managed-by label value of the owner's children
        current_time:  Optional[datetime]
            Override for the current time

    Returns:
        result:  TeardownResult
            The stage that ran
    """
    deletion_timestamp = owner.deletion_timestamp
    assert deletion_timestamp is not None, f"{owner} is not being deleted"

    # A deletion timestamp in the future means the grace period is running.
    # Wait exactly for the remainder.
    current_time = current_time or utcnow()
    if deletion_timestamp > current_time:
        remaining = (deletion_timestamp - current_time).total_seconds()
        log.debug("Waiting %.2fs for grace period of %s", remaining, owner)
        return TeardownResult(TeardownStage.WAITING_FOR_GRACE_PERIOD, remaining)

    finalizers = owner.finalizers
    for finalizer, identity_for, deleting, removing in _TEARDOWN_STEPS:
        if finalizer not in finalizers:
            continue
        if delete_children(deploy_manager, owner, identity_for(managed_by)):
            return TeardownResult(deleting)
        _remove_finalizer(deploy_manager, owner, finalizer)
        return TeardownResult(removing)

    log.debug("Teardown of %s is complete", owner)
    return TeardownResult(TeardownStage.DONE)


def delete_children(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    identity: ChildIdentity,
) -> bool:
    """Delete every child of the identity. Returns True if any were deleted."""
    children = census(deploy_manager, owner, identity)
    if not children:
        return False
    log.info(
        "Deleting %d %s children of %s", len(children), identity.kind, owner.name
    )
    success, changed = deploy_manager.disable([child.definition for child in children])
    assert_cluster(success, f"Failed to delete {identity.kind} children of {owner}")
    return changed


## Implementation ##############################################################

# One step per teardown finalizer, in the order of TEARDOWN_FINALIZERS
_TEARDOWN_STEPS = [
    (
        constants.CLEANUP_VALIDATING_WEBHOOK_CONFIGURATION_FINALIZER,
        webhook_configuration_identity,
        TeardownStage.DELETING_WEBHOOK_CONFIGURATIONS,
        TeardownStage.REMOVING_WEBHOOK_CONFIGURATION_FINALIZER,
    ),
    (
        constants.CLEANUP_CLUSTER_ROLE_BINDING_FINALIZER,
        cluster_role_binding_identity,
        TeardownStage.DELETING_ROLE_BINDINGS,
        TeardownStage.REMOVING_ROLE_BINDING_FINALIZER,
    ),
    (
        constants.CLEANUP_CLUSTER_ROLE_FINALIZER,
        cluster_role_identity,
        TeardownStage.DELETING_ROLES,
        TeardownStage.REMOVING_ROLE_FINALIZER,
    ),
]


def _remove_finalizer(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    finalizer: str,
):
    log.info("Removing finalizer %s from %s", finalizer, owner)
    _patch_finalizers(
        deploy_manager, owner, [fin for fin in owner.finalizers if fin != finalizer]
    )


def _patch_finalizers(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    finalizers: List[str],
):
    """Finalizers are a list and are replaced as a whole by a merge patch, so
    the patch carries the resourceVersion it was computed from
    """
    success, _ = deploy_manager.patch_object(
        kind=owner.kind,
        name=owner.name,
        patch={"metadata": {"finalizers": finalizers or None}},
        namespace=owner.namespace,
        api_version=owner.api_version,
        resource_version=owner.resource_version,
    )
    assert_cluster(success, f"Failed to update finalizers of {owner}")
