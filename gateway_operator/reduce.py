"""
The reducer resolves duplicate children of a role that must be singular. It
keeps exactly one canonical survivor and deletes the rest.

The survivor is chosen by a per-kind ranking. Where the kind has a health
signal (replica availability, load balancer and endpoint readiness) the
healthiest child wins. Otherwise, and as the tie-break of every ranking, the
oldest child wins. Name and uid break any remaining tie so that the survivor
never depends on listing order.
"""

# Standard
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

# First Party
import alog

# Local
from . import constants
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster
from .managed_object import ManagedObject

log = alog.use_channel("RDUCE")

# Objects with no creation timestamp rank as the newest
_NO_TIMESTAMP = datetime.max.replace(tzinfo=timezone.utc)

ENDPOINT_SLICE_KIND = "EndpointSlice"
ENDPOINT_SLICE_API_VERSION = "discovery.k8s.io/v1"

PreDeleteHook = Callable[[DeployManagerBase, ManagedObject], None]


## Ranking #####################################################################


def _age_key(child: ManagedObject) -> Tuple:
    return (
        child.creation_timestamp or _NO_TIMESTAMP,
        child.name or "",
        child.uid or "",
    )


def _oldest_key(child: ManagedObject, _: Optional[DeployManagerBase]) -> Tuple:
    return _age_key(child)


def _deployment_key(child: ManagedObject, _: Optional[DeployManagerBase]) -> Tuple:
    status = child.status
    return (
        -(status.get("availableReplicas") or 0),
        -(status.get("readyReplicas") or 0),
        *_age_key(child),
    )


def _service_key(
    child: ManagedObject,
    deploy_manager: Optional[DeployManagerBase],
) -> Tuple:
    ingress = (child.status.get("loadBalancer") or {}).get("ingress") or []
    slice_count, ready_count = _endpoint_stats(deploy_manager, child)
    return (
        -len(ingress),
        -slice_count,
        -ready_count,
        *_age_key(child),
    )


def _endpoint_stats(
    deploy_manager: Optional[DeployManagerBase],
    service: ManagedObject,
) -> Tuple[int, int]:
    """Count the EndpointSlices of a Service and the ready endpoints across
    them
    """
    if deploy_manager is None:
        return 0, 0
    success, slices = deploy_manager.filter_objects_current_state(
        kind=ENDPOINT_SLICE_KIND,
        namespace=service.namespace,
        api_version=ENDPOINT_SLICE_API_VERSION,
        label_selector=f"{constants.SERVICE_NAME_LABEL}={service.name}",
    )
    assert_cluster(success, f"Failed to list EndpointSlices for {service}")
    ready = 0
    for endpoint_slice in slices:
        for endpoint in endpoint_slice.get("endpoints") or []:
            if (endpoint.get("conditions") or {}).get("ready") is True:
                ready += 1
    return len(slices), ready


_RANKINGS: Dict[str, Callable] = {
    "Deployment": _deployment_key,
    "Service": _service_key,
    "Secret": _oldest_key,
    "ServiceAccount": _oldest_key,
    "ClusterRole": _oldest_key,
    "ClusterRoleBinding": _oldest_key,
    "NetworkPolicy": _oldest_key,
    "HorizontalPodAutoscaler": _oldest_key,
    "ValidatingWebhookConfiguration": _oldest_key,
}


## Public ######################################################################


def select_survivor(
    children: List[ManagedObject],
    deploy_manager: Optional[DeployManagerBase] = None,
) -> ManagedObject:
    """Pick the canonical survivor among duplicate children of one kind.

    Only the ranking of the kind decides. Children found through a legacy
    selector compete on the same terms as current ones and are relabelled
    by the next write if they survive.

    Args:
        children:  List[ManagedObject]
            The duplicates. Must be non-empty and share a kind.
        deploy_manager:  Optional[DeployManagerBase]
            Used to look up EndpointSlices when ranking Services

    Returns:
        survivor:  ManagedObject
            The child to keep
    """
    assert children, "Cannot select a survivor from no children"
    kinds = {child.kind for child in children}
    assert len(kinds) == 1, f"Cannot reduce mixed kinds {kinds}"
    kind = kinds.pop()

    ranking = _RANKINGS.get(kind, _oldest_key)
    keyed = [(ranking(child, deploy_manager), child) for child in children]
    keyed.sort(key=lambda entry: entry[0])
    log.debug3("Ranked %s duplicates: %s", kind, [(k, str(c)) for k, c in keyed])
    return keyed[0][1]


def reduce(
    deploy_manager: DeployManagerBase,
    children: List[ManagedObject],
    pre_delete_hook: Optional[PreDeleteHook] = None,
) -> int:
    """Delete all but the survivor of a set of duplicates.

    Error Semantics: A failed delete raises ClusterError. Deletes that already
    happened are not rolled back; the next census sees the remainder.

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used to delete children
        children:  List[ManagedObject]
            The duplicates for one owner and role
        pre_delete_hook:  Optional[PreDeleteHook]
            Called with the deploy manager and each child right before it is
            deleted

    Returns:
        deleted:  int
            The number of children deleted
    """
    if len(children) < 2:
        return 0

    survivor = select_survivor(children, deploy_manager)
    # Legacy leftovers go first
    doomed = sorted(
        (child for child in children if child is not survivor),
        key=lambda child: not child.legacy,
    )
    log.info(
        "Reducing %d %s duplicates, keeping %s",
        len(children),
        survivor.kind,
        survivor.name,
    )
    for child in doomed:
        if pre_delete_hook is not None:
            pre_delete_hook(deploy_manager, child)
        log.debug("Deleting duplicate %s", child)
        success, _ = deploy_manager.disable([child.definition])
        assert_cluster(success, f"Failed to delete duplicate {child}")
    return len(doomed)
