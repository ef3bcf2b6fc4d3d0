"""
The census lists the children that belong to one owner for one child role.

Children have been labelled with more than one label scheme over the life of
the operator. Each scheme is modelled as a selector version that knows how to
build its label selector and how to confirm that a listed object really belongs
to the owner. The census always queries every known version and merges the
results, so nothing downstream of it ever needs to know about label history.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import abc

# First Party
import alog

# Local
from . import constants
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster
from .managed_object import ManagedObject

log = alog.use_channel("CNSUS")


## Child identity ##############################################################


@dataclass
class ChildIdentity:
    """The labels and kind that identify one child role of an owner

    Attributes:
        kind:  str
            The kind of the child (Deployment, Service, ...)
        api_version:  str
            The apiVersion of the child kind
        managed_by:  str
            The value of the managed-by label (controlplane, dataplane, ...)
        role_labels:  Dict[str, str]
            Extra labels that separate roles sharing a kind (admin vs ingress
            service, live vs preview deployment)
        cluster_scoped:  bool
            Whether the child kind is cluster scoped
        legacy_role_labels:  Optional[Dict[str, str]]
            The role labels under the legacy scheme. Defaults to role_labels.
    """

    kind: str
    api_version: str
    managed_by: str
    role_labels: Dict[str, str] = field(default_factory=dict)
    cluster_scoped: bool = False
    legacy_role_labels: Optional[Dict[str, str]] = None

    def identity_labels(self, owner: ManagedObject) -> Dict[str, str]:
        """The labels written onto every child of this role"""
        labels = {
            constants.MANAGED_BY_LABEL: self.managed_by,
            constants.OWNER_UID_LABEL: owner.uid,
            constants.MANAGED_BY_NAME_LABEL: owner.name,
        }
        if owner.namespace:
            labels[constants.MANAGED_BY_NAMESPACE_LABEL] = owner.namespace
        labels.update(self.role_labels)
        return labels

    def namespace_for(self, owner: ManagedObject) -> Optional[str]:
        return None if self.cluster_scoped else owner.namespace


## Selector versions ###########################################################


class SelectorVersion(abc.ABC):
    """One generation of the child labelling scheme"""

    # True if objects found only through this version need migration
    legacy = False

    @abc.abstractmethod
    def selector(self, owner: ManagedObject, identity: ChildIdentity) -> Dict[str, str]:
        """The label selector (as a dict of equality requirements) for the
        owner's children of the given identity
        """

    @abc.abstractmethod
    def owns(
        self,
        owner: ManagedObject,
        identity: ChildIdentity,
        child: ManagedObject,
    ) -> bool:
        """Confirm that a listed child belongs to the owner"""


class CurrentLabels(SelectorVersion):
    """managed-by plus owner-uid labels. The selector itself scopes the listing
    to the owner.
    """

    def selector(self, owner, identity):
        return {
            constants.MANAGED_BY_LABEL: identity.managed_by,
            constants.OWNER_UID_LABEL: owner.uid,
            **identity.role_labels,
        }

    def owns(self, owner, identity, child):
        return child.labels.get(constants.OWNER_UID_LABEL) == owner.uid


class LegacyLabels(SelectorVersion):
    """The single legacy managed-by label. Ownership is confirmed through the
    native owner reference, or through the legacy owner-uid label for cluster
    scoped children which cannot carry one.
    """

    legacy = True

    def selector(self, owner, identity):
        role_labels = identity.legacy_role_labels
        if role_labels is None:
            role_labels = identity.role_labels
        return {constants.LEGACY_MANAGED_BY_LABEL: identity.managed_by, **role_labels}

    def owns(self, owner, identity, child):
        if identity.cluster_scoped:
            return child.labels.get(constants.LEGACY_OWNER_UID_LABEL) == owner.uid
        return child.is_owned_by(owner.uid)


# Every selector version that is still read. The first one is the version that
# is written.
SELECTOR_VERSIONS = [CurrentLabels(), LegacyLabels()]


## Census ######################################################################


def format_selector(labels: Dict[str, str]) -> str:
    """Render an equality-only label selector string"""
    return ",".join(f"{key}={val}" for key, val in sorted(labels.items()))


def census(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    identity: ChildIdentity,
    selector_versions: Optional[List[SelectorVersion]] = None,
) -> List[ManagedObject]:
    """List every child of the given identity that belongs to the owner.

    Error Semantics: Any failed listing raises ClusterError. A partial census
    is never returned since acting on it could delete the wrong survivor.

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used to list children
        owner:  ManagedObject
            The owner whose children are counted
        identity:  ChildIdentity
            The child role to count
        selector_versions:  Optional[List[SelectorVersion]]
            Override for the label scheme versions to query

    Returns:
        children:  List[ManagedObject]
            The merged children, deduplicated by uid. Children that were only
            found through a legacy selector have legacy=True.
    """
    selector_versions = selector_versions or SELECTOR_VERSIONS
    namespace = identity.namespace_for(owner)

    found: Dict[str, ManagedObject] = {}
    for version in selector_versions:
        label_selector = format_selector(version.selector(owner, identity))
        success, content = deploy_manager.filter_objects_current_state(
            kind=identity.kind,
            namespace=namespace,
            api_version=identity.api_version,
            label_selector=label_selector,
        )
        assert_cluster(
            success,
            f"Failed to list {identity.kind} children of {owner} with [{label_selector}]",
        )
        for manifest in content:
            child = ManagedObject(manifest, legacy=version.legacy)
            if not version.owns(owner, identity, child):
                log.debug3("Skipping %s not owned by %s", child, owner.uid)
                continue
            key = child.uid or str(child)
            if key in found:
                # Seen through a newer selector version already
                continue
            found[key] = child

    children = list(found.values())
    log.debug2(
        "Census of %s %s for %s: %s",
        identity.kind,
        identity.role_labels,
        owner,
        [child.name for child in children],
    )
    return children
