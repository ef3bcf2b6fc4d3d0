"""
The WatchFeed threads turn cluster events into owner keys for the worker pool.

Events of an owner kind submit the owner itself. Events of a child submit the
owner the child belongs to, resolved from the managed-by labels or, for
children written under the legacy label scheme, from the owner reference.
"""

# Standard
from typing import Callable, Dict, List, Optional

# First Party
import alog

# Local
from .. import config, constants
from ..deploy_manager import DeployManagerBase, KubeWatchEvent
from ..managed_object import ManagedObject
from .base import OwnerKey, ThreadBase

log = alog.use_channel("WATCH")

# managed-by label value -> owner kind
OWNER_KINDS = {
    constants.MANAGED_BY_CONTROLPLANE: constants.KIND_CONTROLPLANE,
    constants.MANAGED_BY_DATAPLANE: constants.KIND_DATAPLANE,
    constants.MANAGED_BY_GATEWAY: constants.KIND_GATEWAY,
}

# (kind, api_version) of every child kind an owner can have
CHILD_KINDS = [
    ("Deployment", "apps/v1"),
    ("Service", "v1"),
    ("Secret", "v1"),
    ("ServiceAccount", "v1"),
    ("ClusterRole", "rbac.authorization.k8s.io/v1"),
    ("ClusterRoleBinding", "rbac.authorization.k8s.io/v1"),
    ("ValidatingWebhookConfiguration", "admissionregistration.k8s.io/v1"),
    ("HorizontalPodAutoscaler", "autoscaling/v2"),
    ("NetworkPolicy", "networking.k8s.io/v1"),
    (constants.KIND_DATAPLANE, constants.OPERATOR_API_VERSION),
    (constants.KIND_CONTROLPLANE, constants.OPERATOR_API_VERSION),
]

# Child kinds without a namespace, watched cluster-wide
CLUSTER_SCOPED_KINDS = {
    "ClusterRole",
    "ClusterRoleBinding",
    "ValidatingWebhookConfiguration",
}

# Children carry one of these labels depending on when they were written
CHILD_LABEL_SELECTORS = [
    constants.MANAGED_BY_LABEL,
    constants.LEGACY_MANAGED_BY_LABEL,
]


def owner_keys_for(resource: ManagedObject, owner_kind: Optional[str]) -> List[OwnerKey]:
    """The owner keys an event on the resource should wake

    Args:
        resource:  ManagedObject
            The resource from the event
        owner_kind:  Optional[str]
            Set if the watched kind is itself an owner kind

    Returns:
        keys:  List[OwnerKey]
            The keys to submit
    """
    keys = []
    if owner_kind is not None and resource.kind == owner_kind:
        keys.append(OwnerKey(resource.kind, resource.namespace, resource.name))

    labels = resource.labels
    parent_kind = OWNER_KINDS.get(labels.get(constants.MANAGED_BY_LABEL))
    parent_name = labels.get(constants.MANAGED_BY_NAME_LABEL)
    if parent_kind and parent_name:
        keys.append(
            OwnerKey(
                parent_kind,
                labels.get(constants.MANAGED_BY_NAMESPACE_LABEL) or resource.namespace,
                parent_name,
            )
        )
    elif constants.LEGACY_MANAGED_BY_LABEL in labels:
        for ref in resource.owner_references:
            if ref.get("kind") in OWNER_KINDS.values():
                keys.append(OwnerKey(ref["kind"], resource.namespace, ref.get("name")))
    return keys


class WatchFeed(ThreadBase):
    """Watches one kind and submits the owner keys of its events. A broken
    watch is restarted after watch_reconnect_seconds.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        submit: Callable[[OwnerKey], bool],
        deploy_manager: DeployManagerBase,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        owner_kind: Optional[str] = None,
    ):
        """
        Args:
            submit:  Callable[[OwnerKey], bool]
                Receives the owner key of every event
            deploy_manager:  DeployManagerBase
                The deploy manager to watch through
            kind:  str
                The kind to watch
            api_version:  str
                The api_version to watch
            namespace:  Optional[str]
                The namespace to watch. If None then cluster-wide
            label_selector:  Optional[str]
                Restrict the watch to labelled objects
            owner_kind:  Optional[str]
                Set if events of the watched kind wake the object itself
        """
        name = f"watch_{api_version}_{kind}"
        if label_selector:
            name = f"{name}_{label_selector}"
        super().__init__(name=name, daemon=True)
        self.submit = submit
        self.deploy_manager = deploy_manager
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace
        self.label_selector = label_selector
        self.owner_kind = owner_kind

    def run(self):
        while not self.should_stop():
            try:
                for event in self.deploy_manager.watch_objects(
                    self.kind,
                    self.api_version,
                    namespace=self.namespace,
                    label_selector=self.label_selector,
                ):
                    if self.should_stop():
                        return
                    self.handle_event(event)
            except Exception as exc:  # pylint: disable=broad-except
                log.warning(
                    "Watch of %s failed: %s", self.kind, repr(exc), exc_info=True
                )
            if not self.wait_on_shutdown(float(config.watch_reconnect_seconds)):
                return
            log.info("Restarting watch of %s", self.kind)

    def handle_event(self, event: KubeWatchEvent):
        for key in owner_keys_for(event.resource, self.owner_kind):
            log.debug2(
                "%s event on %s wakes %s", event.type.value, event.resource, key
            )
            self.submit(key)


def create_feeds(
    submit: Callable[[OwnerKey], bool],
    deploy_manager: DeployManagerBase,
    owner_kinds: Dict[str, str],
    namespace: Optional[str] = None,
) -> List[WatchFeed]:
    """Create the feeds for the owner kinds and every child kind

    Args:
        submit:  Callable[[OwnerKey], bool]
            Receives the owner keys
        deploy_manager:  DeployManagerBase
            The deploy manager to watch through
        owner_kinds:  Dict[str, str]
            kind -> api_version of every reconciled owner kind
        namespace:  Optional[str]
            The namespace to watch. If None then cluster-wide

    Returns:
        feeds:  List[WatchFeed]
            The feeds, not started
    """
    feeds = [
        WatchFeed(
            submit,
            deploy_manager,
            kind,
            api_version,
            namespace=namespace,
            owner_kind=kind,
        )
        for kind, api_version in owner_kinds.items()
    ]
    for kind, api_version in CHILD_KINDS:
        if kind in owner_kinds:
            # The owner feed already sees every event of this kind
            continue
        cluster_scoped = kind in CLUSTER_SCOPED_KINDS
        for label_selector in CHILD_LABEL_SELECTORS:
            feeds.append(
                WatchFeed(
                    submit,
                    deploy_manager,
                    kind,
                    api_version,
                    namespace=None if cluster_scoped else namespace,
                    label_selector=label_selector,
                )
            )
    return feeds
