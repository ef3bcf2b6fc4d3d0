"""
Helper object to represent a kubernetes object read from the cluster
"""
# Standard
from datetime import datetime
from typing import List, Optional

# Local
from .utils import nested_get, parse_timestamp

KUBE_LIST_IDENTIFIER = "List"


class ManagedObject:  # pylint: disable=too-many-instance-attributes
    """Basic struct to represent a kubernetes object. Owners and children are
    both wrapped in this so that the reconcile code never digs through raw
    metadata dicts.
    """

    def __init__(self, definition: dict, legacy: bool = False):
        """
        Args:
            definition:  dict
                The full manifest of the object
            legacy:  bool
                True if the object was only found through a legacy label
                selector
        """
        self.kind = definition.get("kind")
        self.metadata = definition.get("metadata", {})
        self.name = self.metadata.get("name")
        self.namespace = self.metadata.get("namespace")
        self.uid = self.metadata.get("uid")
        self.resource_version = self.metadata.get("resourceVersion")
        self.api_version = definition.get("apiVersion")
        self.definition = definition
        self.legacy = legacy

        # If resource is not list then check name
        assert self.kind is not None, "No kind found"
        if KUBE_LIST_IDENTIFIER not in self.kind:
            assert self.name is not None, "No name found"
        assert self.api_version is not None, "No apiVersion found"

    ## Accessors ###############################################################

    @property
    def labels(self) -> dict:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> dict:
        return self.metadata.get("annotations") or {}

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def generation(self) -> int:
        return self.metadata.get("generation", 0)

    @property
    def creation_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.metadata.get("creationTimestamp"))

    @property
    def deletion_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.metadata.get("deletionTimestamp"))

    @property
    def owner_references(self) -> List[dict]:
        return self.metadata.get("ownerReferences") or []

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    def get(self, *args, **kwargs):
        """Pass get calls to the objects definition"""
        return self.definition.get(*args, **kwargs)

    def nested_get(self, key: str, dflt=None):
        """Read a nested 'foo.bar' key from the definition"""
        return nested_get(self.definition, key, dflt)

    def is_owned_by(self, owner_uid: str) -> bool:
        """True if any ownerReference points at the given uid"""
        return any(ref.get("uid") == owner_uid for ref in self.owner_references)

    ## Dunders #################################################################

    def __str__(self):
        return f"{self.api_version}/{self.kind}/{self.namespace}/{self.name}"

    def __repr__(self):
        return str(self)

    def __hash__(self):
        """Hash explicitly excludes the definition so that the object's
        identifier in a map can be based only on the unique identifier of the
        resource in the cluster. If the resource did not provide a unique
        identifier then use the apiVersion, kind, namespace, and name
        """
        return hash(self.uid or str(self))

    def __eq__(self, other):
        return hash(self) == hash(other)
