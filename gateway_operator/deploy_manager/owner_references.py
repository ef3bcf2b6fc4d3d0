"""
This module holds common functionality for the native owner back-references
placed on namespaced children
"""

# Standard
from typing import List

# Local
from ..managed_object import ManagedObject


def make_owner_reference(owner: ManagedObject) -> dict:
    """Make an owner reference for the given owner instance

    Args:
        owner:  ManagedObject
            The owning custom resource

    Returns:
        owner_reference:  dict
            The dict entry for the `metadata.ownerReferences` entry of the owned
            object
    """
    return {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.name,
        "uid": owner.uid,
        "controller": True,
        # The owner will not be deleted until this object completes its
        # deletion
        "blockOwnerDeletion": True,
    }


def owner_references_for(owner: ManagedObject, cluster_scoped: bool) -> List[dict]:
    """Cluster scoped children cannot reference a namespaced owner, so they get
    no owner references and are cleaned up by the teardown sequence instead
    """
    if cluster_scoped:
        return []
    return [make_owner_reference(owner)]
