"""
Tests for the owner reference helpers
"""

# Local
from gateway_operator.deploy_manager.owner_references import (
    make_owner_reference,
    owner_references_for,
)
from gateway_operator.managed_object import ManagedObject
from gateway_operator.test_helpers.helpers import setup_owner


def test_make_owner_reference_required_keys():
    """Make sure the owner reference points at the owner and blocks its
    deletion
    """
    owner = ManagedObject(setup_owner())
    ref = make_owner_reference(owner)
    assert ref["apiVersion"] == owner.api_version
    assert ref["kind"] == owner.kind
    assert ref["name"] == owner.name
    assert ref["uid"] == owner.uid
    assert ref["controller"] is True
    assert ref["blockOwnerDeletion"] is True


def test_owner_references_cluster_scoped():
    """Cluster scoped children get no owner references"""
    owner = ManagedObject(setup_owner())
    assert owner_references_for(owner, cluster_scoped=True) == []
    assert owner_references_for(owner, cluster_scoped=False) == [
        make_owner_reference(owner)
    ]
