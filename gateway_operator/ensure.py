"""
The convergence engine. ensure() drives a single child role of an owner toward
its desired state:

census -> reduce if duplicated -> create if absent -> patch if drifted -> noop

It is level triggered. Nothing about previous passes is remembered; every call
recomputes from the census and the desired spec.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple
import copy

# Third Party
from deepdiff import DeepDiff
from deepdiff.operator import BaseOperator
from kubernetes.utils import parse_quantity

# First Party
import alog

# Local
from . import constants
from .census import ChildIdentity, census
from .deploy_manager import DeployManagerBase
from .deploy_manager.owner_references import owner_references_for
from .exceptions import assert_cluster
from .managed_object import ManagedObject
from .reduce import PreDeleteHook, reduce
from .utils import nested_get, nested_set

log = alog.use_channel("ENSRE")


## Types #######################################################################


class EnsureResult(Enum):
    """Outcome of a single ensure() call"""

    CREATED = "Created"
    UPDATED = "Updated"
    NOOP = "Noop"
    # Duplicates were deleted. The pass is incomplete and the deletion's watch
    # event triggers the next one.
    REDUCED = "Reduced"
    # The child was deleted to change a field that cannot be patched. The next
    # pass recreates it.
    DELETED = "Deleted"

    @property
    def changed(self) -> bool:
        return self is not EnsureResult.NOOP


# Sections compared by default. Labels and annotations are compared key by key
# so that keys written by other controllers survive.
DEFAULT_SECTIONS = ["metadata.labels", "metadata.annotations", "spec"]

LABEL_SECTIONS = ["metadata.labels", "metadata.annotations"]

Generator = Callable[[ManagedObject, Any], dict]


@dataclass
class ChildRole(ChildIdentity):
    """A child role of an owner: its identity plus the role specific generator
    and comparator

    Attributes:
        name:  str
            Human readable name of the role used in logs
        generate:  Generator
            Pure function building the desired child manifest from the owner
            and the role's desired spec
        sections:  List[str]
            The top-level sections that are compared and patched
        create_only:  bool
            If set, an existing child is never patched
        pre_delete_hook:  Optional[PreDeleteHook]
            Called on each duplicate before the reducer deletes it
        materialize:  Optional[Generator]
            Builds top-level sections that are never compared (random key
            material). Only called on create and when a compared section
            drifted.
        recreate_sections:  List[str]
            Sections the API server refuses to patch. Drift in any of them
            deletes the child so that it is recreated.
    """

    name: str = ""
    generate: Optional[Generator] = None
    sections: List[str] = field(default_factory=lambda: list(DEFAULT_SECTIONS))
    create_only: bool = False
    pre_delete_hook: Optional[PreDeleteHook] = None
    materialize: Optional[Generator] = None
    recreate_sections: List[str] = field(default_factory=list)


## Comparison ##################################################################


class QuantityOperator(BaseOperator):
    """DeepDiff operator that compares resource requirement quantities by value
    so that the API server's normalization (1000m -> 1, 1Gi -> 1073741824) is
    not reported as drift
    """

    def __init__(self):
        super().__init__(regex_paths=[r"\['(limits|requests)'\]\['[^']+'\]$"])

    def give_up_diffing(self, level, diff_instance) -> bool:
        try:
            return parse_quantity(level.t1) == parse_quantity(level.t2)
        except (ValueError, TypeError):
            return False


def section_drifted(current: Any, desired: Any) -> bool:
    """Type-aware comparison of one section. Fields present on the current
    object but absent from the desired one were injected by the server or by
    another controller and are not drift.
    """
    diff = {
        key: val
        for key, val in DeepDiff(
            current,
            desired,
            custom_operators=[QuantityOperator()],
        ).items()
        if key != "dictionary_item_removed"
    }
    if diff:
        log.debug3("Section diff: %s", diff)
    return bool(diff)


def compute_patch(
    current: ManagedObject,
    desired: dict,
    sections: List[str],
) -> dict:
    """Build a merge patch that only touches the drifted sections

    Args:
        current:  ManagedObject
            The child as currently stored
        desired:  dict
            The generated desired manifest
        sections:  List[str]
            The top-level sections to compare

    Returns:
        patch:  dict
            The merge patch. Empty if nothing drifted.
    """
    patch = {}
    for section in sections:
        desired_val = nested_get(desired, section)
        current_val = current.nested_get(section)
        if section in LABEL_SECTIONS:
            current_val = current_val or {}
            changed = {
                key: val
                for key, val in (desired_val or {}).items()
                if current_val.get(key) != val
            }
            if changed:
                nested_set(patch, section, changed)
            continue
        if desired_val is None:
            continue
        if section_drifted(current_val, desired_val):
            log.debug2("Section %s drifted on %s", section, current)
            nested_set(patch, section, desired_val)

    # Read both, write new: drop the legacy labels whenever the child is patched
    legacy_labels = {
        key: None
        for key in [constants.LEGACY_MANAGED_BY_LABEL, constants.LEGACY_OWNER_UID_LABEL]
        if key in current.labels
    }
    if legacy_labels:
        patch.setdefault("metadata", {}).setdefault("labels", {}).update(
            legacy_labels
        )
    return patch


## Ensure ######################################################################


def build_desired(owner: ManagedObject, role: ChildRole, spec: Any) -> dict:
    """Generate the desired child and stamp the owner identity onto it"""
    assert role.generate is not None, f"Role {role.name} has no generator"
    desired = copy.deepcopy(role.generate(owner, spec))
    metadata = desired.setdefault("metadata", {})
    metadata.setdefault("labels", {}).update(role.identity_labels(owner))
    if role.cluster_scoped:
        metadata.pop("namespace", None)
    else:
        metadata["namespace"] = owner.namespace
    owner_refs = owner_references_for(owner, role.cluster_scoped)
    if owner_refs:
        metadata["ownerReferences"] = owner_refs
    desired.setdefault("kind", role.kind)
    desired.setdefault("apiVersion", role.api_version)
    return desired


def ensure(
    deploy_manager: DeployManagerBase,
    owner: ManagedObject,
    role: ChildRole,
    spec: Any,
) -> Tuple[EnsureResult, Optional[ManagedObject]]:
    """Converge one child role of the owner toward the desired spec

    Error Semantics: ClusterError if a listing or write fails. ConflictError if
    the child changed between the census and the patch; it is never retried
    here.

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager for all cluster access
        owner:  ManagedObject
            The owner of the child
        role:  ChildRole
            The child role to converge
        spec:  Any
            The role specific desired spec passed to the generator

    Returns:
        result:  EnsureResult
            What this call did
        child:  Optional[ManagedObject]
            The child after the call. None when duplicates were reduced.
    """
    children = census(deploy_manager, owner, role)

    if len(children) > 1:
        deleted = reduce(deploy_manager, children, role.pre_delete_hook)
        log.info(
            "Reduced %d duplicate %s children of %s", deleted, role.name, owner.name
        )
        return EnsureResult.REDUCED, None

    desired = build_desired(owner, role, spec)

    if not children:
        if role.materialize is not None:
            desired.update(role.materialize(owner, spec))
        success, content = deploy_manager.create_object(desired)
        assert_cluster(success, f"Failed to create {role.name} for {owner}")
        child = ManagedObject(content)
        log.info("Created %s %s for %s", role.name, child.name, owner.name)
        return EnsureResult.CREATED, child

    current = children[0]
    if role.create_only:
        return EnsureResult.NOOP, current

    recreate = [
        section
        for section in role.recreate_sections
        if nested_get(desired, section) is not None
        and section_drifted(current.nested_get(section), nested_get(desired, section))
    ]
    if recreate:
        log.info(
            "Deleting %s %s to change immutable %s", role.name, current.name, recreate
        )
        if role.pre_delete_hook is not None:
            role.pre_delete_hook(deploy_manager, current)
        success, _ = deploy_manager.disable([current.definition])
        assert_cluster(success, f"Failed to delete {current}")
        return EnsureResult.DELETED, None

    patch = compute_patch(current, desired, role.sections)
    if not patch:
        log.debug2("%s %s is up to date", role.name, current.name)
        return EnsureResult.NOOP, current
    if role.materialize is not None:
        patch.update(role.materialize(owner, spec))

    success, content = deploy_manager.patch_object(
        kind=current.kind,
        name=current.name,
        patch=patch,
        namespace=current.namespace,
        api_version=current.api_version,
        resource_version=current.resource_version,
    )
    assert_cluster(success, f"Failed to patch {current}")
    log.info("Updated %s %s for %s", role.name, current.name, owner.name)
    return EnsureResult.UPDATED, ManagedObject(content)
