"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest import mock
import inspect
import os
import uuid

# First Party
import alog

# Local
from gateway_operator import constants
from gateway_operator.certificates import SecretRef, ensure_ca_secret
from gateway_operator.config import library_config as config_detail_dict
from gateway_operator.deploy_manager.dry_run_deploy_manager import (
    DryRunDeployManager,
)
from gateway_operator.managed_object import ManagedObject
from gateway_operator.resources.defaults import ResourceDefaults
from gateway_operator.utils import format_timestamp

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAMESPACE = "test"
TEST_CA_SECRET = "test-ca"

# Fixed point in time that test objects are created relative to
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


## Config ######################################################################


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


def make_defaults(**overrides) -> ResourceDefaults:
    """ResourceDefaults pointing at a test CA"""
    kwargs = {
        "controlplane_image": "kong/kubernetes-ingress-controller:3.1",
        "dataplane_image": "kong:3.6",
        "controlplane_image_prefixes": ("kong/kubernetes-ingress-controller",),
        "dataplane_image_prefixes": ("kong", "kong/kong-gateway"),
        "cluster_ca": SecretRef(namespace=TEST_NAMESPACE, name=TEST_CA_SECRET),
        "key_usages": ("digital_signature", "key_encipherment", "server_auth"),
        "controller_name": "konghq.com/gateway-operator",
    }
    kwargs.update(overrides)
    return ResourceDefaults(**kwargs)


## Manifests ###################################################################


def timestamp(offset_seconds: float = 0) -> str:
    return format_timestamp(T0 + timedelta(seconds=offset_seconds))


def setup_owner(
    kind: str = constants.KIND_DATAPLANE,
    name: str = "test-owner",
    namespace: str = TEST_NAMESPACE,
    spec: Optional[dict] = None,
    api_version: str = constants.OPERATOR_API_VERSION,
    **metadata,
) -> dict:
    """Build an owner manifest with a fixed uid so tests can label children
    against it
    """
    manifest = {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": str(uuid.uuid4()),
            "generation": 1,
            **metadata,
        },
        "spec": spec or {},
    }
    return manifest


def make_child(  # pylint: disable=too-many-arguments
    owner: dict,
    kind: str,
    name: str,
    managed_by: str,
    api_version: str = "v1",
    role_labels: Optional[Dict[str, str]] = None,
    created: float = 0,
    legacy: bool = False,
    cluster_scoped: bool = False,
    spec: Optional[dict] = None,
    status: Optional[dict] = None,
    finalizers: Optional[List[str]] = None,
) -> dict:
    """Build a child manifest labelled for the owner under either the current
    or the legacy label scheme

    Args:
        owner:  dict
            The owner manifest
        kind:  str
            The kind of the child
        name:  str
            The name of the child
        managed_by:  str
            The managed-by label value
        api_version:  str
            The apiVersion of the child
        role_labels:  Optional[Dict[str, str]]
            Extra labels separating roles
        created:  float
            Seconds after T0 at which the child was created
        legacy:  bool
            Label with the legacy scheme
        cluster_scoped:  bool
            Leave out the namespace and owner references
        spec:  Optional[dict]
            The child spec
        status:  Optional[dict]
            The child status
        finalizers:  Optional[List[str]]
            Finalizers on the child

    Returns:
        child:  dict
            The child manifest
    """
    owner_meta = owner["metadata"]
    if legacy:
        labels = {constants.LEGACY_MANAGED_BY_LABEL: managed_by}
        if cluster_scoped:
            labels[constants.LEGACY_OWNER_UID_LABEL] = owner_meta["uid"]
    else:
        labels = {
            constants.MANAGED_BY_LABEL: managed_by,
            constants.OWNER_UID_LABEL: owner_meta["uid"],
            constants.MANAGED_BY_NAME_LABEL: owner_meta["name"],
            constants.MANAGED_BY_NAMESPACE_LABEL: owner_meta["namespace"],
        }
    labels.update(role_labels or {})

    metadata = {
        "name": name,
        "uid": str(uuid.uuid4()),
        "labels": labels,
        "creationTimestamp": timestamp(created),
    }
    if not cluster_scoped:
        metadata["namespace"] = owner_meta["namespace"]
        metadata["ownerReferences"] = [
            {
                "apiVersion": owner["apiVersion"],
                "kind": owner["kind"],
                "name": owner_meta["name"],
                "uid": owner_meta["uid"],
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]
    if finalizers:
        metadata["finalizers"] = list(finalizers)

    child = {"apiVersion": api_version, "kind": kind, "metadata": metadata}
    if spec is not None:
        child["spec"] = spec
    if status is not None:
        child["status"] = status
    return child


## Failures ####################################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        log.debug4(
            "Running failable mock of [%s] with fail flag: %s", str(method), fail_flag
        )
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag == "assert":
            log.debug4("Asserting in failable mock")
            raise AssertionError(f"You told me to fail {method}!")
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        res = method(*args, **kwargs)
        log.debug4("Passthrough res: %s", res)
        return res

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return None


class MockDeployManager(DryRunDeployManager):
    """The MockDeployManager wraps a standard DryRunDeployManager and adds
    configuration options to simulate failures in each of its operations. Every
    operation is a mock so tests can count the writes a pass made.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        create_fail=False,
        patch_fail=False,
        disable_fail=False,
        get_state_fail=False,
        filter_fail=False,
        set_status_fail=False,
        watch_fail=False,
        auto_enable=True,
        resources=None,
    ):
        super().__init__(resources=resources)
        self.create_fail = create_fail
        self.patch_fail = patch_fail
        self.disable_fail = disable_fail
        self.get_state_fail = get_state_fail
        self.filter_fail = filter_fail
        self.set_status_fail = set_status_fail
        self.watch_fail = watch_fail

        # If auto-enabling, turn the mocks on now
        if auto_enable:
            self.enable_mocks()

    ## Helpers for Tests #######################################################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.create_object = mock.Mock(
            side_effect=get_failable_method(
                self.create_fail, super().create_object, (False, None)
            )
        )
        self.patch_object = mock.Mock(
            side_effect=get_failable_method(
                self.patch_fail, super().patch_object, (False, None)
            )
        )
        self.disable = mock.Mock(
            side_effect=get_failable_method(
                self.disable_fail, super().disable, (False, False)
            )
        )
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.filter_objects_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.filter_fail, super().filter_objects_current_state, (False, [])
            )
        )
        self.set_status = mock.Mock(
            side_effect=get_failable_method(
                self.set_status_fail, super().set_status, (False, False)
            )
        )
        self.watch_objects = mock.Mock(
            side_effect=get_failable_method(self.watch_fail, super().watch_objects, [])
        )

    def reset_write_counts(self):
        for method in [
            self.create_object,
            self.patch_object,
            self.disable,
            self.set_status,
        ]:
            method.reset_mock()

    def write_count(self) -> int:
        """Number of write calls since the last reset"""
        return sum(
            method.call_count
            for method in [
                self.create_object,
                self.patch_object,
                self.disable,
                self.set_status,
            ]
        )

    def cluster_version(self) -> int:
        """Increases with every stored change to the cluster"""
        return self._resource_version

    def get_obj(self, kind, name, namespace=None, api_version=None):
        return self.get_object_current_state(kind, name, namespace, api_version)[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None

    def list_objs(self, kind, namespace=None, label_selector=None) -> List[dict]:
        return self.filter_objects_current_state(
            kind, namespace=namespace, label_selector=label_selector
        )[1]


## Cluster simulation ##########################################################


def setup_ca(deploy_manager, defaults: Optional[ResourceDefaults] = None):
    """Create the CA Secret the test defaults point at"""
    defaults = defaults or make_defaults()
    ensure_ca_secret(deploy_manager, defaults.cluster_ca)


def make_deployments_available(deploy_manager, namespace: str = TEST_NAMESPACE):
    """Play the part of the Deployment controller: report every replica of
    every Deployment as available and ready
    """
    for deployment in deploy_manager.list_objs("Deployment", namespace=namespace):
        replicas = (deployment.get("spec") or {}).get("replicas", 1)
        deploy_manager.set_status(
            kind="Deployment",
            name=deployment["metadata"]["name"],
            namespace=namespace,
            status={
                "observedGeneration": deployment["metadata"].get("generation", 1),
                "replicas": replicas,
                "readyReplicas": replicas,
                "availableReplicas": replicas,
            },
            api_version=deployment["apiVersion"],
        )


def reconcile_until_stable(
    controller,
    deploy_manager: MockDeployManager,
    kind: str,
    name: str,
    namespace: str = TEST_NAMESPACE,
    max_passes: int = 30,
    available: bool = True,
) -> Optional[ManagedObject]:
    """Run reconcile passes, each against a fresh read of the owner, until a
    pass leaves the cluster unchanged

    Args:
        controller:  ControllerBase
            The controller to run
        deploy_manager:  MockDeployManager
            The simulated cluster
        kind:  str
            The owner kind
        name:  str
            The owner name
        namespace:  str
            The owner namespace
        max_passes:  int
            Fail if the cluster is still changing after this many passes
        available:  bool
            Report Deployments as available after each pass

    Returns:
        owner:  Optional[ManagedObject]
            The owner after the last pass. None if it was deleted.
    """
    for _ in range(max_passes):
        content = deploy_manager.get_obj(kind, name, namespace)
        if content is None:
            return None
        before = deploy_manager.cluster_version()
        controller.reconcile(ManagedObject(content))
        if available:
            make_deployments_available(deploy_manager, namespace)
        if deploy_manager.cluster_version() == before:
            return ManagedObject(deploy_manager.get_obj(kind, name, namespace))
    raise AssertionError(f"{kind}/{name} did not settle in {max_passes} passes")
