"""
This DeployManager is responsible for delegating cluster operations to the
openshift library. It is the one that will be used when the operator is running
in the cluster or outside the cluster making live changes.
"""
# Standard
from typing import Iterator, List, Optional, Tuple
import copy
import threading

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import ConflictError as OpenshiftConflictError
from openshift.dynamic.exceptions import (
    DynamicApiError,
    ForbiddenError,
    NotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import config
from ..exceptions import ConflictError, assert_cluster
from ..managed_object import ManagedObject
from ..utils import merge_patch
from .base import DeployManagerBase, KubeEventType, KubeWatchEvent

log = alog.use_channel("OSFTD")

## Deploy Manager ##############################################################

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30


class OpenshiftDeployManager(DeployManagerBase):
    """This DeployManager uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, request_timeout: Optional[float] = None):
        """
        Args:
            request_timeout:  Optional[float]
                Deadline in seconds applied to every API call. Defaults to the
                request_timeout_seconds config value.
        """
        self._request_timeout = (
            request_timeout
            if request_timeout is not None
            else config.request_timeout_seconds
        )

        # Set up the client lazily
        log.debug("Initializing openshift client")
        self._client = None
        self._client_lock = threading.Lock()

    @property
    def client(self):
        """Lazy property access to the client"""
        with self._client_lock:
            if self._client is None:
                self._client = self._setup_client()
        return self._client

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return True, None

        try:
            resource = resource_handle.get(
                name=name,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            )
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, None
        except NotFoundError:
            log.debug(
                "No object named [%s/%s] found in namespace [%s]", kind, name, namespace
            )
            return True, None
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning("Failed to fetch [%s/%s]: %s", kind, name, err)
            return False, None

        return True, resource.to_dict()

    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return True, []

        try:
            list_obj = resource_handle.get(
                label_selector=label_selector,
                field_selector=field_selector,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            )
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, []
        except NotFoundError:
            log.debug(
                "No objects of kind [%s] found in namespace [%s]", kind, namespace
            )
            return True, []
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning("Failed to list [%s] in [%s]: %s", kind, namespace, err)
            return False, []

        # If the resource was found, get it's dict representation
        return True, list_obj.to_dict().get("items", [])

    @alog.logged_function(log.debug2)
    def create_object(self, definition: dict) -> Tuple[bool, Optional[dict]]:
        metadata = definition.get("metadata", {})
        namespace = metadata.get("namespace")
        kind = definition.get("kind")
        resource_handle = self._get_resource_handle(kind, definition.get("apiVersion"))
        if not resource_handle:
            log.warning("No resource handle for [%s]", kind)
            return False, None
        try:
            created = resource_handle.create(
                body=definition,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            )
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning(
                "Failed to create [%s/%s]: %s",
                kind,
                metadata.get("name") or metadata.get("generateName"),
                err,
            )
            return False, None
        return True, created.to_dict()

    @alog.logged_function(log.debug2)
    def patch_object(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        patch: dict,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return False, None

        # A resourceVersion in a merge patch makes the server reject the write
        # with 409 if the object has changed since it was read
        body = copy.deepcopy(patch)
        body.setdefault("metadata", {})["name"] = name
        if resource_version is not None:
            body["metadata"]["resourceVersion"] = resource_version

        try:
            patched = resource_handle.patch(
                body=body,
                name=name,
                namespace=namespace,
                content_type=MERGE_PATCH_CONTENT_TYPE,
                _request_timeout=self._request_timeout,
            )
        except OpenshiftConflictError as err:
            raise ConflictError(f"Conflict patching {kind}/{name}: {err}") from err
        except NotFoundError:
            log.debug("Cannot patch missing [%s/%s] in [%s]", kind, name, namespace)
            return False, None
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning("Failed to patch [%s/%s]: %s", kind, name, err)
            return False, None
        return True, patched.to_dict()

    @alog.logged_function(log.debug2)
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        changed = False
        for resource_definition in resource_definitions:
            kind = resource_definition.get("kind")
            api_version = resource_definition.get("apiVersion")
            name = resource_definition.get("metadata", {}).get("name")
            namespace = resource_definition.get("metadata", {}).get("namespace")
            try:
                resource_handle = self.client.resources.get(
                    api_version=api_version, kind=kind
                )
                log.debug2(
                    "Attempting to delete [%s/%s/%s] from %s",
                    api_version,
                    kind,
                    name,
                    namespace,
                )
                resource_handle.delete(
                    name=name,
                    namespace=namespace,
                    _request_timeout=self._request_timeout,
                )
                changed = True

            # If the kind or instance is not found, that's a success without
            # change
            except (ResourceNotFoundError, NotFoundError) as err:
                log.debug2(
                    "Valid error caught when disabling [%s/%s]: %s", kind, name, err
                )
            except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
                log.warning("Failed to delete [%s/%s]: %s", kind, name, err)
                return False, changed
        return True, changed

    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return False, False

        try:
            current = resource_handle.get(
                name=name,
                namespace=namespace,
                _request_timeout=self._request_timeout,
            ).to_dict()
            previous_status = current.get("status") or {}
            if merge_patch(previous_status, status) == previous_status:
                log.debug("Status has not changed. No update")
                return True, False

            body = {
                "metadata": {"name": name},
                "status": status,
            }
            if resource_version is not None:
                body["metadata"]["resourceVersion"] = resource_version
            resource_handle.status.patch(
                body=body,
                name=name,
                namespace=namespace,
                content_type=MERGE_PATCH_CONTENT_TYPE,
                _request_timeout=self._request_timeout,
            )
        except OpenshiftConflictError as err:
            raise ConflictError(
                f"Conflict patching status of {kind}/{name}: {err}"
            ) from err
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning("Failed to patch status of [%s/%s]: %s", kind, name, err)
            return False, False

        log.debug2(
            "Successfully set the status for [%s/%s] in %s", kind, name, namespace
        )
        return True, True

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout: Optional[float] = None,
        watch_manager: Optional[Watch] = None,
    ) -> Iterator[KubeWatchEvent]:
        watch_manager = watch_manager if watch_manager else Watch()
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )

        while True:
            try:
                for event_obj in watch_manager.stream(
                    resource_handle.get,
                    resource_version=resource_version,
                    namespace=namespace,
                    label_selector=label_selector,
                    serialize=False,
                    timeout_seconds=int(timeout or SERVER_WATCH_TIMEOUT),
                    _request_timeout=CLIENT_WATCH_TIMEOUT,
                ):
                    event_type = KubeEventType(event_obj["type"])
                    event_resource = ManagedObject(event_obj["object"])
                    resource_version = event_resource.resource_version
                    yield KubeWatchEvent(event_type, event_resource)
            except client.exceptions.ApiException as exception:
                if exception.status == 410:
                    log.debug2("Resource age expired, restarting watch %s", kind)
                    resource_version = None
                else:
                    log.info("Unknown ApiException received, re-raising")
                    raise exception
            except urllib3.exceptions.ReadTimeoutError:
                log.debug4("Watch Socket closed, restarting watch %s", kind)
            except urllib3.exceptions.ProtocolError:
                log.debug2("Invalid Chunk from server, restarting watch %s", kind)

            # A bounded watch ends when the server closes the stream
            if timeout is not None:
                return

            # This is hidden attribute so probably not best to check
            if watch_manager._stop:  # pylint: disable=protected-access
                log.debug("Internal watch stopped for %s/%s", kind, api_version)
                return

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        # Try in-cluster config
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)

        # Fall back to out-of-cluster config
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(
        self,
        kind: str,
        api_version: Optional[str],
    ) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and
        api_version. A namespaced handle used without a namespace lists across
        all namespaces.
        """
        resources = None
        try:
            resources = self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            log.debug(
                "No objects of kind [%s] found or multiple objects matching request found",
                kind,
            )
        return resources
