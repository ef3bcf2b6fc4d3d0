"""
The DryRunDeployManager implements the DeployManager interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map. It mirrors the API store semantics the reconcilers rely on:
resourceVersion conflicts, generateName, merge patches, and finalizer gated
deletion.
"""

# Standard
from queue import Empty, Queue
from threading import RLock
from typing import Iterator, List, Optional, Tuple
import copy
import operator
import random
import string
import time
import uuid

# First Party
import alog

# Local
from ..exceptions import ConflictError
from ..managed_object import ManagedObject
from ..utils import format_timestamp, merge_patch, now
from .base import DeployManagerBase, KubeEventType, KubeWatchEvent

log = alog.use_channel("DRYRN")

# Characters the API server uses for generateName suffixes
_NAME_SUFFIX_CHARS = string.ascii_lowercase + string.digits
_NAME_SUFFIX_LEN = 5


class DryRunDeployManager(DeployManagerBase):
    """
    Deploy manager which doesn't actually deploy!
    """

    def __init__(self, resources: Optional[List[dict]] = None):
        """Construct with an optional list of resources that already exist in
        the cluster. Their metadata (uid, creationTimestamp) is kept as given so
        that tests can control object age.
        """
        self._cluster_content = {}
        self._lock = RLock()
        self._resource_version = 0
        self._subscribers = []

        for resource in resources or []:
            self._store(self._prepare_new(copy.deepcopy(resource)))

    ## Interface ###############################################################

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug2(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )
        with self._lock:
            content = self._lookup(kind, name, namespace, api_version)
            return True, copy.deepcopy(content)

    def filter_objects_current_state(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2(
            "DRY RUN filter_objects_current_state of [%s] in [%s] with [%s]",
            kind,
            namespace,
            label_selector,
        )
        matches = []
        with self._lock:
            for resource in self._iter_kind(kind, namespace, api_version):
                if not _matches(resource, label_selector, field_selector):
                    continue
                matches.append(copy.deepcopy(resource))
        return True, matches

    def create_object(self, definition):
        definition = copy.deepcopy(definition)
        metadata = definition.setdefault("metadata", {})
        kind = definition.get("kind")
        api_version = definition.get("apiVersion")
        namespace = metadata.get("namespace")
        with self._lock:
            if not metadata.get("name"):
                prefix = metadata.get("generateName")
                if not prefix:
                    log.warning("Cannot create [%s] without name or generateName", kind)
                    return False, None
                metadata["name"] = self._generate_name(
                    prefix, kind, namespace, api_version
                )
            name = metadata["name"]
            if self._lookup(kind, name, namespace, api_version) is not None:
                log.warning("DRY RUN create of existing [%s/%s]", kind, name)
                return False, None

            # Server managed fields are never taken from a create body
            for key in ["uid", "creationTimestamp", "resourceVersion"]:
                metadata.pop(key, None)
            definition.pop("status", None)
            resource = self._prepare_new(definition)
            log.debug("DRY RUN create [%s/%s] in [%s]", kind, name, namespace)
            self._store(resource)
            self._emit(KubeEventType.ADDED, resource)
            return True, copy.deepcopy(resource)

    def patch_object(
        self,
        kind,
        name,
        patch,
        namespace=None,
        api_version=None,
        resource_version=None,
    ):  # pylint: disable=too-many-arguments
        log.debug("DRY RUN patch [%s/%s] in [%s]", kind, name, namespace)
        log.debug4(patch)
        with self._lock:
            current = self._lookup(kind, name, namespace, api_version)
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, None
            self._check_resource_version(current, resource_version)

            # Status is a subresource and cannot be written through a patch of
            # the main resource
            patch = {key: val for key, val in patch.items() if key != "status"}
            protected = {
                key: current["metadata"].get(key)
                for key in [
                    "name",
                    "namespace",
                    "uid",
                    "creationTimestamp",
                    "deletionTimestamp",
                    "generation",
                ]
                if key in current["metadata"]
            }
            updated = copy.deepcopy(merge_patch(current, patch))
            updated.setdefault("metadata", {}).update(protected)
            if updated == current:
                return True, copy.deepcopy(current)

            if updated.get("spec") != current.get("spec"):
                updated["metadata"]["generation"] = (
                    current["metadata"].get("generation", 1) + 1
                )
            return True, copy.deepcopy(self._commit(updated))

    def disable(self, resource_definitions):
        changed = False
        for resource in resource_definitions:
            api_version = resource.get("apiVersion")
            kind = resource.get("kind")
            name = resource.get("metadata", {}).get("name")
            namespace = resource.get("metadata", {}).get("namespace")
            log.debug("DRY RUN disable [%s/%s] in [%s]", kind, name, namespace)
            with self._lock:
                current = self._lookup(kind, name, namespace, api_version)
                if current is None:
                    continue
                changed = True
                if current["metadata"].get("finalizers"):
                    if not current["metadata"].get("deletionTimestamp"):
                        log.debug2("Marking [%s/%s] for deletion", kind, name)
                        current = copy.deepcopy(current)
                        current["metadata"]["deletionTimestamp"] = format_timestamp(
                            now()
                        )
                        self._commit(current)
                else:
                    self._remove(current)
        return True, changed

    def set_status(
        self,
        kind,
        name,
        namespace,
        status,
        api_version=None,
        resource_version=None,
    ):  # pylint: disable=too-many-arguments
        log.debug(
            "DRY RUN set_status of [%s.%s/%s] in %s",
            api_version,
            kind,
            name,
            namespace,
        )
        log.debug4(status)
        with self._lock:
            current = self._lookup(kind, name, namespace, api_version)
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False
            self._check_resource_version(current, resource_version)
            prev_status = current.get("status") or {}
            new_status = merge_patch(prev_status, status)
            if new_status == prev_status:
                return True, False
            updated = copy.deepcopy(current)
            updated["status"] = new_status
            self._commit(updated)
            return True, True

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Watch the in-memory cluster by registering a subscriber queue. The
        initial listing is emitted as ADDED events.
        """
        event_queue = Queue()
        subscriber = (kind, api_version, namespace, label_selector, event_queue)
        with self._lock:
            _, initial = self.filter_objects_current_state(
                kind=kind,
                namespace=namespace,
                api_version=api_version,
                label_selector=label_selector,
            )
            self._subscribers.append(subscriber)

        end_time = None if timeout is None else time.time() + timeout
        try:
            for manifest in initial:
                yield KubeWatchEvent(KubeEventType.ADDED, ManagedObject(manifest))
            while True:
                wait = 1.0
                if end_time is not None:
                    wait = max(end_time - time.time(), 0)
                try:
                    event = event_queue.get(timeout=wait)
                    log.debug3("Yielding event %s", event)
                    yield event
                except Empty:
                    pass
                if end_time is not None and time.time() >= end_time:
                    return
        finally:
            with self._lock:
                self._subscribers.remove(subscriber)

    ## Implementation Details ##################################################

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _prepare_new(self, resource: dict) -> dict:
        """Fill in the server managed metadata of a new object"""
        metadata = resource.setdefault("metadata", {})
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata.setdefault("creationTimestamp", format_timestamp(now()))
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = self._next_resource_version()
        return resource

    def _generate_name(self, prefix, kind, namespace, api_version) -> str:
        while True:
            name = prefix + "".join(
                random.choices(_NAME_SUFFIX_CHARS, k=_NAME_SUFFIX_LEN)
            )
            if self._lookup(kind, name, namespace, api_version) is None:
                return name

    @staticmethod
    def _check_resource_version(current: dict, resource_version: Optional[str]):
        current_version = current["metadata"].get("resourceVersion")
        if resource_version is not None and resource_version != current_version:
            log.debug(
                "Conflict on [%s/%s]: %s != %s",
                current.get("kind"),
                current["metadata"].get("name"),
                resource_version,
                current_version,
            )
            raise ConflictError(
                f"Object {current.get('kind')}/{current['metadata'].get('name')} "
                "has been modified; please apply your changes to the latest version"
            )

    def _lookup(self, kind, name, namespace, api_version) -> Optional[dict]:
        kind_entries = self._cluster_content.get(namespace, {}).get(kind, {})
        for api_ver, entries in kind_entries.items():
            if name in entries and (api_version is None or api_ver == api_version):
                return entries[name]
        return None

    def _iter_kind(self, kind, namespace, api_version) -> Iterator[dict]:
        namespaces = [namespace]
        if namespace is None:
            namespaces = list(self._cluster_content.keys())
        for nspace in namespaces:
            kind_entries = self._cluster_content.get(nspace, {}).get(kind, {})
            for api_ver, entries in kind_entries.items():
                if api_version is not None and api_ver != api_version:
                    continue
                yield from entries.values()

    def _store(self, resource: dict):
        metadata = resource["metadata"]
        (
            self._cluster_content.setdefault(metadata.get("namespace"), {})
            .setdefault(resource["kind"], {})
            .setdefault(resource["apiVersion"], {})
        )[metadata["name"]] = resource

    def _commit(self, updated: dict) -> dict:
        """Store an updated object, finishing its deletion if it is marked for
        deletion and has no finalizers left
        """
        updated["metadata"]["resourceVersion"] = self._next_resource_version()
        if updated["metadata"].get("deletionTimestamp") and not updated[
            "metadata"
        ].get("finalizers"):
            self._remove(updated)
        else:
            self._store(updated)
            self._emit(KubeEventType.MODIFIED, updated)
        return updated

    def _remove(self, resource: dict):
        metadata = resource["metadata"]
        namespace = metadata.get("namespace")
        kind = resource["kind"]
        api_version = resource["apiVersion"]
        del self._cluster_content[namespace][kind][api_version][metadata["name"]]
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]
        self._emit(KubeEventType.DELETED, resource)

    def _emit(self, event_type: KubeEventType, resource: dict):
        for kind, api_version, namespace, label_selector, queue in self._subscribers:
            if resource["kind"] != kind:
                continue
            if api_version is not None and resource["apiVersion"] != api_version:
                continue
            if (
                namespace is not None
                and resource["metadata"].get("namespace") != namespace
            ):
                continue
            if not _matches(resource, label_selector, None):
                continue
            queue.put(
                KubeWatchEvent(event_type, ManagedObject(copy.deepcopy(resource)))
            )


## Selectors ###################################################################


def _matches(resource: dict, label_selector, field_selector) -> bool:
    labels = resource.get("metadata", {}).get("labels") or {}
    if label_selector and not _match_selector(labels, label_selector):
        return False
    if field_selector and not _match_selector(
        _convert_dict_to_dot(resource), field_selector
    ):
        return False
    return True


def _match_selector(values, value_selector) -> bool:
    """This function implements the kubernetes selector to determine if
    a set of values matches the selector. For the complete documentation
    regarding selectors see:
    https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/#syntax-and-character-set
    """
    operator_actions = {
        "!=": operator.ne,
        "==": operator.eq,
        "=": operator.eq,
        " notin ": lambda val, expected: val not in expected,
        " in ": lambda val, expected: val in expected,
    }

    for selector in _split_selectors(value_selector):
        selector = selector.strip()
        action = None
        for op, func in operator_actions.items():  # pylint: disable=invalid-name
            parts = selector.split(op)
            if len(parts) != 2:
                continue
            key = parts[0].strip()
            if op.strip() in ["in", "notin"]:
                expected = [
                    item.strip()
                    for item in parts[1].strip().strip("()").split(",")
                    if item.strip()
                ]
            else:
                expected = parts[1].strip()
            action = (op.strip(), func, key, expected)
            break

        # Existence checks
        if action is None:
            if selector.startswith("!"):
                if selector[1:].strip() in values:
                    return False
            elif selector not in values:
                return False
            continue

        op_name, func, key, expected = action
        value = values.get(key)
        value = str(value).strip() if value is not None else value
        if op_name not in ["!=", "notin"] and value is None:
            return False
        if not func(value, expected):
            log.debug4("Value [%s] for [%s] does not match %s", value, key, selector)
            return False

    return True


def _split_selectors(selector=""):
    """Split up selectors by , but ignoring those surrounded by () e.g.
    'app,app in (frontend, backend)' becomes ['app','app in (frontend, backend)']
    """
    output_list = []
    current_selector = ""
    in_paren = False
    for char in selector:
        if char == "," and not in_paren:
            output_list.append(current_selector)
            current_selector = ""
            continue
        if char == "(":
            in_paren = True
        elif char == ")":
            in_paren = False
        current_selector += char
    if current_selector:
        output_list.append(current_selector)
    return output_list


def _convert_dict_to_dot(dictionary, prefix=""):
    """Helper function to convert a dictionary to a map
    of strings dotted together. For example {a:{b:1},c:2}
    becomes {a.b:1,c:2}
    """
    if not isinstance(dictionary, dict):
        return {prefix: dictionary}
    output_dict = {}
    for key, val in dictionary.items():
        new_key = key if prefix == "" else f"{prefix}.{key}"
        output_dict.update(_convert_dict_to_dot(val, new_key))
    return output_dict
