"""
This defines the base class for all DeployManager types and the watch event
types they emit.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple
import abc

# Local
from ..managed_object import ManagedObject

## Watch Events ################################################################


class KubeEventType(Enum):
    """Enum for all possible kubernetes event types"""

    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    ADDED = "ADDED"


@dataclass
class KubeWatchEvent:
    """The type, resource, and arrival time of a single watch event"""

    type: KubeEventType
    resource: ManagedObject
    timestamp: datetime = field(default_factory=datetime.now)


## DeployManagerBase ###########################################################


class DeployManagerBase(abc.ABC):
    """
    Base class for deploy managers which are responsible for every read and
    write against the cluster's API store.

    Error Semantics: Read and write operations return a leading success flag
    rather than raising. The one exception is an optimistic-concurrency
    conflict, which is raised as ConflictError so that it can unwind the whole
    reconcile and be requeued with a short fixed delay.
    """

    @abc.abstractmethod
    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Fetch the current state of a given object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The full name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object or None for cluster
                scoped kinds
            api_version:  Optional[str]
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """

    @abc.abstractmethod
    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        """Fetch a list of objects that match either/both the label or field
        selector

        Args:
            kind:  str
                The kind of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object
            api_version:  Optional[str]
                The api_version of the resource kind to fetch
            label_selector:  Optional[str]
                The label_selector to filter the resources
            field_selector:  Optional[str]
                The field_selector to filter the resources

        Returns:
            success:  bool
                Whether or not the list operation succeeded
            current_state:  List[dict]
                A list of dict representations for the objects configuration,
                or an empty list if no objects match
        """

    @abc.abstractmethod
    def create_object(self, definition: dict) -> Tuple[bool, Optional[dict]]:
        """Create a new object. If the definition has metadata.generateName
        and no name, the server picks the name.

        Args:
            definition:  dict
                The full manifest of the object to create

        Returns:
            success:  bool
                Whether or not the create succeeded
            content:  dict or None
                The created object as stored by the server
        """

    @abc.abstractmethod
    def patch_object(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        patch: dict,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Apply a JSON merge patch to an object. Keys set to None in the patch
        are removed from the object.

        Error Semantics: If resource_version is given and the object has
        changed since, ConflictError is raised.

        Args:
            kind:  str
                The kind of the object to patch
            name:  str
                The name of the object to patch
            patch:  dict
                The merge patch body
            namespace:  Optional[str]
                The namespace of the object or None for cluster scoped kinds
            api_version:  Optional[str]
                The api_version of the resource kind
            resource_version:  Optional[str]
                The resourceVersion the patch is based on

        Returns:
            success:  bool
                Whether or not the patch succeeded
            content:  dict or None
                The patched object as stored by the server
        """

    @abc.abstractmethod
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """Ensure that the resources defined in the list of definitions are
        deleted from the cluster. Objects that are already gone count as
        success without change.

        Args:
            resource_definitions:  List[dict]
                List of resource object dicts to delete

        Returns:
            success:  bool
                Whether or not the delete succeeded
            changed:  bool
                Whether or not the delete resulted in changes
        """

    @abc.abstractmethod
    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Merge-patch the status subresource of an object. Status fields that
        are not named in status are left untouched.

        Args:
            kind:  str
                The kind of the object
            name:  str
                The full name of the object
            namespace:  Optional[str]
                The namespace of the object. If None, the object is cluster
                scoped
            status:  dict
                The status fields to patch onto the given object
            api_version:  Optional[str]
                The api_version of the resource to update
            resource_version:  Optional[str]
                The resourceVersion the patch is based on

        Returns:
            success:  bool
                Whether or not the status patch succeeded
            changed:  bool
                Whether or not the status patch resulted in a change
        """

    @abc.abstractmethod
    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Listen for changes in the cluster and return a stream of
        KubeWatchEvents. The current objects are emitted as ADDED first.

        Args:
            kind:  str
                The kind of the objects to watch
            api_version:  Optional[str]
                The api_version of the resource kind to watch
            namespace:  Optional[str]
                The namespace to watch or None for all namespaces
            label_selector:  Optional[str]
                The label_selector to filter the resources
            resource_version:  Optional[str]
                The resource_version the events must be newer than
            timeout:  Optional[float]
                Stop the stream after this many seconds

        Returns:
            watch_stream: Iterator[KubeWatchEvent]
                A stream of KubeWatchEvents generated while watching
        """
