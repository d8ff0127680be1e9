"""
This defines the base class for all DeployManager types.
"""

# Standard
from typing import Iterator, List, Optional, Tuple
import abc
import threading

# Local
from ..managed_object import ResourceScope
from .kube_event import KubeWatchEvent


class DeployManagerBase(abc.ABC):
    """
    Base class for deploy managers which will be responsible for carrying out
    all cluster operations for the operator: applying rendered objects, reading
    and watching objects, and writing status and finalizers back onto the
    resources being reconciled.
    """

    @abc.abstractmethod
    def deploy(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """The deploy function ensures that the resources defined in the list of
        definitions are deployed in the cluster.

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to apply to the cluster

        Returns:
            success:  bool
                Whether or not the deploy succeeded
            changed:  bool
                Whether or not the deployment resulted in changes
        """

    @abc.abstractmethod
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """The disable function ensures that the resources defined in the list of
        definitions are deleted from the cluster

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to delete from the cluster

        Returns:
            success:  bool
                Whether or not the delete succeeded
            changed:  bool
                Whether or not the delete resulted in changes
        """

    @abc.abstractmethod
    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """The get_object_current_state function fetches the current state of a
        given object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The full name of the object to fetch
            namespace:  str
                The namespace to search for the object
            api_version:  str
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """

    @abc.abstractmethod
    def watch_objects(
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[KubeWatchEvent]:
        """The watch_objects function listens for changes in the cluster and
        returns a stream of KubeWatchEvents. Existing objects are reported as
        ADDED events when the stream starts.

        Args:
            kind:  str
                The kind of the object to watch
            api_version:  str
                The api_version of the resource kind to watch
            namespace:  str
                The namespace to watch or None for the whole cluster
            resource_version:  str
                The resource_version the events must be newer than
            stop_event:  Optional[threading.Event]
                Event that ends the stream once set

        Returns:
            watch_stream: Generator[KubeWatchEvent]
                A stream of KubeWatchEvents generated while watching
        """

    @abc.abstractmethod
    def set_status(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Set the status sub-resource for an object

        Args:
            kind:  str
                The kind of the object to update
            name:  str
                The full name of the object to update
            namespace:  Optional[str]
                The namespace of the object. If None the object is cluster
                scoped
            status:  dict
                The status object to set onto the given object
            api_version:  str
                The api_version of the resource to update

        Returns:
            success:  bool
                Whether or not the status update operation succeeded
            changed:  bool
                Whether or not the status update resulted in a change
        """

    @abc.abstractmethod
    def set_finalizers(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        finalizers: List[str],
        api_version: Optional[str] = None,
        previous_finalizers: Optional[List[str]] = None,
    ) -> Tuple[bool, bool]:
        """Update the metadata.finalizers list of an object. Once an object
        marked for deletion has no finalizers left, the cluster removes it.

        When previous_finalizers is given, only the names added or removed
        relative to it are applied to the list currently on the object so
        that names written by other controllers in the meantime are kept.
        Otherwise the list is replaced.

        Returns:
            success:  bool
                Whether or not the update operation succeeded
            changed:  bool
                Whether or not the update resulted in a change
        """

    @abc.abstractmethod
    def get_resource_scope(
        self, kind: str, api_version: str
    ) -> Optional[ResourceScope]:
        """Look up whether the given kind is namespaced or cluster scoped.
        Returns None if the kind is unknown to the cluster.
        """


def merge_finalizer_changes(
    current: List[str],
    desired: List[str],
    previous: Optional[List[str]] = None,
) -> List[str]:
    """Compute the finalizer list to write given the list on the object now,
    the list the caller wants, and the list the caller originally read

    Args:
        current:  List[str]
            The finalizers currently on the object
        desired:  List[str]
            The finalizers the caller computed
        previous:  Optional[List[str]]
            The finalizers the caller read before computing desired. If None,
            desired replaces current.

    Returns:
        finalizers:  List[str]
            The merged finalizer list
    """
    if previous is None:
        return list(desired)
    removed = set(previous) - set(desired)
    merged = [name for name in current if name not in removed]
    merged.extend(name for name in desired if name not in merged)
    return merged
