"""Standard data types used by the watch manager"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import cached_property
from typing import Callable, Dict, Optional, Union

# Local
from ..deploy_manager import KubeEventType
from ..managed_object import GroupVersionKind, ManagedObject

# Forward Declarations
FILTER_MANAGER_TYPE = "FilterManager"
FILTER_SPEC_TYPE = "FilterSpec"
RECONCILER_TYPE = "ReleaseReconciler"


@dataclass(eq=True, frozen=True)
class ResourceId:
    """Class containing the information needed to identify a resource"""

    api_version: str
    kind: str
    name: str = None
    namespace: str = None

    # Id properties

    @cached_property
    def global_id(self) -> str:
        """Get the global_id for a resource in the form kind.version.group"""
        group_version = self.api_version.split("/")
        return ".".join([self.kind, *reversed(group_version)])

    @cached_property
    def namespaced_id(self) -> str:
        """Get the namespace specific id for a resource"""
        return f"{self.namespace}.{self.global_id}"

    def get_id(self) -> str:
        """Get the requisite id for a resource"""
        return self.namespaced_id if self.namespace else self.global_id

    def get_named_id(self) -> str:
        """Get a named id for a resource"""
        return f"{self.name}.{self.get_id()}"

    def get_resource(self) -> dict:
        """Get a resource template from this id"""
        return {
            "kind": self.kind,
            "apiVersion": self.api_version,
            "metadata": {"name": self.name, "namespace": self.namespace},
        }

    # Helper Creation Functions
    @classmethod
    def from_resource(cls, resource: Union[ManagedObject, dict]) -> "ResourceId":
        """Create a resource id from an existing resource"""
        metadata = resource.get("metadata", {})
        return cls(
            api_version=resource.get("apiVersion"),
            kind=resource.get("kind"),
            namespace=metadata.get("namespace"),
            name=metadata.get("name"),
        )

    @classmethod
    def from_owner_ref(cls, owner_ref: dict, namespace: str = None) -> "ResourceId":
        """Create a resource id from an ownerRef"""
        return cls(
            api_version=owner_ref.get("apiVersion"),
            kind=owner_ref.get("kind"),
            namespace=namespace,
            name=owner_ref.get("name"),
        )

    @classmethod
    def from_gvk(cls, gvk: GroupVersionKind, namespace: str = None) -> "ResourceId":
        """Get a kind as a resource id"""
        return cls(api_version=gvk.api_version, kind=gvk.kind, namespace=namespace)


### Watch Data Classes


@dataclass
class WatchedResource:
    """A class for tracking a resource in the cluster. Every resource that has a
    requested watch will have a corresponding WatchedResource"""

    gvk: ResourceId
    # One FilterManager per watch request keyed by the requester's named id
    filters: Dict[str, FILTER_MANAGER_TYPE] = field(default_factory=dict)


@dataclass
class WatchRequest:
    """A request to watch a kind. The requester is the kind whose reconciler
    is triggered. When the watched and requester kinds differ, events are
    mapped to the owning requester through the watched object's ownerReferences.
    """

    watched: ResourceId
    requester: ResourceId
    reconciler: RECONCILER_TYPE

    # Don't compare filters when checking equality as we
    # assume they're the same if they have the same reconciler
    filters: FILTER_SPEC_TYPE = field(default_factory=list, compare=False)

    # Whether the requester kind lives in a namespace. Owners of dependents
    # are looked up in the dependent's namespace when set.
    owner_namespaced: bool = field(default=True, compare=False)

    def __hash__(self) -> int:
        return hash((self.watched, self.requester, id(self.reconciler)))

    @property
    def is_dependent(self) -> bool:
        return self.watched.global_id != self.requester.global_id


## Reconcile Enums


class ReconcileRequestType(Enum):
    """Enum to expand the possible KubeEventTypes to include watch manager
    specific events"""

    # Used for events that are a requeue of an object
    REQUEUED = "REQUEUED"

    # Used for periodic reconcile events
    PERIODIC = "PERIODIC"

    # Used for when an event is a dependent resource of a release
    DEPENDENT = "DEPENDENT"

    # Used as a sentinel to alert threads to stop
    STOPPED = "STOPPED"


@dataclass
class ReconcileRequest:
    """One request to the ReconcileThread: the current resource and the
    reconciler that handles it
    """

    reconciler: RECONCILER_TYPE
    type: Union[ReconcileRequestType, KubeEventType]
    resource: ManagedObject
    timestamp: datetime = field(default_factory=datetime.now)

    def uid(self):
        """Get the uid of the resource being reconciled"""
        return self.resource.uid


### Timer Data Classes
@dataclass(order=True)
class TimerEvent:
    """Class for keeping track of an item in the timer queue. Time is the
    only comparable field to support the TimerThreads priority queue"""

    time: datetime
    action: Callable = field(compare=False)
    args: list = field(default_factory=list, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        queue"""
        self.stale = True


# Optional cancel handle returned when scheduling
OptionalTimerEvent = Optional[TimerEvent]
