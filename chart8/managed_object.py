"""
Helper objects to represent kubernetes objects seen by the operator. Rendered
dependent objects stay generic (ManagedObject) while the custom resource that
drives a release is decoded into a ManagedResource exposing the fields the
reconciler works with.
"""
# Standard
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import uuid

KUBE_LIST_IDENTIFIER = "List"


class ResourceScope(Enum):
    """Whether a kind lives inside a namespace or at the cluster level"""

    NAMESPACED = "Namespaced"
    CLUSTER = "Cluster"


@dataclass(frozen=True)
class GroupVersionKind:
    """The type identifier of a cluster object"""

    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """Parse an apiVersion string (group/version or just version for the
        core group) plus kind
        """
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def __str__(self):
        return f"{self.kind}.{self.version}.{self.group}"


class ManagedObject:
    """Basic struct to represent a generic kubernetes object"""

    def __init__(self, definition: dict):
        self.kind = definition.get("kind")
        self.metadata = definition.get("metadata", {})
        self.name = self.metadata.get("name")
        self.namespace = self.metadata.get("namespace")
        self.uid = self.metadata.get("uid", str(uuid.uuid4()))
        self.resource_version = self.metadata.get("resourceVersion")
        self.api_version = definition.get("apiVersion")
        self.definition = definition

        assert self.kind is not None, "No kind found"
        assert self.api_version is not None, "No apiVersion found"

        # If resource is not list then check name
        if KUBE_LIST_IDENTIFIER not in self.kind:
            assert self.name is not None, "No name found"

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(self.api_version, self.kind)

    def get(self, *args, **kwargs):
        """Pass get calls to the objects definition"""
        return self.definition.get(*args, **kwargs)

    def __str__(self):
        return f"{self.api_version}/{self.kind}/{self.name}"

    def __repr__(self):
        return str(self)

    def __hash__(self):
        """Hash explicitly excludes the definition so that the object's
        identifier in a map can be based only on the unique identifier of the
        resource in the cluster. If the original resource did not provide a
        unique identifier then use the apiVersion, kind, and name
        """
        return hash(self.metadata.get("uid", str(self)))

    def __eq__(self, other):
        return hash(self) == hash(other)


class ManagedResource(ManagedObject):
    """The custom resource instance that a release is rendered for. The
    finalizer list and status are read from and written to the wrapped
    definition so that callers persisting the definition see every change.
    """

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @finalizers.setter
    def finalizers(self, finalizers: List[str]):
        deduped = list(dict.fromkeys(finalizers))
        if deduped:
            self.metadata["finalizers"] = deduped
        else:
            self.metadata.pop("finalizers", None)

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def generation(self) -> Optional[int]:
        return self.metadata.get("generation")

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    @status.setter
    def status(self, status: dict):
        self.definition["status"] = status
