"""
The DryRunDeployManager implements the DeployManager interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map.
"""

# Standard
from datetime import datetime
from queue import Empty, Queue
from threading import Event, RLock
from typing import Callable, Iterable, Iterator, List, Optional, Tuple
import copy
import uuid

# First Party
import alog

# Local
from ..managed_object import ManagedObject, ResourceScope
from .base import DeployManagerBase, merge_finalizer_changes
from .kube_event import KubeEventType, KubeWatchEvent

log = alog.use_channel("DRY-RUN")

# Built-in kinds that live outside of any namespace
DEFAULT_CLUSTER_SCOPED_KINDS = [
    "ClusterRole",
    "ClusterRoleBinding",
    "CustomResourceDefinition",
    "Namespace",
    "PersistentVolume",
    "PriorityClass",
    "StorageClass",
]

# Seconds between checks of the stop event while a watch is idle
WATCH_POLL_SECONDS = 0.1

WatchCallback = Callable[[KubeEventType, dict], None]


class DryRunDeployManager(DeployManagerBase):
    """
    Deploy manager which doesn't actually deploy!
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        cluster_scoped_kinds: Optional[Iterable[str]] = None,
    ):
        """Construct with an optional set of resources that already exist in
        the cluster

        Args:
            resources:  Optional[List[dict]]
                Objects to pre-populate the in-memory cluster with
            cluster_scoped_kinds:  Optional[Iterable[str]]
                Kinds that are reported as cluster scoped. Every other kind is
                namespaced.
        """
        self._cluster_content = {}
        self._lock = RLock()
        self._watches = {}
        self._resource_version = 0
        self.cluster_scoped_kinds = set(
            DEFAULT_CLUSTER_SCOPED_KINDS
            if cluster_scoped_kinds is None
            else cluster_scoped_kinds
        )
        self._deploy(resources or [], call_watches=False)

    ## Interface ###############################################################

    def deploy(self, resource_definitions, **_):
        log.info("DRY RUN deploy")
        return self._deploy(resource_definitions)

    def disable(self, resource_definitions):
        log.info("DRY RUN disable")
        changed = False
        for resource in resource_definitions:
            api_version = resource.get("apiVersion")
            kind = resource.get("kind")
            name = resource.get("metadata", {}).get("name")
            namespace = resource.get("metadata", {}).get("namespace")
            with self._lock:
                current = self._get_entry(kind, name, namespace, api_version)
                if current is None:
                    continue
                changed = True
                metadata = current.setdefault("metadata", {})

                # Objects holding finalizers are only marked for deletion
                if metadata.get("finalizers"):
                    if "deletionTimestamp" not in metadata:
                        metadata["deletionTimestamp"] = _timestamp()
                        metadata["deletionGracePeriodSeconds"] = 0
                        self._bump(current, generation=True)
                        self._notify(KubeEventType.MODIFIED, current)
                else:
                    self._delete(current)
        return True, changed

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )
        with self._lock:
            return True, copy.deepcopy(
                self._get_entry(kind, name, namespace, api_version)
            )

    def set_status(self, kind, name, namespace, status, api_version=None):
        log.debug(
            "DRY RUN set_status of [%s.%s/%s] in %s", api_version, kind, name, namespace
        )
        with self._lock:
            current = self._get_entry(kind, name, namespace, api_version)
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False
            if current.get("status") == status:
                return True, False
            current["status"] = copy.deepcopy(status)
            self._bump(current)
            self._notify(KubeEventType.MODIFIED, current)
        return True, True

    def set_finalizers(
        self,
        kind,
        name,
        namespace,
        finalizers,
        api_version=None,
        previous_finalizers=None,
    ):
        log.debug(
            "DRY RUN set_finalizers of [%s.%s/%s] in %s: %s",
            api_version,
            kind,
            name,
            namespace,
            finalizers,
        )
        with self._lock:
            current = self._get_entry(kind, name, namespace, api_version)
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False
            metadata = current.setdefault("metadata", {})
            current_finalizers = list(metadata.get("finalizers") or [])
            finalizers = merge_finalizer_changes(
                current_finalizers, finalizers, previous_finalizers
            )
            if current_finalizers == finalizers:
                return True, False

            if finalizers:
                metadata["finalizers"] = list(finalizers)
            else:
                metadata.pop("finalizers", None)

            # Deletion completes once the last finalizer is gone
            if metadata.get("deletionTimestamp") and not finalizers:
                self._delete(current)
            else:
                self._bump(current)
                self._notify(KubeEventType.MODIFIED, current)
        return True, True

    def get_resource_scope(self, kind, api_version):
        if kind in self.cluster_scoped_kinds:
            return ResourceScope.CLUSTER
        return ResourceScope.NAMESPACED

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        stop_event: Optional[Event] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Watch the in-memory cluster by registering a callback. Existing
        objects are yielded as ADDED events first. The stream ends when the
        stop_event is set or when no event arrives within the timeout.
        """
        event_queue = Queue()

        def add_event(event_type: KubeEventType, manifest: dict):
            event_queue.put(
                KubeWatchEvent(event_type, ManagedObject(copy.deepcopy(manifest)))
            )

        with self._lock:
            initial = self._list_entries(kind, namespace, api_version)
            self.register_watch(api_version, kind, add_event, namespace)

        try:
            for manifest in initial:
                yield KubeWatchEvent(KubeEventType.ADDED, ManagedObject(manifest))

            idle = 0.0
            while not (stop_event and stop_event.is_set()):
                try:
                    event = event_queue.get(timeout=WATCH_POLL_SECONDS)
                except Empty:
                    idle += WATCH_POLL_SECONDS
                    if timeout is not None and idle >= timeout:
                        return
                    continue
                idle = 0.0
                log.debug2("Yielding event %s", event)
                yield event
        finally:
            self.unregister_watch(api_version, kind, add_event, namespace)

    ## Dry Run Methods #########################################################

    def register_watch(
        self,
        api_version: Optional[str],
        kind: str,
        callback: WatchCallback,
        namespace: Optional[str] = None,
    ):
        """Register a callback for every change to objects of the given kind.
        A None api_version or namespace matches any value.
        """
        watch_key = self._watch_key(api_version, kind, namespace)
        log.debug("Registering watch for %s", watch_key)
        with self._lock:
            self._watches.setdefault(watch_key, []).append(callback)

    def unregister_watch(
        self,
        api_version: Optional[str],
        kind: str,
        callback: WatchCallback,
        namespace: Optional[str] = None,
    ):
        watch_key = self._watch_key(api_version, kind, namespace)
        with self._lock:
            callbacks = self._watches.get(watch_key, [])
            if callback in callbacks:
                callbacks.remove(callback)

    ## Implementation Details ##################################################

    @staticmethod
    def _watch_key(api_version=None, kind=None, namespace=None):
        return ":".join([api_version or "", kind or "", namespace or ""])

    def _notify(self, event_type: KubeEventType, manifest: dict):
        api_version = manifest.get("apiVersion")
        kind = manifest.get("kind")
        namespace = manifest.get("metadata", {}).get("namespace")
        keys = {
            self._watch_key(api_version, kind, namespace),
            self._watch_key(api_version, kind),
            self._watch_key(None, kind, namespace),
            self._watch_key(None, kind),
        }
        for key in keys:
            for callback in list(self._watches.get(key, [])):
                log.debug3("Calling registered watch [%s] for [%s]", callback, key)
                callback(event_type, manifest)

    def _get_entry(self, kind, name, namespace, api_version) -> Optional[dict]:
        """Find the stored object. Must be called with the lock held."""
        if kind in self.cluster_scoped_kinds:
            namespace = None
        matches = [
            entries[name]
            for api_ver, entries in self._cluster_content.get(namespace, {})
            .get(kind, {})
            .items()
            if name in entries and (api_version is None or api_ver == api_version)
        ]
        if len(matches) == 1:
            return matches[0]
        return None

    def _list_entries(self, kind, namespace, api_version) -> List[dict]:
        if kind in self.cluster_scoped_kinds:
            namespace = None
        namespaces = (
            [namespace] if namespace is not None else list(self._cluster_content)
        )
        return [
            copy.deepcopy(entry)
            for ns in namespaces
            for api_ver, entries in self._cluster_content.get(ns, {})
            .get(kind, {})
            .items()
            if api_version is None or api_ver == api_version
            for entry in entries.values()
        ]

    def _bump(self, manifest: dict, generation: bool = False):
        self._resource_version += 1
        metadata = manifest.setdefault("metadata", {})
        metadata["resourceVersion"] = str(self._resource_version)
        if generation:
            metadata["generation"] = metadata.get("generation", 0) + 1

    def _delete(self, manifest: dict):
        api_version = manifest.get("apiVersion")
        kind = manifest.get("kind")
        name = manifest.get("metadata", {}).get("name")
        namespace = manifest.get("metadata", {}).get("namespace")
        log.debug2("DRY RUN deleting [%s/%s/%s]", namespace, kind, name)
        del self._cluster_content[namespace][kind][api_version][name]
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]
        self._notify(KubeEventType.DELETED, manifest)

    def _deploy(self, resource_definitions, call_watches=True) -> Tuple[bool, bool]:
        changes = False
        for resource in resource_definitions:
            resource = copy.deepcopy(resource)
            api_version = resource.get("apiVersion")
            kind = resource.get("kind")
            metadata = resource.setdefault("metadata", {})
            name = metadata.get("name")
            namespace = metadata.get("namespace")
            if kind in self.cluster_scoped_kinds:
                namespace = None
                metadata.pop("namespace", None)
            log.debug("DRY RUN deploy [%s/%s/%s/%s]", namespace, kind, api_version, name)
            log.debug4(resource)

            with self._lock:
                entries = (
                    self._cluster_content.setdefault(namespace, {})
                    .setdefault(kind, {})
                    .setdefault(api_version, {})
                )
                current = entries.get(name)
                if current is None:
                    metadata["creationTimestamp"] = _timestamp()
                    metadata.setdefault("uid", str(uuid.uuid4()))
                    metadata["generation"] = 1
                    event_type = KubeEventType.ADDED
                    changed = True
                else:
                    current_md = current.get("metadata", {})
                    for key in ["creationTimestamp", "uid", "deletionTimestamp"]:
                        if key in current_md:
                            metadata[key] = current_md[key]
                    metadata["generation"] = current_md.get("generation", 1)
                    if "status" not in resource and "status" in current:
                        resource["status"] = current["status"]
                    changed = _spec_content(current) != _spec_content(resource)
                    if changed:
                        metadata["generation"] += 1
                    changed = changed or _strip_versions(current) != _strip_versions(
                        resource
                    )
                    event_type = KubeEventType.MODIFIED

                if not changed:
                    continue
                changes = True
                self._resource_version += 1
                metadata["resourceVersion"] = str(self._resource_version)
                entries[name] = resource
                if call_watches:
                    self._notify(event_type, resource)

        return True, changes


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H:%M:%SZ")


def _spec_content(manifest: dict) -> dict:
    """The parts of an object that bump its generation when changed"""
    return {
        key: val for key, val in manifest.items() if key not in ["metadata", "status"]
    }


def _strip_versions(manifest: dict) -> dict:
    manifest = copy.deepcopy(manifest)
    for key in ["resourceVersion", "generation"]:
        manifest.get("metadata", {}).pop(key, None)
    return manifest
