"""
This DeployManager is responsible for delegating cluster operations to the
openshift library. It is the one that will be used when the operator is running
in the cluster or outside the cluster making live changes.
"""
# Standard
from collections import namedtuple
from threading import Event
from typing import Callable, Iterator, List, Optional, Tuple
import copy
import threading
import time

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.apply import LAST_APPLIED_CONFIG_ANNOTATION, recursive_diff
from openshift.dynamic.exceptions import (
    ConflictError,
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
from ..exceptions import assert_cluster
from ..managed_object import ResourceScope
from .base import DeployManagerBase, merge_finalizer_changes
from .kube_event import KubeWatchEvent

log = alog.use_channel("OSFTD")

## Deploy Manager ##############################################################


# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30


class OpenshiftDeployManager(DeployManagerBase):
    """This DeployManager uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self):
        log.debug("Initializing openshift client")
        self._client = None

        # Keep a threading lock for performing status updates. This is necessary
        # to avoid running into 409 Conflict errors if concurrent threads are
        # trying to perform status updates
        self._status_lock = threading.Lock()

    @property
    def client(self):
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    @alog.logged_function(log.debug)
    def deploy(self, resource_definitions: List[dict], **_) -> Tuple[bool, bool]:
        """Deploy using server side apply through the openshift client

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to apply to the cluster

        Returns:
            success:  bool
                True if deploy succeeded, False otherwise
            changed:  bool
                Whether or not the deployment resulted in changes
        """
        return self._retried_operation(resource_definitions, self._apply)

    @alog.logged_function(log.debug)
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """Delete each of the given resources if present

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to delete from the cluster

        Returns:
            success:  bool
                True if delete succeeded, False otherwise
            changed:  bool
                Whether or not the delete resulted in changes
        """
        return self._retried_operation(resource_definitions, self._disable)

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """The get_object_current_state function fetches the current state
        using calls directly to the api client

        Args:
            kind:  str
                The kind of the object ot fetch
            name:  str
                The full name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object or None for no namespace
            api_version:  Optional[str]
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, None

        try:
            resource = resources.get(name=name, namespace=namespace)
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

        return True, resource.to_dict()

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        stop_event: Optional[Event] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Stream events for the given kind. The stream is restarted on socket
        timeouts and when the resource version expires, and ends once the
        stop_event is set.
        """
        watch_manager = Watch()
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )

        while not (stop_event and stop_event.is_set()):
            try:
                for event_obj in watch_manager.stream(
                    resource_handle.get,
                    resource_version=resource_version,
                    namespace=namespace,
                    serialize=False,
                    timeout_seconds=SERVER_WATCH_TIMEOUT,
                    _request_timeout=CLIENT_WATCH_TIMEOUT,
                ):
                    event = KubeWatchEvent.from_raw(event_obj)
                    if event is not None:
                        yield event
                    if stop_event and stop_event.is_set():
                        watch_manager.stop()
                        break
                resource_version = watch_manager.resource_version
            except client.exceptions.ApiException as exception:
                if exception.status == 410:
                    log.debug2(
                        "Resource age expired, restarting watch %s/%s", kind, api_version
                    )
                    resource_version = None
                else:
                    log.info("Unknown ApiException received, re-raising")
                    raise
            except urllib3.exceptions.ReadTimeoutError:
                log.debug4("Watch Socket closed, restarting watch %s/%s", kind, api_version)
            except urllib3.exceptions.ProtocolError:
                log.debug2(
                    "Invalid Chunk from server, restarting watch %s/%s", kind, api_version
                )

        log.debug("Stopping deploy manager watch for %s/%s", kind, api_version)

    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Set the status in the cluster manifest for an object managed by this
        operator

        Args:
            kind:  str
                The kind of the object ot fetch
            name:  str
                The full name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object.
            status:  dict
                The status object to set onto the given object
            api_version:  Optional[str]
                The api_version of the resource to update

        Returns:
            success:  bool
                Whether or not the status update operation succeeded
            changed:  bool
                Whether or not the status update resulted in a change
        """
        return self._retried_operation(
            [self._identity_manifest(kind, name, namespace, api_version)],
            self._set_status,
            status=status,
        )

    def set_finalizers(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        finalizers: List[str],
        api_version: Optional[str] = None,
        previous_finalizers: Optional[List[str]] = None,
    ) -> Tuple[bool, bool]:
        """Update the finalizer list of an object with a merge patch"""
        return self._retried_operation(
            [self._identity_manifest(kind, name, namespace, api_version)],
            self._set_finalizers,
            finalizers=finalizers,
            previous_finalizers=previous_finalizers,
        )

    def get_resource_scope(
        self, kind: str, api_version: str
    ) -> Optional[ResourceScope]:
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return None
        if resources.namespaced:
            return ResourceScope.NAMESPACED
        return ResourceScope.CLUSTER

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    @staticmethod
    def _identity_manifest(kind, name, namespace, api_version) -> dict:
        return {
            "kind": kind,
            "apiVersion": api_version,
            "metadata": {"name": name, "namespace": namespace},
        }

    @staticmethod
    def _strip_last_applied(resource_definitions):
        """Make sure that the last-applied annotation is not present in any of
        the resources. This can lead to recursive nesting!
        """
        for resource_definition in resource_definitions:
            annotations = resource_definition.get("metadata", {}).get("annotations", {})
            if LAST_APPLIED_CONFIG_ANNOTATION in annotations:
                log.debug3("Removing [%s]", LAST_APPLIED_CONFIG_ANNOTATION)
                del annotations[LAST_APPLIED_CONFIG_ANNOTATION]
                if not annotations:
                    del resource_definition["metadata"]["annotations"]

    def _get_resource_handle(self, kind: str, api_version: str) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        resources = None
        try:
            resources = self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            try:
                resources = self.client.resources.get(
                    short_names=[kind], api_version=api_version
                )
            except (ResourceNotFoundError, ResourceNotUniqueError):
                log.debug(
                    "No objects of kind [%s] found or multiple objects matching request found",
                    kind,
                )
        return resources

    def _retried_operation(self, resource_definitions, operation, **kwargs):
        """Shared wrapper for executing a client operation with retries"""
        assert isinstance(
            resource_definitions, list
        ), "Programming Error: resource_definitions is not a list"
        if not resource_definitions:
            log.debug("Nothing to do for an empty list of resources")
            return True, False

        self._strip_last_applied(resource_definitions)

        changed = False
        for resource_definition in resource_definitions:
            try:
                changed = (
                    self._run_individual_operation_with_retries(
                        operation,
                        config.deploy_retries,
                        resource_definition=resource_definition,
                        **kwargs,
                    )
                    or changed
                )
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Operation [%s] failed to execute: %s",
                    operation.__name__,
                    err,
                    exc_info=True,
                )
                return False, changed

        return True, changed

    def _run_individual_operation_with_retries(
        self,
        operation: Callable,
        remaining_retries: int,
        resource_definition: dict,
        **kwargs,
    ):
        """Helper to execute a single operation, retrying on conflicts with an
        increasing backoff

        Returns:
            changed:  bool
                Whether or not the operation resulted in meaningful change
        """
        try:
            return operation(resource_definition=resource_definition, **kwargs)
        except ConflictError as err:
            log.debug2("Handling ConflictError: %s", err)
            if not remaining_retries:
                raise

            backoff_duration = config.retry_backoff_base_seconds * (
                config.deploy_retries - remaining_retries + 1
            )
            log.debug3("Retrying in %fs", backoff_duration)
            time.sleep(backoff_duration)
            return self._run_individual_operation_with_retries(
                operation, remaining_retries - 1, resource_definition, **kwargs
            )

    _ResourceIdentifiers = namedtuple(
        "ResourceIdentifiers", ["api_version", "kind", "name", "namespace"]
    )

    @classmethod
    def _get_resource_identifiers(cls, resource_definition):
        """Helper for getting the required parts of a single resource definition"""
        api_version = resource_definition.get("apiVersion")
        kind = resource_definition.get("kind")
        name = resource_definition.get("metadata", {}).get("name")
        namespace = resource_definition.get("metadata", {}).get("namespace")
        assert None not in [kind, name], "Cannot apply resource without kind or name"
        assert api_version is not None, "Cannot apply resource without apiVersion"
        return cls._ResourceIdentifiers(api_version, kind, name, namespace)

    @staticmethod
    def _manifest_diff(manifest_a: dict, manifest_b: dict) -> bool:
        """Compare two manifests while ignoring fields that change on every
        write
        """
        manifest_a = copy.deepcopy(manifest_a)
        manifest_b = copy.deepcopy(manifest_b)
        for metadata_field in [
            "resourceVersion",
            "generation",
            "managedFields",
            "uid",
            "creationTimestamp",
        ]:
            manifest_a.get("metadata", {}).pop(metadata_field, None)
            manifest_b.get("metadata", {}).pop(metadata_field, None)
        manifest_a.pop("status", None)
        manifest_b.pop("status", None)
        change = bool(recursive_diff(manifest_a, manifest_b))
        log.debug2("Found change? %s", change)
        return change

    def _resource_handle_for(self, res_id) -> Resource:
        resource_handle = self._get_resource_handle(res_id.kind, res_id.api_version)
        assert_cluster(
            resource_handle,
            "Failed to fetch resource handle for "
            + f"{res_id.namespace}/{res_id.api_version}/{res_id.kind}",
        )
        return resource_handle

    def _apply(self, resource_definition: dict) -> bool:
        """Apply a single resource to the cluster with server side apply

        Returns:
            changed:  bool
                Whether or not the apply resulted in a meaningful change
        """
        res_id = self._get_resource_identifiers(resource_definition)
        success, current = self.get_object_current_state(
            kind=res_id.kind,
            name=res_id.name,
            namespace=res_id.namespace,
            api_version=res_id.api_version,
        )
        assert_cluster(
            success,
            "Failed to fetch current state for "
            + f"{res_id.namespace}/{res_id.api_version}/{res_id.kind}/{res_id.name}",
        )
        current = current or {}
        if not self._manifest_diff(current, resource_definition):
            return False

        resource_definition["metadata"]["managedFields"] = None
        resource_handle = self._resource_handle_for(res_id)
        log.debug2(
            "Attempting to apply [%s/%s/%s] in %s",
            res_id.api_version,
            res_id.kind,
            res_id.name,
            res_id.namespace,
        )
        try:
            apply_res = resource_handle.server_side_apply(
                resource_definition,
                name=res_id.name,
                namespace=res_id.namespace,
                field_manager=config.field_manager,
            ).to_dict()
        except ConflictError:
            log.debug(
                "Overriding field manager conflict for [%s/%s/%s] in %s ",
                res_id.api_version,
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            apply_res = resource_handle.server_side_apply(
                resource_definition,
                name=res_id.name,
                namespace=res_id.namespace,
                field_manager=config.field_manager,
                force_conflicts=True,
            ).to_dict()

        return self._manifest_diff(current, apply_res)

    def _disable(self, resource_definition: dict) -> bool:
        """Delete a single resource from the cluster if it exists"""
        res_id = self._get_resource_identifiers(resource_definition)
        try:
            resource_handle = self.client.resources.get(
                api_version=res_id.api_version, kind=res_id.kind
            )
            log.debug2(
                "Attempting to delete [%s/%s/%s] from %s",
                res_id.api_version,
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            resource_handle.delete(name=res_id.name, namespace=res_id.namespace)
            return True
        except (ResourceNotFoundError, NotFoundError) as err:
            log.debug2(
                "Valid error caught when disabling [%s/%s]: %s",
                res_id.kind,
                res_id.name,
                err,
            )
        return False

    def _set_status(self, resource_definition: dict, status: dict) -> bool:
        """Replace the status sub-resource of a single object"""
        res_id = self._get_resource_identifiers(resource_definition)
        resource_handle = self._resource_handle_for(res_id)

        with self._status_lock:
            resource = resource_handle.get(
                name=res_id.name, namespace=res_id.namespace
            ).to_dict()
            log.debug2(
                "Resource version: %s",
                resource.get("metadata", {}).get("resourceVersion"),
            )
            if resource.get("status") == status:
                log.debug("Status has not changed. No update")
                return False

            resource["status"] = status
            resource_handle.status.replace(body=resource)
            log.debug2(
                "Successfully set the status for [%s/%s] in %s",
                res_id.kind,
                res_id.name,
                res_id.namespace,
            )
            return True

    def _set_finalizers(
        self,
        resource_definition: dict,
        finalizers: List[str],
        previous_finalizers: Optional[List[str]] = None,
    ) -> bool:
        """Update the finalizer list of a single object"""
        res_id = self._get_resource_identifiers(resource_definition)
        resource_handle = self._resource_handle_for(res_id)
        try:
            current = resource_handle.get(
                name=res_id.name, namespace=res_id.namespace
            ).to_dict()
        except NotFoundError:
            log.debug2("Object [%s/%s] already removed", res_id.kind, res_id.name)
            return False

        current_finalizers = list(current.get("metadata", {}).get("finalizers") or [])
        finalizers = merge_finalizer_changes(
            current_finalizers, finalizers, previous_finalizers
        )
        if current_finalizers == finalizers:
            return False

        # The resourceVersion makes the patch fail with a conflict if the
        # object changed since it was read
        resource_handle.patch(
            body={
                "metadata": {
                    "finalizers": list(finalizers) or None,
                    "resourceVersion": current["metadata"].get("resourceVersion"),
                }
            },
            name=res_id.name,
            namespace=res_id.namespace,
            content_type="application/merge-patch+json",
        )
        log.debug2(
            "Set finalizers %s on [%s/%s] in %s",
            finalizers,
            res_id.kind,
            res_id.name,
            res_id.namespace,
        )
        return True
