"""The WatchThread Class is responsible for monitoring the cluster for
resource events
"""
# Standard
from threading import Lock
from typing import Dict, List, Optional, Set
import dataclasses
import os

# First Party
import alog

# Local
from ... import config
from ...deploy_manager import DeployManagerBase, KubeEventType, KubeWatchEvent
from ...managed_object import ManagedObject, ManagedResource
from ...utils import parse_time_delta
from ..filters import FilterManager
from ..types import (
    ReconcileRequest,
    ReconcileRequestType,
    ResourceId,
    WatchedResource,
    WatchRequest,
)
from .base import ThreadBase

log = alog.use_channel("WTCHTHRD")

# Forward declaration of ReconcileThread
RECONCILE_THREAD_TYPE = "ReconcileThread"


class WatchThread(ThreadBase):  # pylint: disable=too-many-instance-attributes
    """The WatchThread monitors the cluster for changes to a specific GroupVersionKind either
    cluster-wide or for a particular namespace. When it detects a change it checks the event
    against the registered Filters and submits a ReconcileRequest if it passes. Every resource
    that has at least one watch request gets a corresponding WatchedResource object whose main
    job is to store the current Filter status
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        reconcile_thread: RECONCILE_THREAD_TYPE,
        kind: str,
        api_version: str,
        namespace: Optional[str] = None,
        deploy_manager: DeployManagerBase = None,
    ):
        """Initialize a WatchThread by assigning instance variables and creating maps

        Args:
            reconcile_thread: ReconcileThread
                The reconcile thread to submit requests to
            kind: str
                The kind to watch
            api_version: str
                The api_version to watch
            namespace: Optional[str] = None
                The namespace to watch. If none then cluster-wide
            deploy_manager: DeployManagerBase = None
                The deploy_manager to watch events
        """
        self.reconcile_thread = reconcile_thread
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace

        name = f"watch_thread_{self.api_version}_{self.kind}"
        if self.namespace:
            name = name + f"_{self.namespace}"
        super().__init__(name=name, daemon=True, deploy_manager=deploy_manager)

        # watched_resources tracks the filter state of each resource seen in
        # the cluster while watch_requests holds every requester of this kind
        # keyed by the requester's global id
        self.watched_resources: Dict[str, WatchedResource] = {}
        self.watch_requests: Dict[str, Set[WatchRequest]] = {}

        # Lock for adding/gathering watch requests
        self.watch_request_lock = Lock()

        # Variables for tracking retries
        self.attempts_left = config.watch_retry_count
        self.retry_delay = parse_time_delta(config.watch_retry_delay or "")

    def run(self):
        """The WatchThread's control loop continuously watches the DeployManager for any new
        events. For every event it gathers all the WatchRequests whose `watched` value
        applies, tests the event against each request's filters and submits a
        ReconcileRequest for each request that passes
        """
        while not self.should_stop():
            try:
                for event in self.deploy_manager.watch_objects(
                    self.kind,
                    self.api_version,
                    namespace=self.namespace,
                    stop_event=self.shutdown,
                ):
                    if self.should_stop():
                        log.debug("Watch thread stopped. Shutting down")
                        return
                    self._handle_event(event)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log.info(
                    "Exception raised when attempting to watch %s",
                    repr(exc),
                    exc_info=exc,
                )
                if self.attempts_left <= 0:
                    log.error(
                        "Unable to start watch within %d attempts",
                        config.watch_retry_count,
                    )
                    os._exit(1)

                retry_seconds = self.retry_delay.total_seconds() if self.retry_delay else 0
                if not self.wait_on_precondition(retry_seconds):
                    log.debug("Watch thread stopped during retry. Shutting down")
                    return
                self.attempts_left = self.attempts_left - 1
                log.info("Restarting watch with %d attempts left", self.attempts_left)

    ## Public Interface ########################################################

    def request_watch(self, watch_request: WatchRequest):
        """Add a watch request if it doesn't exist

        Args:
            watch_request: WatchRequest
                The watch_request to add
        """
        requester_id = watch_request.requester
        with self.watch_request_lock:
            if watch_request in self.watch_requests.get(requester_id.global_id, set()):
                log.debug3("Request already added")
                return

            # Use the global id since the thread itself is already namespaced
            log.debug3("Adding watch request with key %s", requester_id.global_id)
            self.watch_requests.setdefault(requester_id.global_id, set()).add(
                watch_request
            )

    ## Event Handling ##########################################################

    def _handle_event(self, event: KubeWatchEvent):
        resource = event.resource

        watch_requests = self._gather_resource_requests(resource)
        if not watch_requests:
            log.debug2("Skipping resource without requested watch")
            self._clean_event(event)
            return

        if resource.uid not in self.watched_resources:
            self._create_watched_resource(resource, watch_requests)

        watch_requests = self._check_filters(watch_requests, resource, event.type)
        if not watch_requests:
            log.debug2("Skipping event %s as all requests failed filters", event)
            self._clean_event(event)
            return

        for watch_request in watch_requests:
            log.debug(
                "Requesting reconcile for %s",
                resource,
                extra={"resource": watch_request.requester.get_resource()},
            )
            self._request_reconcile(event, watch_request)

        self._clean_event(event)

    def _gather_resource_requests(self, resource: ManagedObject) -> List[WatchRequest]:
        """Gather the list of requests that apply to this specific Kube event based on
        the ownerRefs and the resource itself.

        Args:
            resource: ManagedObject
                The resource for this event

        Returns:
            request_list: List[WatchRequest]
                The list of watch requests that apply
        """
        request_list = []
        resource_id = ResourceId.from_resource(resource)

        with self.watch_request_lock:
            # The resource is itself a chart-backed kind
            for request in self.watch_requests.get(resource_id.global_id, []):
                if request.is_dependent:
                    continue
                request_list.append(
                    dataclasses.replace(
                        request,
                        requester=dataclasses.replace(
                            request.requester,
                            name=resource_id.name,
                            namespace=resource_id.namespace,
                        ),
                    )
                )

            # The resource was rendered into a release owned by a watched kind
            for owner_ref in resource.metadata.get("ownerReferences", []):
                owner_id = ResourceId.from_owner_ref(owner_ref)
                for request in self.watch_requests.get(owner_id.global_id, []):
                    if not request.is_dependent:
                        continue
                    owner_namespace = (
                        resource_id.namespace if request.owner_namespaced else None
                    )
                    log.debug3(
                        "Gathering request for owner %s from %s", owner_ref, resource
                    )
                    request_list.append(
                        dataclasses.replace(
                            request,
                            requester=dataclasses.replace(
                                request.requester,
                                name=owner_ref.get("name"),
                                namespace=owner_namespace,
                            ),
                        )
                    )

        return request_list

    def _request_reconcile(self, event: KubeWatchEvent, request: WatchRequest):
        """Request a reconcile for a kube event

        Args:
            event: KubeWatchEvent
                The KubeWatchEvent that triggered the reconcile
            request: WatchRequest
                The object that's requested a reconcile
        """
        resource = event.resource
        event_type = event.type
        requester_id = request.requester

        # Dependent events are mapped onto the owning resource
        if request.is_dependent:
            log.debug(
                "Owner reference handler event %s for %s/%s/%s owned by %s",
                event.type.value,
                resource.kind,
                resource.namespace,
                resource.name,
                requester_id.get_named_id(),
            )
            success, obj = self.deploy_manager.get_object_current_state(
                kind=requester_id.kind,
                name=requester_id.name,
                namespace=requester_id.namespace,
                api_version=requester_id.api_version,
            )
            if not success or not obj:
                log.warning(
                    "Unable to fetch owner resource %s", requester_id.get_named_id()
                )
                return

            resource = ManagedResource(obj)
            event_type = ReconcileRequestType.DEPENDENT
        else:
            resource = ManagedResource(resource.definition)

        self.reconcile_thread.push_request(
            ReconcileRequest(request.reconciler, event_type, resource)
        )

    ## Watched Resource Functions ##############################################

    def _create_watched_resource(
        self,
        resource: ManagedObject,
        watch_requests: List[WatchRequest],
    ):
        """Create a WatchedResource and initialize its filters"""
        if resource.uid in self.watched_resources:
            return

        filter_dict = {}
        for request in watch_requests:
            filter_dict[request.requester.get_named_id()] = FilterManager(
                request.filters, resource
            )

        self.watched_resources[resource.uid] = WatchedResource(
            gvk=ResourceId.from_resource(resource), filters=filter_dict
        )

    def _clean_event(self, event: KubeWatchEvent):
        """Drop the tracked state of deleted resources"""
        if event.type == KubeEventType.DELETED:
            self.watched_resources.pop(event.resource.uid, None)

    ## Filter Functions ########################################################

    def _check_filters(
        self,
        watch_requests: List[WatchRequest],
        resource: ManagedObject,
        event: KubeEventType,
    ) -> List[WatchRequest]:
        """Check a resource and event against each request's filters

        Args:
            watch_requests: List[WatchRequest]
                List of watch requests whose filters should be checked
            resource: ManagedObject
                The resource being filtered
            event: KubeEventType
                The event type being filtered

        Returns:
            successful_requests: List[WatchRequest]
                The list of requests that passed the filter
        """
        if resource.uid not in self.watched_resources:
            return []

        watched_resource = self.watched_resources[resource.uid]
        output_requests = []
        for request in watch_requests:
            requester_id = request.requester.get_named_id()

            # First time this watched resource has seen the request
            if requester_id not in watched_resource.filters:
                watched_resource.filters[requester_id] = FilterManager(
                    request.filters, resource
                )

            if not watched_resource.filters[requester_id].update_and_test(
                resource, event
            ):
                continue

            output_requests.append(request)

        return output_requests


class WatchThreadRegistry:
    """Tracks every WatchThread of a process so that requests for the same
    kind and namespace share one watch stream
    """

    def __init__(self):
        self.watch_threads: Dict[str, WatchThread] = {}
        self._lock = Lock()
        self._started = False

    def create_resource_watch(
        self,
        watch_request: WatchRequest,
        reconcile_thread: RECONCILE_THREAD_TYPE,
        deploy_manager: DeployManagerBase,
    ) -> WatchThread:
        """Create or request a watch for a resource. This function will either append the
        request to an existing thread or create a new one. New threads are started right
        away if the registry has already been started.

        Args:
            watch_request: WatchRequest
                The watch request to submit
            reconcile_thread: ReconcileThread
                The ReconcileThread to submit ReconcileRequests to
            deploy_manager: DeployManagerBase
                The DeployManager to use with the Thread

        Returns:
            watch_thread: WatchThread
                The watch_thread that is watching the request
        """
        watched_id = watch_request.watched
        start_new_thread = False
        with self._lock:
            watch_thread = None

            # Check for a global watch before a namespaced one
            if watched_id.global_id in self.watch_threads:
                log.debug2("Found existing global watch thread for %s", watch_request)
                watch_thread = self.watch_threads[watched_id.global_id]
            elif watched_id.namespace and watched_id.namespaced_id in self.watch_threads:
                log.debug2("Found existing namespaced watch thread for %s", watch_request)
                watch_thread = self.watch_threads[watched_id.namespaced_id]

            if not watch_thread:
                log.debug2("Creating new WatchThread for %s", watch_request)
                watch_thread = WatchThread(
                    reconcile_thread,
                    watched_id.kind,
                    watched_id.api_version,
                    watched_id.namespace,
                    deploy_manager,
                )
                self.watch_threads[watched_id.get_id()] = watch_thread
                start_new_thread = self._started

        # The request is added before the thread starts so that no initial
        # events are dropped
        watch_thread.request_watch(watch_request)
        if start_new_thread:
            watch_thread.start_thread()
        return watch_thread

    def start_all(self):
        with self._lock:
            self._started = True
            threads = list(self.watch_threads.values())
        for thread in threads:
            thread.start_thread()

    def stop_all(self):
        with self._lock:
            self._started = False
            threads = list(self.watch_threads.values())
        for thread in threads:
            thread.stop_thread()

    def get_resource_watches(self) -> List[WatchThread]:
        with self._lock:
            return list(self.watch_threads.values())
