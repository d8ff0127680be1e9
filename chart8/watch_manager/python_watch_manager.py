"""
Python-based implementation of the WatchManager
"""

# Standard
from typing import List, Optional
import threading

# First Party
import alog

# Local
from .. import config
from ..deploy_manager import DeployManagerBase, OpenshiftDeployManager
from ..managed_object import GroupVersionKind, ResourceScope
from .base import RECONCILER_TYPE, WatchManagerBase
from .dependent_watches import DependentWatchRegistry
from .filters import DEPENDENT_FILTERS, PRIMARY_FILTERS
from .threads import ReconcileThread, WatchThread, WatchThreadRegistry
from .types import ResourceId, WatchRequest

log = alog.use_channel("PYTHW")


class PythonWatchManager(WatchManagerBase):
    """The PythonWatchManager uses the deploy manager's watch stream to watch
    a chart-backed kind and execute reconciles. It does the following:

    1. Request a watch of the kind for each namespace
    2. Start the reconcile thread that runs the reconciles
    3. Optionally attach a DependentWatchRegistry to the reconciler so that
       kinds rendered into releases are watched as they appear
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        reconciler: RECONCILER_TYPE,
        deploy_manager: Optional[DeployManagerBase] = None,
        namespace_list: Optional[List[str]] = None,
        watch_dependent_resources: Optional[bool] = None,
        reconcile_thread: Optional[ReconcileThread] = None,
        watch_registry: Optional[WatchThreadRegistry] = None,
    ):
        """Initialize the required threads and submit the watch requests

        Args:
            reconciler: ReleaseReconciler
                The reconciler for the watched kind
            deploy_manager: Optional[DeployManagerBase] = None
                An optional DeployManager override
            namespace_list: Optional[List[str]] = []
                A list of namespaces to watch
            watch_dependent_resources: Optional[bool] = None
                Whether to watch kinds rendered into releases. Defaults to the
                config value.
            reconcile_thread: Optional[ReconcileThread] = None
                A reconcile thread shared between watch managers
            watch_registry: Optional[WatchThreadRegistry] = None
                A registry of watch threads shared between watch managers
        """
        super().__init__(reconciler)

        if deploy_manager is None:
            log.debug("Using OpenshiftDeployManager")
            deploy_manager = OpenshiftDeployManager()
        self.deploy_manager = deploy_manager

        # Setup watch namespace
        self.namespace_list = namespace_list or []
        if not namespace_list and config.watch_namespace != "":
            self.namespace_list = config.watch_namespace.split(",")
        if "*" in self.namespace_list:
            self.namespace_list = []

        self.shutdown = threading.Event()
        self.reconcile_thread = reconcile_thread or ReconcileThread(
            deploy_manager=self.deploy_manager
        )
        self.watch_registry = watch_registry or WatchThreadRegistry()

        if watch_dependent_resources is None:
            watch_dependent_resources = config.watch_dependent_resources
        if watch_dependent_resources:
            reconciler.dependent_watches = DependentWatchRegistry(
                owner_gvk=reconciler.gvk,
                scope_resolver=self.deploy_manager.get_resource_scope,
                subscribe=self.watch_dependent,
            )

        self.resource_watches: List[WatchThread] = []
        for namespace in self.namespace_list or [None]:
            self.resource_watches.append(self._add_resource_watch(namespace))

    ## Interface ###############################################################

    def watch(self) -> bool:
        """Start all threads

        Returns:
            success:  bool
                True if all threads are running correctly
        """
        log.info("Starting PythonWatchManager: %s", self)
        if self.shutdown.is_set():
            return False

        self.reconcile_thread.start_thread()
        self.watch_registry.start_all()
        return True

    def wait(self):
        """Wait shutdown to be signaled"""
        self.shutdown.wait()

    def stop(self):
        """Stop all threads. This waits for all reconciles to finish"""
        log.info(
            "Stopping PythonWatchManager for %s/%s/%s",
            self.group,
            self.version,
            self.kind,
        )
        self.shutdown.set()
        self.watch_registry.stop_all()
        if self.reconcile_thread.is_alive():
            self.reconcile_thread.stop_thread()

    def watch_dependent(self, gvk: GroupVersionKind, owner_scope: ResourceScope):
        """Start watching a kind rendered into releases of the watched kind.
        Events are mapped back to the owning resource through owner
        references.

        Args:
            gvk: GroupVersionKind
                The dependent kind
            owner_scope: ResourceScope
                The scope of the watched kind
        """
        owner_namespaced = owner_scope != ResourceScope.CLUSTER
        namespaces = self.namespace_list if owner_namespaced else []
        for namespace in namespaces or [None]:
            log.debug2("Adding dependent watch of %s in %s", gvk, namespace)
            request = WatchRequest(
                watched=ResourceId.from_gvk(gvk, namespace),
                requester=ResourceId.from_gvk(self.reconciler.gvk, namespace),
                reconciler=self.reconciler,
                filters=DEPENDENT_FILTERS,
                owner_namespaced=owner_namespaced,
            )
            self.watch_registry.create_resource_watch(
                request, self.reconcile_thread, self.deploy_manager
            )

    ## Helper Functions ########################################################

    def _add_resource_watch(self, namespace: Optional[str] = None) -> WatchThread:
        """Request a watch of the reconciled kind. Optionally for a specific
        namespace
        """
        log.debug3("Adding %s request for %s", namespace if namespace else "", self)

        # The reconciled kind is both the watched and the requesting object
        resource_id = ResourceId.from_gvk(self.reconciler.gvk, namespace)
        request = WatchRequest(
            watched=resource_id,
            requester=resource_id,
            reconciler=self.reconciler,
            filters=PRIMARY_FILTERS,
        )
        return self.watch_registry.create_resource_watch(
            request, self.reconcile_thread, self.deploy_manager
        )
