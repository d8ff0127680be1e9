"""
This defines the base class for all ReleaseManager types along with the
factory used to construct one per reconciled resource.
"""

# Standard
from dataclasses import dataclass
from typing import List, Optional, Type
import abc
import copy
import threading

# First Party
import alog

# Local
from ..deploy_manager import DeployManagerBase
from ..deploy_manager.owner_references import add_owner_reference
from ..exceptions import ReleaseCancelledError, ReleaseError, assert_cluster
from ..managed_object import ManagedResource, ResourceScope
from ..utils import merge_configs
from .manifest import decode_manifest

log = alog.use_channel("RLSMG")


@dataclass
class Release:
    """A rendered and applied chart for a single resource"""

    name: str
    namespace: Optional[str]
    manifest: str
    version: int = 1
    info: str = ""


class ReleaseManagerBase(abc.ABC):
    """
    Base class for release managers. A release manager is bound to a single
    resource. sync() must be called before any of the state queries.

    Every long running operation checks the cancel_event and raises
    ReleaseCancelledError once it is set.
    """

    def __init__(
        self,
        resource: ManagedResource,
        chart: str,
        deploy_manager: DeployManagerBase,
        override_values: Optional[dict] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            resource:  ManagedResource
                The resource the release is rendered for
            chart:  str
                Reference to the chart to render
            deploy_manager:  DeployManagerBase
                Used to re-apply the deployed manifest when repairing drift
            override_values:  Optional[dict]
                Values that take precedence over the resource's spec
            cancel_event:  Optional[threading.Event]
                Cancellation signal for the current reconcile
        """
        self.resource = resource
        self.chart = chart
        self.deploy_manager = deploy_manager
        self.release_name = resource.name
        self.namespace = resource.namespace
        self.values = merge_configs(
            copy.deepcopy(resource.spec), copy.deepcopy(override_values or {})
        )
        self.cancel_event = cancel_event or threading.Event()

        self._synced = False
        self._deployed_release: Optional[Release] = None
        self._candidate_manifest: Optional[str] = None

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def _get_deployed_release(self) -> Optional[Release]:
        """Get the currently deployed release or None if there is none"""

    @abc.abstractmethod
    def _render(self) -> str:
        """Render the chart with the current values into a manifest"""

    @abc.abstractmethod
    def _install(self) -> Release:
        """Install the release for the first time"""

    @abc.abstractmethod
    def _upgrade(self) -> Release:
        """Upgrade the deployed release to the current values"""

    @abc.abstractmethod
    def _uninstall(self) -> Release:
        """Uninstall the release, raising ReleaseNotFoundError if absent"""

    ## Public ##################################################################

    def sync(self):
        """Load the deployed release and render the candidate manifest"""
        self.check_cancelled()
        self._deployed_release = self._get_deployed_release()
        self._candidate_manifest = None
        if self._deployed_release is not None:
            self._candidate_manifest = self._render()
        self._synced = True
        log.debug2(
            "Synced release %s/%s: installed=%s",
            self.namespace,
            self.release_name,
            self._deployed_release is not None,
        )

    @property
    def deployed_release(self) -> Optional[Release]:
        self._assert_synced()
        return self._deployed_release

    @property
    def is_installed(self) -> bool:
        self._assert_synced()
        return self._deployed_release is not None

    @property
    def is_upgrade_required(self) -> bool:
        self._assert_synced()
        if self._deployed_release is None:
            return False
        return self._deployed_release.manifest != self._candidate_manifest

    @alog.logged_function(log.debug)
    def install_release(self) -> Release:
        self.check_cancelled()
        release = self._install()
        self._deployed_release = release
        return release

    @alog.logged_function(log.debug)
    def upgrade_release(self) -> Release:
        self.check_cancelled()
        release = self._upgrade()
        self._deployed_release = release
        return release

    @alog.logged_function(log.debug)
    def reconcile_release(self) -> bool:
        """Re-apply every object of the deployed release so that out-of-band
        changes to dependent resources are reverted

        Returns:
            changed:  bool
                True if any object had to be changed
        """
        self._assert_synced()
        if self._deployed_release is None:
            raise ReleaseError(f"No deployed release for {self.release_name}")

        objects = self.release_objects(self._deployed_release)
        self.check_cancelled()
        success, changed = self.deploy_manager.deploy(objects)
        assert_cluster(success, f"Failed to re-apply release {self.release_name}")
        return changed

    @alog.logged_function(log.debug)
    def uninstall_release(self) -> Release:
        self.check_cancelled()
        release = self._uninstall()
        self._deployed_release = None
        return release

    def release_objects(self, release: Release) -> List[dict]:
        """Decode the objects of a release, defaulting their namespace and
        attaching an owner reference to the resource
        """
        owner_scope = self.deploy_manager.get_resource_scope(
            self.resource.kind, self.resource.api_version
        )
        owner_namespaced = owner_scope != ResourceScope.CLUSTER
        objects = decode_manifest(release.manifest)
        for obj in objects:
            metadata = obj.setdefault("metadata", {})
            scope = self.deploy_manager.get_resource_scope(
                obj["kind"], obj["apiVersion"]
            )
            if scope != ResourceScope.CLUSTER and self.namespace:
                metadata.setdefault("namespace", self.namespace)
            add_owner_reference(
                self.resource.definition, obj, owner_namespaced=owner_namespaced
            )
        return objects

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise ReleaseCancelledError(
                f"Release operation for {self.release_name} was cancelled"
            )

    ## Implementation ##########################################################

    def _assert_synced(self):
        assert self._synced, "Programming Error: sync() must be called first"


class ReleaseManagerFactory:
    """Factory that builds a ReleaseManager for each reconciled resource"""

    def __init__(
        self,
        manager_class: Type[ReleaseManagerBase],
        chart: str,
        deploy_manager: DeployManagerBase,
        override_values: Optional[dict] = None,
        **manager_kwargs,
    ):
        self.manager_class = manager_class
        self.chart = chart
        self.deploy_manager = deploy_manager
        self.override_values = override_values or {}
        self.manager_kwargs = manager_kwargs

    def new_manager(
        self,
        resource: ManagedResource,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReleaseManagerBase:
        return self.manager_class(
            resource=resource,
            chart=self.chart,
            deploy_manager=self.deploy_manager,
            override_values=self.override_values,
            cancel_event=cancel_event,
            **self.manager_kwargs,
        )
