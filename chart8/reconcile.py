"""
The ReleaseReconciler drives a single chart-backed kind. Each reconcile loads
the current resource, then either runs the finalizers of a resource that is
being deleted or brings its release up to date, recording the outcome in the
resource's status conditions.
"""

# Standard
from dataclasses import dataclass, field
from typing import List, Optional, Union
import base64
import datetime
import threading
import uuid

# First Party
import alog

# Local
from . import config, constants
from .deploy_manager import DeployManagerBase
from .exceptions import (
    Chart8ExpectedError,
    ReleaseCancelledError,
    ReleaseNotFoundError,
    assert_cluster,
)
from .finalizer import FinalizerManager
from .managed_object import GroupVersionKind, ManagedResource
from .release import Release, ReleaseManagerBase, ReleaseManagerFactory
from .status import (
    ConditionReason,
    ConditionStatus,
    ConditionType,
    ReleaseStatus,
    update_resource_status,
)

log = alog.use_channel("RECONCILE")

# Forward declaration of the dependent watch registry
DEPENDENT_WATCHES_TYPE = "DependentWatchRegistry"


## Data models #################################################################


@dataclass
class RequeueParams:
    """RequeueParams holds parameters for requeue request"""

    requeue_after: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(
            seconds=float(config.requeue_after_seconds)
        )
    )


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of a reconciliation session"""

    # Flag to control requeue of current reconcile request
    requeue: bool
    # Parameters for requeue request
    requeue_params: RequeueParams = field(default_factory=RequeueParams)
    # Flag to identify if the reconciliation raised an exception
    exception: Exception = None
    # Flag set when the resource is gone or on its way out of the cluster
    deleted: bool = False


## ReleaseReconciler ###########################################################


class ReleaseReconciler:
    """This class reconciles the resources of one chart-backed kind. A single
    instance is shared by every reconcile of the kind, so all per-reconcile
    state lives on the stack or in thread local storage. Callers must not run
    two reconciles of the same resource at once.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        gvk: GroupVersionKind,
        release_manager_factory: ReleaseManagerFactory,
        deploy_manager: DeployManagerBase,
        finalizer_manager: Optional[FinalizerManager] = None,
        dependent_watches: Optional[DEPENDENT_WATCHES_TYPE] = None,
        reconcile_period: Optional[datetime.timedelta] = None,
    ):
        """
        Args:
            gvk:  GroupVersionKind
                The chart-backed kind handled by this reconciler
            release_manager_factory:  ReleaseManagerFactory
                Builds the release manager for each reconciled resource
            deploy_manager:  DeployManagerBase
                The cluster access used to read resources and write status and
                finalizers
            finalizer_manager:  Optional[FinalizerManager]
                Registry of teardown actions. The release uninstall finalizer
                is registered on it.
            dependent_watches:  Optional[DependentWatchRegistry]
                Registry that watches the kinds found in deployed releases
            reconcile_period:  Optional[datetime.timedelta]
                Period for re-syncing each resource after a successful
                reconcile
        """
        self.gvk = gvk
        self.release_manager_factory = release_manager_factory
        self.deploy_manager = deploy_manager
        self.finalizer_manager = finalizer_manager or FinalizerManager()
        self.dependent_watches = dependent_watches
        self.reconcile_period = reconcile_period

        # The release manager of the reconcile running on this thread, used by
        # the uninstall finalizer
        self._local = threading.local()

        self.finalizer_manager.register(
            constants.UNINSTALL_FINALIZER, self._uninstall_finalizer
        )

    ## Reconciliation ##########################################################

    @alog.timed_function(log.debug, "Reconcile finished in: ")
    def reconcile(
        self,
        resource: Union[dict, ManagedResource],
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """This is the main entrypoint for reconciliations. The general path is:

            1. Fetch the current state of the resource
            2. If it is being deleted, run its finalizers
            3. Otherwise add the finalizers and install, upgrade, or repair the
               release

        Args:
            resource: Union[dict, ManagedResource]
                The resource to reconcile. Only its identity is used; the
                current state is read from the cluster.
            cancel_event: Optional[threading.Event]
                Cancellation signal handed to the release manager

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        if isinstance(resource, dict):
            resource = ManagedResource(resource)

        success, current = self.deploy_manager.get_object_current_state(
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace,
            api_version=resource.api_version,
        )
        assert_cluster(success, f"Failed to fetch current state of {resource}")
        if not current:
            log.debug("Resource %s no longer exists", resource)
            return ReconciliationResult(requeue=False, deleted=True)

        resource = ManagedResource(current)
        manager = self.release_manager_factory.new_manager(
            resource, cancel_event=cancel_event
        )

        if resource.deletion_timestamp:
            return self._reconcile_deletion(resource, manager)

        status = ReleaseStatus.from_resource(resource)
        try:
            release = self._reconcile_release(resource, manager, status)
        finally:
            update_resource_status(self.deploy_manager, resource, status)

        # Watches are registered for the applied release even if the status
        # write failed
        self._register_dependent_watches(release)
        return ReconciliationResult(requeue=False)

    def safe_reconcile(
        self,
        resource: Union[dict, ManagedResource],
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """
        This function calls out to reconcile but catches any errors thrown. This
        function guarantees a safe result which is needed by the watch manager.
        Errors request a requeue after the configured backoff.

        Args:
            resource: Union[dict, ManagedResource]
                The resource to reconcile
            cancel_event: Optional[threading.Event]
                Cancellation signal handed to the release manager

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        if isinstance(resource, dict):
            resource = ManagedResource(resource)
        reconciliation_id = self.generate_id()
        log_extra = {
            "resource": resource.definition,
            "reconciliationId": reconciliation_id,
        }
        log.info("Reconciling %s", resource, extra=log_extra)

        try:
            result = self.reconcile(resource, cancel_event=cancel_event)
            log.debug("Reconcile of %s finished: %s", resource, result, extra=log_extra)
            return result
        except ReleaseCancelledError as exc:
            log.info("Reconcile of %s cancelled", resource, extra=log_extra)
            error = exc
        except Chart8ExpectedError as exc:
            log.warning(
                "Expected error during reconcile of %s: %s",
                resource,
                exc,
                extra=log_extra,
            )
            error = exc
        except Exception as exc:  # pylint: disable=broad-except
            log.error(
                "Error during reconcile of %s: %s",
                resource,
                exc,
                exc_info=True,
                extra=log_extra,
            )
            error = exc

        log.info("Requeuing CR due to error during reconcile", extra=log_extra)
        return ReconciliationResult(
            requeue=True, requeue_params=RequeueParams(), exception=error
        )

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for this reconciliation

        Returns:
            id: str
                A unique base32 encoded id
        """
        uuid4 = uuid.uuid4()
        base32_str = base64.b32encode(uuid4.bytes).decode("utf-8")
        reconcile_id = base32_str[:22]
        log.debug("Generated reconcile id: %s", reconcile_id)
        return reconcile_id

    ## Reconciliation Stages ###################################################

    def _reconcile_deletion(
        self, resource: ManagedResource, manager: ReleaseManagerBase
    ) -> ReconciliationResult:
        """Run the finalizers of a resource that is marked for deletion and
        write back the names that remain
        """
        if constants.UNINSTALL_FINALIZER not in resource.finalizers:
            log.debug("Resource %s is being deleted without our finalizer", resource)
            return ReconciliationResult(requeue=False, deleted=True)

        log.info("Running finalizers for %s", resource)
        previous_finalizers = resource.finalizers
        self._local.manager = manager
        try:
            changed = self.finalizer_manager.finalize(resource)
        finally:
            self._local.manager = None

        if changed:
            self._persist_finalizers(resource, previous_finalizers)
        return ReconciliationResult(requeue=False, deleted=True)

    def _reconcile_release(
        self,
        resource: ManagedResource,
        manager: ReleaseManagerBase,
        status: ReleaseStatus,
    ) -> Release:
        """Bring the release of a live resource up to date. The status is
        updated in place for every outcome; errors are re-raised after their
        condition is recorded.

        Returns:
            release:  Release
                The deployed release
        """
        status.set_condition(ConditionType.INITIALIZED, ConditionStatus.TRUE)

        previous_finalizers = resource.finalizers
        if self.finalizer_manager.reconcile(resource):
            self._persist_finalizers(resource, previous_finalizers)

        try:
            manager.sync()
        except ReleaseCancelledError:
            raise
        except Exception as err:
            log.warning("Failed to sync release for %s: %s", resource, err)
            status.set_condition(
                ConditionType.IRRECONCILABLE,
                ConditionStatus.TRUE,
                ConditionReason.RECONCILE_ERROR,
                str(err),
            )
            raise
        status.remove_condition(ConditionType.IRRECONCILABLE)

        if not manager.is_installed:
            release = self._apply(
                manager.install_release,
                status,
                ConditionReason.INSTALL_SUCCESSFUL,
                ConditionReason.INSTALL_ERROR,
            )
            log.info("Installed release %s for %s", release.name, resource)
        elif manager.is_upgrade_required:
            release = self._apply(
                manager.upgrade_release,
                status,
                ConditionReason.UPGRADE_SUCCESSFUL,
                ConditionReason.UPGRADE_ERROR,
            )
            log.info("Upgraded release %s for %s", release.name, resource)
        else:
            try:
                changed = manager.reconcile_release()
            except ReleaseCancelledError:
                raise
            except Exception as err:
                log.warning("Failed to reconcile release for %s: %s", resource, err)
                status.set_condition(
                    ConditionType.IRRECONCILABLE,
                    ConditionStatus.TRUE,
                    ConditionReason.RECONCILE_ERROR,
                    str(err),
                )
                raise
            release = manager.deployed_release
            log.debug("Reconciled release %s (changed=%s)", release.name, changed)

        status.set_deployed_release(release.name, release.manifest)
        return release

    @staticmethod
    def _apply(
        operation,
        status: ReleaseStatus,
        success_reason: ConditionReason,
        error_reason: ConditionReason,
    ) -> Release:
        """Run an install or upgrade and record its outcome"""
        try:
            release = operation()
        except ReleaseCancelledError:
            raise
        except Exception as err:
            status.set_condition(
                ConditionType.RELEASE_FAILED,
                ConditionStatus.TRUE,
                error_reason,
                str(err),
            )
            raise
        status.remove_condition(ConditionType.RELEASE_FAILED)
        status.set_condition(
            ConditionType.DEPLOYED,
            ConditionStatus.TRUE,
            success_reason,
            release.info,
        )
        return release

    ## Finalizers ##############################################################

    def _uninstall_finalizer(self, resource: ManagedResource):
        """Uninstall the release of a resource being deleted. A missing release
        counts as already uninstalled and leaves the Deployed condition as is.
        """
        manager = getattr(self._local, "manager", None)
        if manager is None:
            manager = self.release_manager_factory.new_manager(resource)

        status = ReleaseStatus.from_resource(resource)
        release_found = True
        try:
            manager.uninstall_release()
        except ReleaseNotFoundError:
            log.info("Release not found for %s, removing finalizer", resource)
            release_found = False
        except Exception as err:
            log.warning("Failed to uninstall release for %s: %s", resource, err)
            status.set_condition(
                ConditionType.RELEASE_FAILED,
                ConditionStatus.TRUE,
                ConditionReason.UNINSTALL_ERROR,
                str(err),
            )
            update_resource_status(self.deploy_manager, resource, status)
            raise
        else:
            log.info("Uninstalled release for %s", resource)

        status.remove_condition(ConditionType.RELEASE_FAILED)
        if release_found:
            status.set_condition(
                ConditionType.DEPLOYED,
                ConditionStatus.FALSE,
                ConditionReason.UNINSTALL_SUCCESSFUL,
            )
            status.clear_deployed_release()
        update_resource_status(self.deploy_manager, resource, status)

    ## Implementation Details ##################################################

    def _persist_finalizers(
        self, resource: ManagedResource, previous_finalizers: List[str]
    ):
        success, _ = self.deploy_manager.set_finalizers(
            kind=resource.kind,
            name=resource.name,
            namespace=resource.namespace,
            finalizers=resource.finalizers,
            api_version=resource.api_version,
            previous_finalizers=previous_finalizers,
        )
        assert_cluster(success, f"Failed to update finalizers of {resource}")

    def _register_dependent_watches(self, release: Release):
        if self.dependent_watches is None:
            return
        self.dependent_watches.register_release(release.manifest)
