"""Tests for the ReleaseReconciler"""

# Standard
from datetime import timedelta
from unittest import mock
import threading

# Third Party
import pytest

# First Party
import alog

# Local
from chart8 import constants, status
from chart8.deploy_manager import DryRunDeployManager
from chart8.exceptions import ClusterError, ReleaseCancelledError, ReleaseError
from chart8.reconcile import ReconciliationResult, ReleaseReconciler, RequeueParams
from chart8.test_helpers.helpers import (
    TEST_API_VERSION,
    TEST_INSTANCE_NAME,
    TEST_KIND,
    TEST_NAMESPACE,
    MockDeployManager,
    library_config,
    setup_cr,
    setup_reconciler,
)

log = alog.use_channel("TEST")

################################################################################
## Helpers #####################################################################
################################################################################


def get_cr(deploy_manager):
    return deploy_manager.get_obj(
        kind=TEST_KIND,
        name=TEST_INSTANCE_NAME,
        namespace=TEST_NAMESPACE,
        api_version=TEST_API_VERSION,
    )


def get_deployment(deploy_manager):
    return deploy_manager.get_obj(
        kind="Deployment",
        name=f"{TEST_INSTANCE_NAME}-deployment",
        namespace=TEST_NAMESPACE,
        api_version="apps/v1",
    )


def get_cond(obj_or_status, condition_type):
    current_status = obj_or_status.get("status", obj_or_status)
    return status.get_condition(condition_type.value, current_status)


def check_cond(obj_or_status, condition_type, cond_status, reason=None):
    cond = get_cond(obj_or_status, condition_type)
    assert cond, f"Missing condition {condition_type}"
    assert cond["status"] == cond_status.value
    if reason is not None:
        assert cond["reason"] == reason.value


def setup_installed(spec=None, **kwargs):
    """Set up a reconciler and run the first reconcile that installs the
    release
    """
    dm = MockDeployManager(resources=[setup_cr(spec=spec or {"replicas": 2})])
    call_counts = {}
    fail_flags = {}
    reconciler = setup_reconciler(
        deploy_manager=dm,
        call_counts=call_counts,
        fail_flags=fail_flags,
        **kwargs,
    )
    result = reconciler.reconcile(setup_cr())
    assert not result.requeue
    return dm, reconciler, call_counts, fail_flags


def last_status_write(deploy_manager):
    return deploy_manager.set_status.call_args.kwargs["status"]


################################################################################
## Tests #######################################################################
################################################################################

##################
## Construction ##
##################


def test_construct_registers_uninstall_finalizer():
    """Make sure the uninstall finalizer is registered on construction"""
    reconciler = setup_reconciler()
    assert reconciler.finalizer_manager.names == [constants.UNINSTALL_FINALIZER]


def test_generate_id_uniq():
    """Make sure reconcile ids are unique and short"""
    ids = {ReleaseReconciler.generate_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(reconcile_id) == 22 for reconcile_id in ids)


def test_requeue_params_default():
    """Make sure the default requeue delay comes from config"""
    with library_config(requeue_after_seconds=42):
        assert RequeueParams().requeue_after == timedelta(seconds=42)


#############
## Install ##
#############


def test_reconcile_install():
    """Make sure a new resource gets its finalizer, its release, and the
    Deployed condition
    """
    dm, _, call_counts, _ = setup_installed()
    assert call_counts["install_release"] == 1
    assert "upgrade_release" not in call_counts

    cr = get_cr(dm)
    assert cr["metadata"]["finalizers"] == [constants.UNINSTALL_FINALIZER]
    check_cond(cr, status.ConditionType.INITIALIZED, status.ConditionStatus.TRUE)
    check_cond(
        cr,
        status.ConditionType.DEPLOYED,
        status.ConditionStatus.TRUE,
        status.ConditionReason.INSTALL_SUCCESSFUL,
    )
    assert not get_cond(cr, status.ConditionType.RELEASE_FAILED)
    assert not get_cond(cr, status.ConditionType.IRRECONCILABLE)
    assert cr["status"]["deployedRelease"]["name"] == TEST_INSTANCE_NAME
    assert "kind: Deployment" in cr["status"]["deployedRelease"]["manifest"]

    # The rendered objects are owned by the resource
    deployment = get_deployment(dm)
    assert deployment["spec"]["replicas"] == 2
    assert deployment["metadata"]["ownerReferences"][0]["uid"] == cr["metadata"]["uid"]


def test_reconcile_no_change():
    """Make sure a reconcile without changes re-applies the release"""
    dm, reconciler, call_counts, _ = setup_installed()
    reconciler.reconcile(setup_cr())
    assert call_counts["install_release"] == 1
    assert call_counts["reconcile_release"] == 1
    assert "upgrade_release" not in call_counts
    check_cond(get_cr(dm), status.ConditionType.DEPLOYED, status.ConditionStatus.TRUE)


def test_reconcile_repairs_dependent():
    """Make sure an out-of-band change to a dependent is reverted"""
    dm, reconciler, _, _ = setup_installed()
    deployment = get_deployment(dm)
    deployment["spec"]["replicas"] = 7
    dm.deploy([deployment])

    reconciler.reconcile(setup_cr())
    assert get_deployment(dm)["spec"]["replicas"] == 2


def test_reconcile_upgrade():
    """Make sure a spec change upgrades the release"""
    dm, reconciler, call_counts, _ = setup_installed()
    cr = get_cr(dm)
    cr["spec"]["replicas"] = 3
    dm.deploy([cr])

    reconciler.reconcile(setup_cr())
    assert call_counts["upgrade_release"] == 1
    assert get_deployment(dm)["spec"]["replicas"] == 3
    check_cond(
        get_cr(dm),
        status.ConditionType.DEPLOYED,
        status.ConditionStatus.TRUE,
        status.ConditionReason.UPGRADE_SUCCESSFUL,
    )


def test_reconcile_registers_dependent_watches():
    """Make sure the deployed manifest is handed to the dependent watches"""
    dependent_watches = mock.Mock()
    dm, _, _, _ = setup_installed(dependent_watches=dependent_watches)
    dependent_watches.register_release.assert_called_once_with(
        get_cr(dm)["status"]["deployedRelease"]["manifest"]
    )


def test_reconcile_resource_gone():
    """Make sure reconciling a missing resource reports it as deleted"""
    reconciler = setup_reconciler()
    result = reconciler.reconcile(setup_cr())
    assert result == ReconciliationResult(requeue=False, deleted=True)


def test_reconcile_status_write_failure():
    """Make sure a failed status write does not fail the reconcile"""
    dm = MockDeployManager(resources=[setup_cr()], set_status_fail=True)
    reconciler = setup_reconciler(deploy_manager=dm)
    assert not reconciler.reconcile(setup_cr()).requeue
    assert get_deployment(dm)


##############
## Failures ##
##############


def test_reconcile_sync_failure():
    """Make sure a failure to load the release marks the resource
    Irreconcilable
    """
    dm = MockDeployManager(resources=[setup_cr()])
    reconciler = setup_reconciler(
        deploy_manager=dm, fail_flags={"sync": ReleaseError("no chart")}
    )
    result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    assert isinstance(result.exception, ReleaseError)

    cr = get_cr(dm)
    check_cond(cr, status.ConditionType.INITIALIZED, status.ConditionStatus.TRUE)
    check_cond(
        cr,
        status.ConditionType.IRRECONCILABLE,
        status.ConditionStatus.TRUE,
        status.ConditionReason.RECONCILE_ERROR,
    )
    assert get_cond(cr, status.ConditionType.IRRECONCILABLE)["message"] == "no chart"


def test_reconcile_install_failure_then_success():
    """Make sure a failed install sets ReleaseFailed and a later successful
    install clears it
    """
    dm = MockDeployManager(resources=[setup_cr()])
    fail_flags = {"install_release": ReleaseError("install broke")}
    reconciler = setup_reconciler(deploy_manager=dm, fail_flags=fail_flags)

    result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    cr = get_cr(dm)
    check_cond(
        cr,
        status.ConditionType.RELEASE_FAILED,
        status.ConditionStatus.TRUE,
        status.ConditionReason.INSTALL_ERROR,
    )
    assert not get_cond(cr, status.ConditionType.DEPLOYED)
    assert "deployedRelease" not in cr["status"]

    fail_flags.clear()
    assert not reconciler.safe_reconcile(setup_cr()).requeue
    cr = get_cr(dm)
    assert not get_cond(cr, status.ConditionType.RELEASE_FAILED)
    check_cond(cr, status.ConditionType.DEPLOYED, status.ConditionStatus.TRUE)


def test_reconcile_upgrade_failure():
    """Make sure a failed upgrade sets ReleaseFailed with the upgrade reason"""
    dm, reconciler, _, fail_flags = setup_installed()
    cr = get_cr(dm)
    cr["spec"]["replicas"] = 4
    dm.deploy([cr])

    fail_flags["upgrade_release"] = ReleaseError
    assert reconciler.safe_reconcile(setup_cr()).requeue
    check_cond(
        get_cr(dm),
        status.ConditionType.RELEASE_FAILED,
        status.ConditionStatus.TRUE,
        status.ConditionReason.UPGRADE_ERROR,
    )


def test_reconcile_release_failure():
    """Make sure a failure to re-apply the release marks the resource
    Irreconcilable
    """
    dm, reconciler, _, fail_flags = setup_installed()
    fail_flags["reconcile_release"] = ReleaseError
    assert reconciler.safe_reconcile(setup_cr()).requeue
    check_cond(
        get_cr(dm),
        status.ConditionType.IRRECONCILABLE,
        status.ConditionStatus.TRUE,
        status.ConditionReason.RECONCILE_ERROR,
    )

    # The next good reconcile clears it
    fail_flags.clear()
    reconciler.safe_reconcile(setup_cr())
    assert not get_cond(get_cr(dm), status.ConditionType.IRRECONCILABLE)


def test_reconcile_cancelled():
    """Make sure a cancelled reconcile is requeued without an error
    condition
    """
    dm = MockDeployManager(resources=[setup_cr()])
    reconciler = setup_reconciler(deploy_manager=dm)
    cancel_event = threading.Event()
    cancel_event.set()

    result = reconciler.safe_reconcile(setup_cr(), cancel_event=cancel_event)
    assert result.requeue
    assert isinstance(result.exception, ReleaseCancelledError)
    assert not get_cond(get_cr(dm), status.ConditionType.IRRECONCILABLE)
    assert not get_deployment(dm)


def test_safe_reconcile_cluster_error():
    """Make sure a failure to read the resource is requeued"""
    dm = MockDeployManager(resources=[setup_cr()], get_state_fail=True)
    reconciler = setup_reconciler(deploy_manager=dm)
    result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    assert isinstance(result.exception, ClusterError)


def test_safe_reconcile_unexpected_error():
    """Make sure an unexpected error is caught and requeued"""
    dm = MockDeployManager(resources=[setup_cr()])
    reconciler = setup_reconciler(deploy_manager=dm, fail_flags={"sync": KeyError})
    with library_config(requeue_after_seconds=3):
        result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    assert isinstance(result.exception, KeyError)
    assert result.requeue_params.requeue_after == timedelta(seconds=3)


##############
## Deletion ##
##############


def test_reconcile_deletion():
    """Make sure deleting an installed resource uninstalls the release once,
    drops the finalizer, and records the uninstall
    """
    dm, reconciler, call_counts, _ = setup_installed()
    dm.disable([setup_cr()])
    assert get_cr(dm)["metadata"]["deletionTimestamp"]

    result = reconciler.reconcile(setup_cr())
    assert result.deleted
    assert not result.requeue
    assert call_counts["uninstall_release"] == 1

    # The finalizer was removed so the resource and its objects are gone
    assert get_cr(dm) is None
    assert get_deployment(dm) is None
    assert dm.set_finalizers.call_args.kwargs["finalizers"] == []

    final_status = last_status_write(dm)
    check_cond(
        final_status,
        status.ConditionType.DEPLOYED,
        status.ConditionStatus.FALSE,
        status.ConditionReason.UNINSTALL_SUCCESSFUL,
    )
    assert "deployedRelease" not in final_status


def test_reconcile_deletion_finalizer_added_concurrently():
    """Make sure a finalizer added by another controller while the finalizers
    run is not removed along with ours
    """
    dm, reconciler, call_counts, _ = setup_installed()
    dm.disable([setup_cr()])

    read_state = dm.get_object_current_state.side_effect
    added = []

    def read_then_add_foreign(*args, **kwargs):
        result = read_state(*args, **kwargs)
        if not added:
            added.append(True)
            DryRunDeployManager.set_finalizers(
                dm,
                TEST_KIND,
                TEST_INSTANCE_NAME,
                TEST_NAMESPACE,
                [constants.UNINSTALL_FINALIZER, "example.com/other"],
                TEST_API_VERSION,
            )
        return result

    dm.get_object_current_state.side_effect = read_then_add_foreign
    result = reconciler.reconcile(setup_cr())
    assert result.deleted
    assert call_counts["uninstall_release"] == 1

    # The resource stays until the other controller releases it
    current = get_cr(dm)
    assert current is not None
    assert current["metadata"]["finalizers"] == ["example.com/other"]


def test_reconcile_deletion_release_not_found():
    """Make sure a missing release counts as already uninstalled without
    recording an uninstall
    """
    release_store = {}
    dm, reconciler, _, _ = setup_installed(release_store=release_store)
    release_store.clear()
    dm.disable([setup_cr()])

    result = reconciler.reconcile(setup_cr())
    assert result.deleted
    assert get_cr(dm) is None
    for call in dm.set_status.call_args_list:
        deployed = get_cond(call.kwargs["status"], status.ConditionType.DEPLOYED)
        assert (deployed or {}).get("reason") != (
            status.ConditionReason.UNINSTALL_SUCCESSFUL.value
        )
        assert not get_cond(call.kwargs["status"], status.ConditionType.RELEASE_FAILED)


def test_reconcile_deletion_uninstall_failure():
    """Make sure a failed uninstall keeps the finalizer and records the
    failure
    """
    dm, reconciler, call_counts, fail_flags = setup_installed()
    dm.disable([setup_cr()])
    fail_flags["uninstall_release"] = ReleaseError("stuck")

    result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    cr = get_cr(dm)
    assert cr["metadata"]["finalizers"] == [constants.UNINSTALL_FINALIZER]
    check_cond(
        cr,
        status.ConditionType.RELEASE_FAILED,
        status.ConditionStatus.TRUE,
        status.ConditionReason.UNINSTALL_ERROR,
    )

    # The retry succeeds
    fail_flags.clear()
    assert reconciler.reconcile(setup_cr()).deleted
    assert call_counts["uninstall_release"] == 2
    assert get_cr(dm) is None


def test_reconcile_deletion_without_finalizer():
    """Make sure a resource being deleted without our finalizer is left
    alone
    """
    cr = setup_cr(
        metadata={
            "finalizers": ["someone-else"],
            "deletionTimestamp": "2024-01-01T00:00:00Z",
        }
    )
    dm = MockDeployManager(resources=[cr])
    call_counts = {}
    reconciler = setup_reconciler(deploy_manager=dm, call_counts=call_counts)
    assert reconciler.reconcile(setup_cr()).deleted
    assert "uninstall_release" not in call_counts
    assert get_cr(dm)["metadata"]["finalizers"] == ["someone-else"]


def test_reconcile_deletion_keeps_foreign_finalizers():
    """Make sure only our finalizer is removed on deletion"""
    dm, reconciler, _, _ = setup_installed()
    cr = get_cr(dm)
    cr["metadata"]["finalizers"].insert(0, "someone-else")
    dm.set_finalizers(
        kind=TEST_KIND,
        name=TEST_INSTANCE_NAME,
        namespace=TEST_NAMESPACE,
        finalizers=cr["metadata"]["finalizers"],
        api_version=TEST_API_VERSION,
    )
    dm.disable([setup_cr()])

    reconciler.reconcile(setup_cr())
    cr = get_cr(dm)
    assert cr is not None
    assert cr["metadata"]["finalizers"] == ["someone-else"]
    assert get_deployment(dm) is None


@pytest.mark.parametrize("fail_flag", [True, "assert"])
def test_reconcile_deletion_finalizer_write_failure(fail_flag):
    """Make sure a failure to drop the finalizer is surfaced"""
    dm, reconciler, _, _ = setup_installed()
    dm.disable([setup_cr()])
    dm.set_finalizers_fail = fail_flag
    dm.enable_mocks()

    result = reconciler.safe_reconcile(setup_cr())
    assert result.requeue
    assert isinstance(result.exception, (ClusterError, AssertionError))
    assert get_cr(dm)["metadata"]["finalizers"] == [constants.UNINSTALL_FINALIZER]
