"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import List, Optional
from unittest import mock
import copy
import inspect
import os

# First Party
import alog

# Local
from chart8.config import library_config as config_detail_dict
from chart8.deploy_manager.dry_run_deploy_manager import DryRunDeployManager
from chart8.finalizer import FinalizerManager
from chart8.managed_object import GroupVersionKind, ManagedResource
from chart8.reconcile import ReleaseReconciler
from chart8.release import DryRunReleaseManager, ReleaseManagerFactory

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_INSTANCE_NAME = "test-instance"
TEST_INSTANCE_UID = "12345678-1234-1234-1234-123456789012"
TEST_NAMESPACE = "test"
TEST_GROUP = "charts.example.com"
TEST_VERSION = "v1"
TEST_KIND = "Widget"
TEST_API_VERSION = f"{TEST_GROUP}/{TEST_VERSION}"
TEST_GVK = GroupVersionKind(group=TEST_GROUP, version=TEST_VERSION, kind=TEST_KIND)


def setup_cr(
    kind=TEST_KIND,
    api_version=TEST_API_VERSION,
    spec=None,
    name=TEST_INSTANCE_NAME,
    namespace=TEST_NAMESPACE,
    **kwargs,
) -> dict:
    cr_dict = kwargs or {}
    cr_dict.setdefault("kind", kind)
    cr_dict.setdefault("apiVersion", api_version)
    cr_dict.setdefault("metadata", {}).setdefault("name", name)
    if namespace is not None:
        cr_dict["metadata"].setdefault("namespace", namespace)
    cr_dict["metadata"].setdefault("uid", TEST_INSTANCE_UID)
    cr_dict.setdefault("spec", {}).update(copy.deepcopy(spec or {}))
    return cr_dict


def setup_resource(**kwargs) -> ManagedResource:
    return ManagedResource(setup_cr(**kwargs))


def widget_renderer(release_name: str, namespace: Optional[str], values: dict) -> List[dict]:
    """Render a small release of a Deployment and a Service. The replica count
    comes from the values so that spec changes cause upgrades.
    """
    return [
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": f"{release_name}-deployment"},
            "spec": {"replicas": values.get("replicas", 1)},
        },
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": f"{release_name}-service"},
            "spec": {"ports": [{"port": values.get("port", 80)}]},
        },
    ]


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        log.debug4(
            "Running failable mock of [%s] with fail flag: %s", str(method), fail_flag
        )
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag == "assert":
            log.debug4("Asserting in failable mock")
            raise AssertionError(f"You told me to fail {method}!")
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        log.debug4("Passing through (%s, **%s)", args, kwargs)
        res = method(*args, **kwargs)
        log.debug4("Passthrough res: %s", res)
        return res

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return None


class MockDeployManager(DryRunDeployManager):
    """The MockDeployManager wraps a standard DryRunDeployManager and adds
    configuration options to simulate failures in each of its operations.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        deploy_fail=False,
        deploy_raise=False,
        disable_fail=False,
        disable_raise=False,
        get_state_fail=False,
        get_state_raise=False,
        set_status_fail=False,
        set_status_raise=False,
        set_finalizers_fail=False,
        set_finalizers_raise=False,
        auto_enable=True,
        resources=None,
        **kwargs,
    ):
        """This DeployManager can be configured to have various failure cases
        and will mock the state of the cluster so that get_object_current_state
        will pull its information from the local dict.
        """
        resources = resources or []
        for resource in resources:
            resource.setdefault("apiVersion", "v1")
        super().__init__(resources, **kwargs)

        self.deploy_fail = "assert" if deploy_raise else deploy_fail
        self.disable_fail = "assert" if disable_raise else disable_fail
        self.get_state_fail = "assert" if get_state_raise else get_state_fail
        self.set_status_fail = "assert" if set_status_raise else set_status_fail
        self.set_finalizers_fail = (
            "assert" if set_finalizers_raise else set_finalizers_fail
        )

        # If auto-enabling, turn the mocks on now
        if auto_enable:
            self.enable_mocks()

    ## Helpers for Tests #######################################################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.deploy = mock.Mock(
            side_effect=get_failable_method(
                self.deploy_fail, super().deploy, (False, False)
            )
        )
        self.disable = mock.Mock(
            side_effect=get_failable_method(
                self.disable_fail, super().disable, (False, False)
            )
        )
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.set_status = mock.Mock(
            side_effect=get_failable_method(
                self.set_status_fail, super().set_status, (False, False)
            )
        )
        self.set_finalizers = mock.Mock(
            side_effect=get_failable_method(
                self.set_finalizers_fail, super().set_finalizers, (False, False)
            )
        )

    def get_obj(self, kind, name, namespace=None, api_version=None):
        return self.get_object_current_state(kind, name, namespace, api_version)[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None


class MockReleaseManager(DryRunReleaseManager):
    """DryRunReleaseManager whose operations can be made to fail. Failure
    flags and call counts are shared through the factory kwargs so that every
    manager built for a test sees the same settings.
    """

    def __init__(
        self,
        *args,
        fail_flags: Optional[dict] = None,
        call_counts: Optional[dict] = None,
        **kwargs,
    ):
        kwargs.setdefault("renderer", widget_renderer)
        super().__init__(*args, **kwargs)
        self.fail_flags = fail_flags if fail_flags is not None else {}
        self.call_counts = call_counts if call_counts is not None else {}
        for name in [
            "sync",
            "install_release",
            "upgrade_release",
            "reconcile_release",
            "uninstall_release",
        ]:
            setattr(self, name, self._counted(name, getattr(self, name)))

    def _counted(self, name, method):
        def counted_method(*args, **kwargs):
            self.call_counts[name] = self.call_counts.get(name, 0) + 1
            return get_failable_method(self.fail_flags.get(name, False), method)(
                *args, **kwargs
            )

        return counted_method


def setup_reconciler(
    deploy_manager: Optional[DryRunDeployManager] = None,
    fail_flags: Optional[dict] = None,
    call_counts: Optional[dict] = None,
    release_store: Optional[dict] = None,
    **kwargs,
) -> ReleaseReconciler:
    """Build a reconciler for the test kind backed by a MockReleaseManager"""
    deploy_manager = deploy_manager or MockDeployManager()
    factory = ReleaseManagerFactory(
        MockReleaseManager,
        "test-chart",
        deploy_manager,
        release_store=release_store if release_store is not None else {},
        fail_flags=fail_flags if fail_flags is not None else {},
        call_counts=call_counts if call_counts is not None else {},
    )
    kwargs.setdefault("finalizer_manager", FinalizerManager())
    return ReleaseReconciler(
        gvk=TEST_GVK,
        release_manager_factory=factory,
        deploy_manager=deploy_manager,
        **kwargs,
    )
