"""
Tests for the DependentWatchRegistry
"""
# Standard
from unittest import mock
import threading

# Third Party
import pytest

# Local
from chart8.exceptions import ClusterError, ManifestDecodeError
from chart8.managed_object import GroupVersionKind, ResourceScope
from chart8.release import encode_manifest
from chart8.test_helpers.helpers import TEST_GVK, widget_renderer
from chart8.watch_manager import DependentWatchRegistry

## Helpers #####################################################################

DEPLOYMENT_GVK = GroupVersionKind(group="apps", version="v1", kind="Deployment")
SERVICE_GVK = GroupVersionKind(group="", version="v1", kind="Service")
CLUSTER_ROLE_GVK = GroupVersionKind(
    group="rbac.authorization.k8s.io", version="v1", kind="ClusterRole"
)


def make_scope_resolver(owner_scope=ResourceScope.NAMESPACED, unknown=None):
    unknown = unknown or []

    def resolve(kind, api_version):
        if kind in unknown:
            return None
        if kind == TEST_GVK.kind:
            return owner_scope
        if kind == "ClusterRole":
            return ResourceScope.CLUSTER
        return ResourceScope.NAMESPACED

    return mock.Mock(side_effect=resolve)


def make_registry(**kwargs):
    scope_resolver = make_scope_resolver(**kwargs)
    subscribe = mock.Mock()
    registry = DependentWatchRegistry(
        owner_gvk=TEST_GVK, scope_resolver=scope_resolver, subscribe=subscribe
    )
    return registry, scope_resolver, subscribe


def widget_manifest(name="test-instance"):
    return encode_manifest(widget_renderer(name, "test", {}))


cluster_role_manifest = encode_manifest(
    [
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": "widget-reader"},
        }
    ]
)

######################
## register_release ##
######################


def test_register_release_subscribes_each_kind():
    """Make sure every kind in the manifest is subscribed with the owner's
    scope
    """
    registry, _, subscribe = make_registry()
    registry.register_release(widget_manifest())
    assert registry.seen == {DEPLOYMENT_GVK, SERVICE_GVK}
    subscribe.assert_has_calls(
        [
            mock.call(DEPLOYMENT_GVK, ResourceScope.NAMESPACED),
            mock.call(SERVICE_GVK, ResourceScope.NAMESPACED),
        ]
    )


def test_register_release_once_per_kind():
    """Make sure a kind seen before is never subscribed again"""
    registry, scope_resolver, subscribe = make_registry()
    registry.register_release(widget_manifest("first"))
    resolver_calls = scope_resolver.call_count
    registry.register_release(widget_manifest("second"))
    assert subscribe.call_count == 2
    assert scope_resolver.call_count == resolver_calls


def test_register_release_duplicate_kinds_in_manifest():
    """Make sure a kind repeated in one manifest is subscribed once"""
    registry, _, subscribe = make_registry()
    objects = widget_renderer("a", "test", {}) + widget_renderer("b", "test", {})
    registry.register_release(encode_manifest(objects))
    assert subscribe.call_count == 2


def test_cluster_scoped_dependent_of_namespaced_owner():
    """Make sure a cluster-scoped dependent of a namespaced owner is marked
    seen without a subscription or a second lookup
    """
    registry, scope_resolver, subscribe = make_registry()
    registry.register_release(cluster_role_manifest)
    subscribe.assert_not_called()
    assert registry.is_seen(CLUSTER_ROLE_GVK)

    resolver_calls = scope_resolver.call_count
    registry.register_release(cluster_role_manifest)
    assert scope_resolver.call_count == resolver_calls
    subscribe.assert_not_called()


def test_cluster_scoped_dependent_of_cluster_owner():
    """Make sure a cluster-scoped owner can watch cluster-scoped dependents"""
    registry, _, subscribe = make_registry(owner_scope=ResourceScope.CLUSTER)
    registry.register_release(cluster_role_manifest)
    subscribe.assert_called_once_with(CLUSTER_ROLE_GVK, ResourceScope.CLUSTER)


def test_unknown_scope_raises():
    """Make sure a kind whose scope can't be resolved raises and stays unseen"""
    registry, _, subscribe = make_registry(unknown=["Service"])
    with pytest.raises(ClusterError):
        registry.register_release(widget_manifest())
    assert registry.is_seen(DEPLOYMENT_GVK)
    assert not registry.is_seen(SERVICE_GVK)
    subscribe.assert_called_once_with(DEPLOYMENT_GVK, ResourceScope.NAMESPACED)


def test_decode_failure_leaves_seen_unchanged():
    """Make sure a manifest that fails to decode registers nothing"""
    registry, _, subscribe = make_registry()
    manifest = widget_manifest() + "---\n- not\n- an\n- object\n"
    with pytest.raises(ManifestDecodeError):
        registry.register_release(manifest)
    assert registry.seen == set()
    subscribe.assert_not_called()


def test_empty_manifest():
    """Make sure an empty manifest is a no-op"""
    registry, scope_resolver, subscribe = make_registry()
    registry.register_release("")
    assert registry.seen == set()
    scope_resolver.assert_not_called()
    subscribe.assert_not_called()


@pytest.mark.timeout(5)
def test_concurrent_registration():
    """Make sure concurrent registrations of the same manifest end with each
    kind seen
    """
    registry, _, subscribe = make_registry()
    manifest = widget_manifest()
    threads = [
        threading.Thread(target=registry.register_release, args=(manifest,))
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert registry.seen == {DEPLOYMENT_GVK, SERVICE_GVK}
    assert subscribe.call_count >= 2
