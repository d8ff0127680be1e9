"""
Tests for the FinalizerManager
"""

# Standard
from unittest import mock
import threading

# Third Party
import pytest

# Local
from chart8.exceptions import FinalizerNotFoundError
from chart8.finalizer import FinalizerManager
from chart8.test_helpers.helpers import setup_resource

## Helpers #####################################################################


def make_resource(finalizers):
    return setup_resource(metadata={"finalizers": list(finalizers)})


##############
## register ##
##############


def test_register_names_in_order():
    """Make sure registered names are reported in registration order"""
    manager = FinalizerManager()
    manager.register("a", mock.Mock())
    manager.register("b", mock.Mock())
    assert manager.names == ["a", "b"]


def test_register_replaces_action():
    """Make sure registering a name twice keeps only the newest action"""
    manager = FinalizerManager()
    first = mock.Mock()
    second = mock.Mock()
    manager.register("a", first)
    manager.register("a", second)
    assert manager.names == ["a"]

    manager.finalize(make_resource(["a"]))
    first.assert_not_called()
    second.assert_called_once()


##############
## finalize ##
##############


def test_finalize_runs_in_order_and_removes():
    """Make sure each registered finalizer runs in list order and is removed
    from the resource
    """
    calls = []
    manager = FinalizerManager()
    manager.register("a", lambda _: calls.append("a"))
    manager.register("b", lambda _: calls.append("b"))

    resource = make_resource(["b", "a"])
    assert manager.finalize(resource)
    assert calls == ["b", "a"]
    assert resource.finalizers == []
    assert "finalizers" not in resource.metadata


def test_finalize_skips_unregistered():
    """Make sure names without an action are left on the resource"""
    action = mock.Mock()
    manager = FinalizerManager()
    manager.register("ours", action)

    resource = make_resource(["foreign", "ours"])
    assert manager.finalize(resource)
    action.assert_called_once_with(resource)
    assert resource.finalizers == ["foreign"]


def test_finalize_nothing_registered():
    """Make sure finalizing a resource with only foreign finalizers is a
    no-op
    """
    resource = make_resource(["foreign"])
    assert not FinalizerManager().finalize(resource)
    assert resource.finalizers == ["foreign"]


def test_finalize_failure_leaves_list():
    """Make sure a failing action aborts the pass without removing anything"""
    calls = []
    manager = FinalizerManager()
    manager.register("a", lambda _: calls.append("a"))
    manager.register("b", mock.Mock(side_effect=RuntimeError("boom")))
    manager.register("c", lambda _: calls.append("c"))

    resource = make_resource(["a", "b", "c"])
    with pytest.raises(RuntimeError):
        manager.finalize(resource)
    assert calls == ["a"]
    assert resource.finalizers == ["a", "b", "c"]


##################
## finalize_one ##
##################


def test_finalize_one():
    """Make sure a single finalizer runs regardless of its position"""
    manager = FinalizerManager()
    action = mock.Mock()
    manager.register("b", action)
    resource = make_resource(["a", "b", "c"])
    manager.finalize_one("b", resource)
    action.assert_called_once_with(resource)
    assert resource.finalizers == ["a", "c"]


def test_finalize_one_not_registered():
    """Make sure running an unknown finalizer raises and leaves the name"""
    resource = make_resource(["missing"])
    with pytest.raises(FinalizerNotFoundError):
        FinalizerManager().finalize_one("missing", resource)
    assert resource.finalizers == ["missing"]


def test_finalize_one_failure_leaves_name():
    """Make sure a failing action leaves its name in place"""
    manager = FinalizerManager()
    manager.register("a", mock.Mock(side_effect=ValueError))
    resource = make_resource(["a"])
    with pytest.raises(ValueError):
        manager.finalize_one("a", resource)
    assert resource.finalizers == ["a"]


###############
## reconcile ##
###############


def test_reconcile_adds_missing():
    """Make sure missing registered names are appended and foreign names are
    kept
    """
    manager = FinalizerManager()
    manager.register("a", mock.Mock())
    manager.register("b", mock.Mock())
    resource = make_resource(["foreign", "b"])
    assert manager.reconcile(resource)
    assert resource.finalizers == ["foreign", "b", "a"]
    assert not manager.reconcile(resource)


def test_reconcile_one():
    """Make sure a single name is added once"""
    manager = FinalizerManager()
    resource = setup_resource()
    assert manager.reconcile_one("a", resource)
    assert not manager.reconcile_one("a", resource)
    assert resource.finalizers == ["a"]


#################
## concurrency ##
#################


@pytest.mark.timeout(5)
def test_concurrent_finalize():
    """Make sure finalizers for different resources can run at the same time"""
    both_running = threading.Barrier(2, timeout=2)
    manager = FinalizerManager()
    manager.register("a", lambda _: both_running.wait())

    resources = [make_resource(["a"]), make_resource(["a"])]
    threads = [
        threading.Thread(target=manager.finalize, args=(resource,))
        for resource in resources
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert all(resource.finalizers == [] for resource in resources)
