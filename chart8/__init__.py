"""
Package exports
"""

# Local
from . import config, reconcile, status, watch_manager
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster, assert_config
from .finalizer import FinalizerManager
from .managed_object import GroupVersionKind, ManagedResource, ResourceScope
from .reconcile import ReconciliationResult, ReleaseReconciler
from .release import ReleaseManagerBase, ReleaseManagerFactory
from .watch_manager import DependentWatchRegistry, PythonWatchManager
