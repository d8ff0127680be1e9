"""Import the ThreadBase and subclasses"""
# Local
from .base import ThreadBase
from .reconcile import ReconcileThread
from .timer import TimerThread
from .watch import WatchThread, WatchThreadRegistry
