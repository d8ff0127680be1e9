"""
Top-level watch_manager imports
"""

from .base import WatchManagerBase
from .dependent_watches import DependentWatchRegistry
from .python_watch_manager import PythonWatchManager
