"""
The FinalizerManager holds the named teardown actions that must succeed before
a resource's deletion is allowed to complete. Each action is keyed by the
finalizer name it guards on the resource's metadata.finalizers list.
"""

# Standard
from typing import Callable, Dict

# First Party
import alog

# Local
from .exceptions import FinalizerNotFoundError
from .managed_object import ManagedResource
from .utils import ReadWriteLock

log = alog.use_channel("FINLZ")

# A finalize action takes the resource being deleted and raises on failure
FinalizeAction = Callable[[ManagedResource], None]


class FinalizerManager:
    """Registry of finalize actions shared by every reconcile in the process.

    The name->action map is guarded by a read/write lock so that finalizers for
    different resources can run concurrently while registration is serialized.
    The resource passed to each operation must be owned by the calling
    reconcile; no locking is done around it.
    """

    def __init__(self):
        self._finalizers: Dict[str, FinalizeAction] = {}
        self._lock = ReadWriteLock()

    ## Public ##################################################################

    def register(self, name: str, action: FinalizeAction):
        """Register the action to run for the given finalizer name. If the name
        is already registered, the new action replaces the old one.

        Args:
            name:  str
                The finalizer name as it appears on resources
            action:  FinalizeAction
                The callable to run when a resource holding the name is deleted
        """
        with self._lock.write_lock():
            if name in self._finalizers:
                log.debug("Replacing registered finalizer [%s]", name)
            self._finalizers[name] = action

    @property
    def names(self):
        """The registered finalizer names in registration order"""
        with self._lock.read_lock():
            return list(self._finalizers)

    @alog.logged_function(log.debug2)
    def finalize(self, resource: ManagedResource) -> bool:
        """Run the registered action for each finalizer on the resource in
        list order. A successful action removes its name from the working list
        and the scan continues with the remaining names. The first failing
        action aborts the pass and leaves the resource's finalizer list
        untouched. After a full pass the remaining names are written back to the
        resource once.

        Args:
            resource:  ManagedResource
                The resource being deleted

        Returns:
            changed:  bool
                True if any finalizer name was removed from the resource
        """
        remaining = resource.finalizers
        idx = 0
        while idx < len(remaining):
            name = remaining[idx]
            action = self._get_action(name)
            if action is None:
                log.debug3("Skipping unregistered finalizer [%s]", name)
                idx += 1
                continue

            log.debug("Running finalizer [%s] for %s", name, resource)
            action(resource)
            remaining.pop(idx)

        changed = remaining != resource.finalizers
        if changed:
            resource.finalizers = remaining
        return changed

    @alog.logged_function(log.debug2)
    def finalize_one(self, name: str, resource: ManagedResource):
        """Run a single named finalizer regardless of its position on the
        resource and remove just that name on success

        Args:
            name:  str
                The finalizer to run
            resource:  ManagedResource
                The resource being deleted

        Raises:
            FinalizerNotFoundError: if no action is registered under the name
        """
        action = self._get_action(name)
        if action is None:
            raise FinalizerNotFoundError(name)

        log.debug("Running finalizer [%s] for %s", name, resource)
        action(resource)
        resource.finalizers = [
            finalizer for finalizer in resource.finalizers if finalizer != name
        ]

    def reconcile(self, resource: ManagedResource) -> bool:
        """Make sure every registered finalizer name is present on the resource.
        Names not registered here are left alone.

        Returns:
            added:  bool
                True if any name was added and the resource needs to be written
        """
        current = resource.finalizers
        missing = [name for name in self.names if name not in current]
        if not missing:
            return False
        log.debug("Adding finalizers %s to %s", missing, resource)
        resource.finalizers = current + missing
        return True

    def reconcile_one(self, name: str, resource: ManagedResource) -> bool:
        """Make sure a single finalizer name is present on the resource

        Returns:
            added:  bool
                True if the name was added
        """
        current = resource.finalizers
        if name in current:
            return False
        log.debug("Adding finalizer [%s] to %s", name, resource)
        resource.finalizers = current + [name]
        return True

    ## Implementation ##########################################################

    def _get_action(self, name: str):
        with self._lock.read_lock():
            return self._finalizers.get(name)
