"""
Filters are used to limit the amount of events being reconciled by a watch
manager. A unique set of filter instances is created for each watched resource
so that filters can keep state about the last version they saw.

Filters in a list are "anded" together while filters in a tuple are "ored". A
filter may return None to abstain from an event.
"""
# Standard
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, List, Optional, Tuple, Type, Union
import copy
import inspect
import operator

# First Party
import alog

# Local
from .. import constants
from ..deploy_manager import KubeEventType
from ..managed_object import ManagedObject
from ..utils import nested_pop

log = alog.use_channel("WFLTR")

# Number of resourceVersions remembered per resource
RESOURCE_VERSION_KEEP_COUNT = 20


## Filter Interface ############################################################


class Filter(ABC):
    """Generic Filter Interface for subclassing. Every subclass should implement a
    `test` function which returns true when a resource should be reconciled.
    Subclasses can optionally implement an `update` method if the filter requires
    storing some stateful information like resourceVersion.
    """

    def __init__(self, resource: ManagedObject):  # noqa: B027
        """Even though a resource is provided it should not set state until
        update is called
        """

    @abstractmethod
    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        """Test whether the resource&event passes the filter. Returns true if
        the resource should be reconciled and false if it should not be. A
        filter can return None to ignore an event

        Args:
            resource: ManagedObject
                The current resource being checked
            event: KubeEventType
                The event type that triggered this filter

        Returns:
            result: Optional[bool]
                The result of the test.
        """

    def update(self, resource: ManagedObject):  # noqa: B027
        """Update the instance's current state"""

    def update_and_test(
        self, resource: ManagedObject, event: KubeEventType
    ) -> Optional[bool]:
        """First test a resource/event against a filter then update the current
        state
        """
        result = self.test(resource, event)
        if result is not None and not result:
            log.debug3(
                "Failed filter: %s with return val %s",
                self,
                result,
                extra={"resource": resource.definition},
            )
        self.update(resource)
        return result


## Primary Resource Filters ####################################################


class CreationDeletionFilter(Filter):
    """Filter to ensure reconciliation on creation and deletion events"""

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        if event not in [KubeEventType.ADDED, KubeEventType.DELETED]:
            return None
        return True


class GenerationFilter(Filter):
    """Filter for reconciling on generation changes. Status-only and
    metadata-only writes do not bump the generation.
    """

    def __init__(self, resource: ManagedObject):
        super().__init__(resource)
        self.generation = None

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        if not self.generation:
            return None
        if event in [KubeEventType.ADDED, KubeEventType.DELETED]:
            return None
        return self.generation != resource.metadata.get("generation")

    def update(self, resource: ManagedObject):
        self.generation = resource.metadata.get("generation")


class ResourceVersionFilter(Filter):
    """Filter for duplicate resource versions which happens when restarting a
    watch connection
    """

    def __init__(self, resource: ManagedObject):
        # Use a deque to set a bound on the number of tracked versions
        self.resource_versions = deque([], maxlen=RESOURCE_VERSION_KEEP_COUNT)
        super().__init__(resource)

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        if event == KubeEventType.DELETED:
            return None
        return resource.resource_version not in self.resource_versions

    def update(self, resource: ManagedObject):
        self.resource_versions.append(resource.resource_version)


class DeletionTimestampFilter(Filter):
    """Filter that passes the first update where a deletionTimestamp appears so
    that finalizers run even if the generation did not change
    """

    def __init__(self, resource: ManagedObject):
        super().__init__(resource)
        self.deleting = False

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        if event != KubeEventType.MODIFIED or self.deleting:
            return None
        if resource.metadata.get("deletionTimestamp"):
            return True
        return None

    def update(self, resource: ManagedObject):
        self.deleting = bool(resource.metadata.get("deletionTimestamp"))


## Dependent Resource Filters ##################################################


class DependentResourceFilter(Filter):
    """Filter for objects rendered into a release. Creations are ignored since
    dependents are only created by a reconcile of their owner. Deletions always
    pass. Updates pass only if the object changed outside of status and
    metadata.resourceVersion.
    """

    def __init__(self, resource: ManagedObject):
        super().__init__(resource)
        self.content = None

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        if event == KubeEventType.ADDED:
            log.debug2("Skipping reconciliation for dependent creation %s", resource)
            return False
        if event == KubeEventType.DELETED:
            log.debug2("Reconciling due to dependent deletion %s", resource)
            return True
        if self.content is None:
            return True
        changed = self.content != stripped_content(resource.definition)
        if changed:
            log.debug2("Detected change in dependent %s", resource)
        return changed

    def update(self, resource: ManagedObject):
        self.content = stripped_content(resource.definition)


def stripped_content(definition: dict) -> dict:
    """Copy of an object without the fields that churn on every write"""
    content = copy.deepcopy(definition)
    for key in constants.DEPENDENT_IGNORED_FIELDS:
        nested_pop(content, key)
    return content


def dependent_update_changed(old: dict, new: dict) -> bool:
    """Check if an update between two versions of a dependent object is worth
    reconciling its owner
    """
    return stripped_content(old) != stripped_content(new)


## Conditional Filters #########################################################


def AndFilter(*args):  # pylint: disable=invalid-name
    """An "And" Filter is just a list of filters"""
    return list(args)


def OrFilter(*args):  # pylint: disable=invalid-name
    """An "Or" Filter is just a tuple of filters"""
    return tuple(args)


FilterSpec = Union[Type[Filter], List["FilterSpec"], Tuple["FilterSpec", ...]]

# Filters for the chart-backed kinds themselves
PRIMARY_FILTERS = OrFilter(
    AndFilter(CreationDeletionFilter, GenerationFilter, ResourceVersionFilter),
    DeletionTimestampFilter,
)

# Filters for objects rendered into a release
DEPENDENT_FILTERS = AndFilter(DependentResourceFilter)


class FilterManager(Filter):
    """The FilterManager processes conditional groups of filters for a single
    resource
    """

    def __init__(self, filters: FilterSpec, resource: ManagedObject):
        super().__init__(resource)
        self.filters = self._recursive_map(filters, lambda filter_type: filter_type(resource))

    def test(self, resource: ManagedObject, event: KubeEventType) -> Optional[bool]:
        return self._recursive_update_and_test(self.filters, resource, event, test_only=True)

    def update(self, resource: ManagedObject):
        self._recursive_update_and_test(self.filters, resource, None, update_only=True)

    def update_and_test(
        self, resource: ManagedObject, event: KubeEventType
    ) -> Optional[bool]:
        return self._recursive_update_and_test(self.filters, resource, event)

    ## Implementation ##########################################################

    def _recursive_update_and_test(  # pylint: disable=too-many-arguments
        self,
        filters,
        resource: ManagedObject,
        event: Optional[KubeEventType],
        update_only: bool = False,
        test_only: bool = False,
    ) -> Optional[bool]:
        if isinstance(filters, Filter):
            if update_only:
                filters.update(resource)
                return None
            if test_only:
                return filters.test(resource, event)
            return filters.update_and_test(resource, event)

        if not filters:
            return True

        return_value = None
        operation = operator.and_ if isinstance(filters, list) else operator.or_
        for filter_combo in filters:
            result = self._recursive_update_and_test(
                filter_combo, resource, event, update_only, test_only
            )
            if result is not None:
                return_value = (
                    result if return_value is None else operation(return_value, result)
                )

        # If no filter cared about the event then don't reconcile
        if return_value is None:
            return False
        return return_value

    @classmethod
    def _recursive_map(cls, filters, func: Callable):
        # Directly check tuple to ignore NamedTuples and subclasses
        if not (isinstance(filters, list) or type(filters) is tuple):
            if not (inspect.isclass(filters) and issubclass(filters, Filter)):
                raise ValueError(f"Unknown filter type: {filters}")
            return func(filters)
        return type(filters)(cls._recursive_map(item, func) for item in filters)
