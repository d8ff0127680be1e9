"""
Shared module to hold constant values for the library
"""

# Name of the finalizer that uninstalls the release before the resource is
# allowed to be removed
UNINSTALL_FINALIZER = "uninstall-helm-release"

# Default namespace if none given
DEFAULT_NAMESPACE = "default"

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Keys stripped from dependent resources before comparing old and new content
DEPENDENT_IGNORED_FIELDS = ("status", "metadata.resourceVersion")

# Keys in the watches file
WATCHES_GROUP = "group"
WATCHES_VERSION = "version"
WATCHES_KIND = "kind"
WATCHES_CHART = "chart"
WATCHES_DEPENDENT_RESOURCES = "watchDependentResources"
WATCHES_RECONCILE_PERIOD = "reconcilePeriod"
WATCHES_OVERRIDE_VALUES = "overrideValues"
