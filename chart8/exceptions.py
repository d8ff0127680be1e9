"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class Chart8Error(Exception):
    """Base class for all chart8 exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should signal a fatal
        state in the reconciliation
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class Chart8FatalError(Chart8Error):
    """A Chart8FatalError is one that indicates an unexpected, and likely
    unrecoverable, failure during a reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(Chart8FatalError):
    """Exception caused during usage of user-provided configuration"""


class FinalizerNotFoundError(ConfigError):
    """Exception raised when a finalizer is run by name but no action has been
    registered under that name. The finalizer name is left on the resource.
    """

    def __init__(self, finalizer_name: str):
        self.finalizer_name = finalizer_name
        super().__init__(f"No finalizer registered for [{finalizer_name}]")


class ClusterError(Chart8FatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


## Expected Errors #############################################################


class Chart8ExpectedError(Chart8Error):
    """A Chart8ExpectedError is one that indicates an expected failure condition
    that should cause a reconciliation to terminate, but is expected to resolve
    in a subsequent reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class ReleaseError(Chart8ExpectedError):
    """Exception raised when rendering or applying a release fails"""


class ReleaseCancelledError(ReleaseError):
    """Exception raised when a release operation is interrupted by its
    cancellation signal
    """


class ReleaseNotFoundError(Chart8ExpectedError):
    """Exception raised when the release for a resource does not exist. On
    uninstall this is treated as success.
    """


class ManifestDecodeError(Chart8ExpectedError):
    """Exception raised when a release manifest cannot be decoded into objects"""


## Assertions ##################################################################


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when validating the watches file or library config.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as fetching the resource
    being reconciled) must succeed.
    """
    if not condition:
        raise ClusterError(message)
