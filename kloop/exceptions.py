"""
This module implements custom exceptions and the error taxonomy used to turn
reconcile failures into requeue decisions
"""

## Base Error ##################################################################


class KloopError(Exception):
    """Base class for all kloop exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not retrying the same input can ever
        succeed
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class KloopFatalError(KloopError):
    """A KloopFatalError indicates a failure that will not resolve by retrying
    the same input
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class PermanentError(KloopFatalError):
    """Exception indicating malformed desired state. It is surfaced as a status
    condition and only retried at the slow resync cadence
    """


class InvalidResourceError(PermanentError):
    """Exception raised when a resource body violates a structural invariant"""


class ConfigError(KloopFatalError):
    """Exception caused during usage of user-provided configuration"""


## Expected Errors #############################################################


class KloopExpectedError(KloopError):
    """A KloopExpectedError indicates a failure that is expected to resolve in
    a subsequent attempt
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class NotFoundError(KloopExpectedError):
    """The requested object does not exist in the store"""


class ConflictError(KloopExpectedError):
    """An optimistic-concurrency write lost a race. Retry with a fresh read"""


class AlreadyExistsError(ConflictError):
    """A create targeted a name that is already taken"""


class ExpiredError(KloopExpectedError):
    """The resource version requested for a watch is no longer retained. The
    watcher must relist
    """


class TransientError(KloopExpectedError):
    """The store is unavailable or failed in a way that should be retried with
    backoff
    """


class ReconcileTimeoutError(TransientError):
    """A reconcile exceeded its deadline"""


class LeadershipLostError(TransientError):
    """Leadership was lost while a reconcile was in flight"""


## Assertions ##################################################################


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when validating library or controller configuration.
    """
    if not condition:
        raise ConfigError(message)


def assert_valid(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a PermanentError. This should
    be used by reconcilers when validating a resource's desired state.
    """
    if not condition:
        raise PermanentError(message)


def assert_resource(condition: bool, message: str = ""):
    """Replacement for assert() which will throw an InvalidResourceError. This
    should be used when a resource body is structurally invalid.
    """
    if not condition:
        raise InvalidResourceError(message)
