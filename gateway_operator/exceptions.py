"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class GatewayOperatorError(Exception):
    """Base class for all gateway_operator exceptions"""

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


class GatewayOperatorFatalError(GatewayOperatorError):
    """A GatewayOperatorFatalError is one that indicates an unexpected, and
    likely unrecoverable, failure during a reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(GatewayOperatorFatalError):
    """Exception caused during usage of user-provided configuration"""


class ClusterError(GatewayOperatorFatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


## Expected Errors #############################################################


class GatewayOperatorExpectedError(GatewayOperatorError):
    """A GatewayOperatorExpectedError is one that indicates an expected failure
    condition that should cause a reconciliation to terminate, but is expected
    to resolve in a subsequent reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class PreconditionError(GatewayOperatorExpectedError):
    """Exception caused when an expected precondition is not met"""


class ConflictError(GatewayOperatorExpectedError):
    """Exception raised when a write was rejected because the object changed
    since it was read. The reconcile is requeued after a short fixed delay.
    """


class ValidationError(GatewayOperatorExpectedError):
    """Exception raised when an owner's spec can never be reconciled without a
    change to the spec itself (unsupported image, unknown promotion strategy).
    The failure is reported on the owner's conditions and not retried.
    """


## Assertions ##################################################################


def assert_precondition(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a PreconditionError. This
    should be used when a reconcile requires that a precondition is met before
    continuing.
    """
    if not condition:
        raise PreconditionError(message)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when the library config is missing a required value.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as listing children) must
    succeed for the reconcile to continue.
    """
    if not condition:
        raise ClusterError(message)


def assert_valid(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ValidationError. This should
    be used when checking values of an owner's spec.
    """
    if not condition:
        raise ValidationError(message)
