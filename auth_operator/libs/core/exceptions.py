"""
Exceptions Module

Exception hierarchy shared by the engines and the reconciliation drivers.
Drivers retry every TransientError and surface every ValidationError as a
terminal status condition.
"""

from typing import Any, List, Tuple


class AuthOperatorError(Exception):
    """Base exception for all auth-operator errors"""
    pass


class ConfigurationError(AuthOperatorError):
    """Raised when the configuration file or environment is invalid"""
    pass


class AuthenticationError(AuthOperatorError):
    """Raised when a Kubernetes client cannot be configured or credentials are rejected"""
    pass


class TransientError(AuthOperatorError):
    """Raised for infrastructure failures that are expected to heal on retry"""
    pass


class DiscoveryNotReadyError(TransientError):
    """Raised when the discovery snapshot is missing or empty"""
    pass


class PartialApplyError(TransientError):
    """
    Raised after applying N objects when some of them failed.

    Objects applied successfully are kept; only the failures are retried.
    ``result`` carries whatever the engine computed before giving up so that
    status can still be published.
    """

    def __init__(self, failures: List[Tuple[str, Exception]], result: Any = None):
        self.failures = list(failures)
        self.result = result
        details = "; ".join(f"{ref}: {error}" for ref, error in self.failures)
        super().__init__(f"{len(self.failures)} object(s) failed to apply: {details}")


class ValidationError(AuthOperatorError):
    """Raised when a declared object is malformed and needs user correction"""
    pass


class NotManagedError(ValidationError):
    """Raised when a generated object name is taken by an object we do not manage"""
    pass
