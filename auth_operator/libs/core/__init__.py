"""
Core Libraries

Shared functionality and utilities for the auth-operator.
"""

from .auth import ClusterAuth
from .config import ConfigManager
from .exceptions import (
    AuthOperatorError, AuthenticationError, ConfigurationError, DiscoveryNotReadyError,
    NotManagedError, PartialApplyError, TransientError, ValidationError
)
from .kube import ClusterClient
from .utils import setup_logging, disable_ssl_warnings, build_binding_name

__all__ = [
    'ClusterAuth',
    'ClusterClient',
    'ConfigManager',
    'AuthOperatorError',
    'AuthenticationError',
    'ConfigurationError',
    'DiscoveryNotReadyError',
    'NotManagedError',
    'PartialApplyError',
    'TransientError',
    'ValidationError',
    'setup_logging',
    'disable_ssl_warnings',
    'build_binding_name'
]
