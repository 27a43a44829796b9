"""
auth-operator Library

Authorization control plane for Kubernetes: generated roles, generated
bindings and a declarative authorization webhook.
"""

__version__ = "1.0.0"
__author__ = "auth-operator Project"

# Core libraries
from .core import ClusterAuth, ClusterClient, ConfigManager
from .core.exceptions import (
    AuthOperatorError, AuthenticationError, ConfigurationError, TransientError, ValidationError
)

# Engines
from .discovery import DiscoveryCache, DiscoveryClient, DiscoverySnapshot
from .roles import RoleEngine, RuleGenerator
from .bindings import BindingEngine
from .authorizer import DecisionEngine, NamespaceIndex, PolicyIndex, create_app

__all__ = [
    # Core
    'ClusterAuth',
    'ClusterClient',
    'ConfigManager',
    'AuthOperatorError',
    'AuthenticationError',
    'ConfigurationError',
    'TransientError',
    'ValidationError',
    # Discovery
    'DiscoveryCache',
    'DiscoveryClient',
    'DiscoverySnapshot',
    # Engines
    'RoleEngine',
    'RuleGenerator',
    'BindingEngine',
    'DecisionEngine',
    'NamespaceIndex',
    'PolicyIndex',
    'create_app'
]
