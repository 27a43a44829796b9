"""
Binding Libraries

Turns BindDefinitions into ClusterRoleBindings, RoleBindings and shared
ServiceAccount subjects.
"""

from .engine import BindingEngine, BindingResult, parse_bind_definition
from .namespaces import NamespaceResolver
from .service_accounts import ServiceAccountManager, SubjectOutcome

__all__ = [
    'BindingEngine',
    'BindingResult',
    'NamespaceResolver',
    'ServiceAccountManager',
    'SubjectOutcome',
    'parse_bind_definition'
]
