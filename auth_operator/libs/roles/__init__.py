"""
Role Libraries

Turns RoleDefinitions plus live discovery data into generated ClusterRoles
and Roles.
"""

from .engine import RoleEngine, RoleResult, parse_role_definition
from .generator import GenerationResult, RuleGenerator

__all__ = [
    'GenerationResult',
    'RoleEngine',
    'RoleResult',
    'RuleGenerator',
    'parse_role_definition'
]
