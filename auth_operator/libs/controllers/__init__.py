"""
Reconciliation Drivers

kopf handlers for RoleDefinitions, BindDefinitions, WebhookAuthorizers and
namespaces. Importing this package registers every handler with kopf.
"""

from . import binddefinition, namespaces, operator, roledefinition, webhookauthorizer
from .context import OperatorContext

__all__ = [
    'OperatorContext',
    'binddefinition',
    'namespaces',
    'operator',
    'roledefinition',
    'webhookauthorizer'
]
