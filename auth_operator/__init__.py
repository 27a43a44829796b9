"""
auth-operator

Kubernetes operator that turns RoleDefinitions, BindDefinitions and
WebhookAuthorizers into RBAC objects and authorization decisions.
"""

__version__ = "1.0.0"
