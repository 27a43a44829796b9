"""
Authorizer Libraries

Declarative allow/deny policy evaluation behind a SubjectAccessReview
webhook.
"""

from .app import create_app, review_response
from .decision import AccessRequest, Decision, DecisionEngine, DecisionResult
from .policy import NamespaceIndex, PolicyIndex
from .validation import authorizer_conditions, validate_webhook_authorizer

__all__ = [
    'AccessRequest',
    'Decision',
    'DecisionEngine',
    'DecisionResult',
    'NamespaceIndex',
    'PolicyIndex',
    'authorizer_conditions',
    'create_app',
    'review_response',
    'validate_webhook_authorizer'
]
