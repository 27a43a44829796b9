"""
WebhookAuthorizer driver.

Feeds the policy index from watch events and publishes validation status.
Invalid objects are kept out of the index so that they never influence a
decision.
"""

import copy
import logging
from typing import Any, Dict, Optional, Tuple

import kopf

from ..authorizer.validation import authorizer_conditions, validate_webhook_authorizer
from ..core.constants import KubernetesConstants
from ..core.data_models import WebhookAuthorizerSpec, from_dict
from ..core.exceptions import ValidationError
from ..core.metrics import ErrorType, Result, record_result
from .context import WEBHOOK_AUTHORIZER, OperatorContext

logger = logging.getLogger(__name__)

GROUP = KubernetesConstants.AUTHORIZATION_API_GROUP
VERSION = KubernetesConstants.AUTHORIZATION_API_VERSION
PLURAL = KubernetesConstants.Plural.WEBHOOK_AUTHORIZERS.value

CONTROLLER = KubernetesConstants.Kind.WEBHOOK_AUTHORIZER.value


def parse_webhook_authorizer(obj: Dict[str, Any]) -> Tuple[Optional[WebhookAuthorizerSpec], list, list]:
    """
    Parse and validate a WebhookAuthorizer object

    Returns:
        Tuple of (spec or None when unparseable, errors, warnings)
    """
    try:
        spec = from_dict(WebhookAuthorizerSpec, obj.get('spec') or {})
    except (ValidationError, TypeError) as e:
        return None, [f"spec cannot be parsed: {e}"], []
    errors, warnings = validate_webhook_authorizer(spec)
    return spec, errors, warnings


def index_webhook_authorizer(ctx: OperatorContext, obj: Dict[str, Any]) -> bool:
    """
    Add a valid WebhookAuthorizer to the policy index, or drop an invalid one

    Returns:
        bool: True if the object is in the index afterwards
    """
    name = (obj.get('metadata') or {}).get('name')
    spec, errors, _ = parse_webhook_authorizer(obj)
    if spec is None or errors:
        if ctx.policy_index.remove(name):
            logger.warning(f"WebhookAuthorizer {name} removed from the policy index: {'; '.join(errors)}")
        return False
    ctx.policy_index.upsert(name, spec)
    return True


@kopf.on.event(GROUP, VERSION, PLURAL)
def webhook_authorizer_event(event, memo, **_):
    """Keep the policy index in step with the watch stream"""
    ctx: OperatorContext = memo.context
    obj = event.get('object') or {}
    name = (obj.get('metadata') or {}).get('name')
    if not name:
        return
    if event.get('type') == 'DELETED':
        ctx.policy_index.remove(name)
        logger.info(f"WebhookAuthorizer {name} deleted")
        return
    index_webhook_authorizer(ctx, obj)


@kopf.on.resume(GROUP, VERSION, PLURAL)
@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL)
def webhook_authorizer_changed(body, name: str, meta, status, patch, memo, **_):
    """Validate a WebhookAuthorizer and publish its conditions"""
    ctx: OperatorContext = memo.context
    obj = copy.deepcopy(dict(body))
    generation = meta.get('generation')

    with ctx.serialized(WEBHOOK_AUTHORIZER, name):
        spec, errors, warnings = parse_webhook_authorizer(obj)
        for warning in warnings:
            logger.warning(f"WebhookAuthorizer {name}: {warning}")
        configured = index_webhook_authorizer(ctx, obj)

        current = list((status or {}).get('conditions') or [])
        patch['status'] = {
            'conditions': authorizer_conditions(spec or WebhookAuthorizerSpec(), errors, current, generation),
            'observedGeneration': generation,
            'authorizerConfigured': configured,
        }

    if errors:
        record_result(CONTROLLER, Result.ERROR, ErrorType.VALIDATION)
        raise kopf.PermanentError("; ".join(errors))
    record_result(CONTROLLER, Result.SUCCESS)
