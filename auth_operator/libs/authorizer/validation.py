"""
WebhookAuthorizer validation and status conditions.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..core import conditions
from ..core.constants import ConditionConstants
from ..core.data_models import WebhookAuthorizerSpec
from ..core.exceptions import ValidationError
from ..core.selectors import validate_selector

logger = logging.getLogger(__name__)


def _principal_key(principal) -> Tuple[str, Tuple[str, ...], str]:
    return principal.user, tuple(sorted(principal.groups)), principal.namespace


def validate_webhook_authorizer(spec: WebhookAuthorizerSpec) -> Tuple[List[str], List[str]]:
    """
    Check a WebhookAuthorizer spec

    Args:
        spec: Parsed spec

    Returns:
        Tuple of (errors, warnings); any error makes the object unusable
    """
    errors: List[str] = []
    warnings: List[str] = []

    try:
        validate_selector(spec.namespace_selector)
    except ValidationError as e:
        errors.append(f"namespaceSelector: {e}")

    if not spec.resource_rules and not spec.non_resource_rules:
        errors.append("at least one resourceRule or nonResourceRule is required")
    for index, rule in enumerate(spec.resource_rules):
        if not rule.verbs:
            errors.append(f"resourceRules[{index}]: verbs must not be empty")
    for index, rule in enumerate(spec.non_resource_rules):
        if not rule.verbs:
            errors.append(f"nonResourceRules[{index}]: verbs must not be empty")
        if not rule.non_resource_urls:
            errors.append(f"nonResourceRules[{index}]: nonResourceURLs must not be empty")

    if not spec.allowed_principals:
        warnings.append("allowedPrincipals is empty; this authorizer can only deny")

    denied = {_principal_key(p) for p in spec.denied_principals}
    for principal in spec.allowed_principals:
        if _principal_key(principal) in denied:
            warnings.append(
                f"principal {principal.user or principal.groups} is both allowed and denied; denied takes precedence")

    for field_name, principals in (('allowedPrincipals', spec.allowed_principals),
                                   ('deniedPrincipals', spec.denied_principals)):
        for index, principal in enumerate(principals):
            if principal.namespace and not principal.user and not principal.groups:
                warnings.append(f"{field_name}[{index}]: namespace is set without user or groups and never matches")

    return errors, warnings


def _selector_error(errors: List[str]) -> Optional[str]:
    for error in errors:
        if error.startswith("namespaceSelector"):
            return error
    return None


def authorizer_conditions(spec: WebhookAuthorizerSpec, errors: List[str],
                          current: Optional[List[Dict[str, Any]]], generation: Optional[int]) -> List[Dict[str, Any]]:
    """
    Compute the status conditions of a WebhookAuthorizer

    Args:
        spec: Parsed spec
        errors: Validation errors
        current: Existing conditions
        generation: metadata.generation of the object

    Returns:
        New condition list
    """
    result = list(current or [])
    selector_error = _selector_error(errors)
    rule_errors = [e for e in errors if e is not selector_error]

    if rule_errors:
        result = conditions.mark_false(result, ConditionConstants.RULES_VALID, generation,
                                       ConditionConstants.REASON_INVALID_RULES,
                                       ConditionConstants.MESSAGE_INVALID_RULES.format(error="; ".join(rule_errors)))
    else:
        result = conditions.mark_true(result, ConditionConstants.RULES_VALID, generation,
                                      ConditionConstants.REASON_ALL_RULES_VALID,
                                      ConditionConstants.MESSAGE_RULES_VALID)

    if selector_error:
        result = conditions.mark_false(result, ConditionConstants.NAMESPACE_SELECTOR_VALID, generation,
                                       ConditionConstants.REASON_SELECTOR_INVALID,
                                       ConditionConstants.MESSAGE_INVALID_SELECTOR.format(error=selector_error))
    elif spec.namespace_selector is None or spec.namespace_selector.is_empty():
        result = conditions.mark_true(result, ConditionConstants.NAMESPACE_SELECTOR_VALID, generation,
                                      ConditionConstants.REASON_SELECTOR_EMPTY,
                                      ConditionConstants.MESSAGE_SELECTOR_EMPTY)
    else:
        result = conditions.mark_true(result, ConditionConstants.NAMESPACE_SELECTOR_VALID, generation,
                                      ConditionConstants.REASON_SELECTOR_VALID,
                                      ConditionConstants.MESSAGE_SELECTOR_VALID)

    if spec.allowed_principals or spec.denied_principals:
        result = conditions.mark_true(result, ConditionConstants.PRINCIPAL_CONFIGURED, generation,
                                      ConditionConstants.REASON_PRINCIPALS_CONFIGURED,
                                      ConditionConstants.MESSAGE_PRINCIPALS_CONFIGURED)
    else:
        result = conditions.mark_false(result, ConditionConstants.PRINCIPAL_CONFIGURED, generation,
                                       ConditionConstants.REASON_NO_PRINCIPALS,
                                       ConditionConstants.MESSAGE_NO_PRINCIPALS)

    if rule_errors:
        return conditions.mark_stalled(result, generation, ConditionConstants.MESSAGE_INVALID_RULES.format(
            error="; ".join(rule_errors)), reason=ConditionConstants.REASON_INVALID_RULES)
    if selector_error:
        return conditions.mark_stalled(result, generation, ConditionConstants.MESSAGE_INVALID_SELECTOR.format(
            error=selector_error), reason=ConditionConstants.REASON_INVALID_NAMESPACE_SELECTOR)
    return conditions.mark_ready(result, generation, reason=ConditionConstants.REASON_AUTHORIZER_READY,
                                 message=ConditionConstants.MESSAGE_AUTHORIZER_READY)
