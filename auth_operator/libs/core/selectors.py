"""
Label Selectors

Parsing and matching of Kubernetes label selectors, used for namespace
selection by the Binding Engine and for namespace scoping by the Decision
Engine.
"""

from typing import Dict, Optional

from .data_models import LabelSelector
from .exceptions import ValidationError

_VALUE_OPERATORS = ('In', 'NotIn')
_EXISTENCE_OPERATORS = ('Exists', 'DoesNotExist')


def validate_selector(selector: Optional[LabelSelector]) -> None:
    """
    Check that a selector can be evaluated.

    Raises:
        ValidationError: On unknown operators or operator/value mismatches
    """
    if selector is None:
        return
    for index, requirement in enumerate(selector.match_expressions):
        if not requirement.key:
            raise ValidationError(f"matchExpressions[{index}]: key must not be empty")
        if requirement.operator in _VALUE_OPERATORS:
            if not requirement.values:
                raise ValidationError(
                    f"matchExpressions[{index}]: operator {requirement.operator} requires at least one value"
                )
        elif requirement.operator in _EXISTENCE_OPERATORS:
            if requirement.values:
                raise ValidationError(
                    f"matchExpressions[{index}]: operator {requirement.operator} must not have values"
                )
        else:
            raise ValidationError(
                f"matchExpressions[{index}]: unsupported operator {requirement.operator!r}"
            )


def selector_matches(selector: Optional[LabelSelector], labels: Optional[Dict[str, str]]) -> bool:
    """
    Evaluate a selector against a label set.

    An empty selector matches everything; matchLabels and matchExpressions
    are ANDed together.

    Args:
        selector: Selector to evaluate
        labels: Labels of the object

    Returns:
        bool: True if the labels satisfy the selector
    """
    if selector is None or selector.is_empty():
        return True
    labels = labels or {}

    for key, value in selector.match_labels.items():
        if labels.get(key) != value:
            return False

    for requirement in selector.match_expressions:
        present = requirement.key in labels
        if requirement.operator == 'In':
            if not present or labels[requirement.key] not in requirement.values:
                return False
        elif requirement.operator == 'NotIn':
            if present and labels[requirement.key] in requirement.values:
                return False
        elif requirement.operator == 'Exists':
            if not present:
                return False
        elif requirement.operator == 'DoesNotExist':
            if present:
                return False
        else:
            raise ValidationError(f"unsupported selector operator {requirement.operator!r}")
    return True


def selector_to_string(selector: Optional[LabelSelector]) -> str:
    """
    Render a selector in the API server's label selector query syntax.

    Returns:
        str: e.g. ``env=prod,tier in (a,b),!legacy``
    """
    if selector is None:
        return ""
    parts = [f"{key}={value}" for key, value in sorted(selector.match_labels.items())]
    for requirement in selector.match_expressions:
        values = ",".join(sorted(requirement.values))
        if requirement.operator == 'In':
            parts.append(f"{requirement.key} in ({values})")
        elif requirement.operator == 'NotIn':
            parts.append(f"{requirement.key} notin ({values})")
        elif requirement.operator == 'Exists':
            parts.append(requirement.key)
        elif requirement.operator == 'DoesNotExist':
            parts.append(f"!{requirement.key}")
        else:
            raise ValidationError(f"unsupported selector operator {requirement.operator!r}")
    return ",".join(parts)
