"""
Status Conditions

Helpers for the ``status.conditions`` list of the declared objects.
Conditions are plain dicts (type, status, reason, message,
lastTransitionTime, observedGeneration) so that they can be patched
straight into a status subresource.

The kstatus helpers follow the "abnormal-true" convention: Reconciling and
Stalled are only present while they are True.
"""

from typing import Any, Dict, List, Optional

from .constants import ConditionConstants
from .utils import utc_now

Condition = Dict[str, Any]


def new_condition(condition_type: str, status: str, reason: str, message: str,
                  generation: Optional[int] = None) -> Condition:
    """
    Build a condition dict without a transition time.

    Args:
        condition_type: Condition type (e.g. "Ready")
        status: "True", "False" or "Unknown"
        reason: CamelCase reason
        message: Human-readable message
        generation: Observed generation of the object

    Returns:
        Condition dict
    """
    condition = {
        'type': condition_type,
        'status': status,
        'reason': reason,
        'message': message,
    }
    if generation is not None:
        condition['observedGeneration'] = generation
    return condition


def _same_state(existing: Condition, condition: Condition) -> bool:
    return all(
        existing.get(key) == condition.get(key)
        for key in ('type', 'status', 'reason', 'message', 'observedGeneration')
    )


def get_condition(conditions: Optional[List[Condition]], condition_type: str) -> Optional[Condition]:
    """Return the condition with the given type, or None"""
    for condition in conditions or []:
        if condition.get('type') == condition_type:
            return condition
    return None


def is_true(conditions: Optional[List[Condition]], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.get('status') == ConditionConstants.STATUS_TRUE


def set_condition(conditions: Optional[List[Condition]], condition: Condition) -> List[Condition]:
    """
    Set or update a condition, returning a new list.

    lastTransitionTime is kept when the condition state is unchanged and
    refreshed whenever any of status, reason, message or generation moves.

    Args:
        conditions: Current conditions (not modified)
        condition: Condition to set

    Returns:
        New list of conditions
    """
    result = []
    found = False
    for existing in conditions or []:
        if existing.get('type') != condition.get('type'):
            result.append(dict(existing))
            continue
        found = True
        updated = dict(condition)
        if _same_state(existing, condition) and existing.get('lastTransitionTime'):
            updated['lastTransitionTime'] = existing['lastTransitionTime']
        else:
            updated['lastTransitionTime'] = utc_now()
        result.append(updated)

    if not found:
        added = dict(condition)
        added.setdefault('lastTransitionTime', utc_now())
        result.append(added)
    return result


def remove_condition(conditions: Optional[List[Condition]], condition_type: str) -> List[Condition]:
    """Return a new list without the condition of the given type"""
    return [dict(c) for c in conditions or [] if c.get('type') != condition_type]


def mark_true(conditions, condition_type, generation, reason, message) -> List[Condition]:
    return set_condition(conditions, new_condition(
        condition_type, ConditionConstants.STATUS_TRUE, reason, message, generation))


def mark_false(conditions, condition_type, generation, reason, message) -> List[Condition]:
    return set_condition(conditions, new_condition(
        condition_type, ConditionConstants.STATUS_FALSE, reason, message, generation))


def mark_ready(conditions, generation, reason=ConditionConstants.REASON_RECONCILED,
               message=ConditionConstants.MESSAGE_RECONCILED) -> List[Condition]:
    """Set Ready=True and drop Reconciling/Stalled"""
    result = mark_true(conditions, ConditionConstants.READY, generation, reason, message)
    result = remove_condition(result, ConditionConstants.RECONCILING)
    return remove_condition(result, ConditionConstants.STALLED)


def mark_reconciling(conditions, generation, reason=ConditionConstants.REASON_PROGRESSING,
                     message=ConditionConstants.MESSAGE_PROGRESSING) -> List[Condition]:
    """Set Reconciling=True, Ready=False and drop Stalled"""
    result = mark_true(conditions, ConditionConstants.RECONCILING, generation, reason, message)
    result = mark_false(result, ConditionConstants.READY, generation, reason, message)
    return remove_condition(result, ConditionConstants.STALLED)


def mark_stalled(conditions, generation, message: str,
                 reason=ConditionConstants.REASON_INVALID_SPEC) -> List[Condition]:
    """Set Stalled=True, Ready=False and drop Reconciling"""
    result = mark_true(conditions, ConditionConstants.STALLED, generation, reason, message)
    result = mark_false(result, ConditionConstants.READY, generation, reason, message)
    return remove_condition(result, ConditionConstants.RECONCILING)


def mark_error(conditions, generation, error: Exception) -> List[Condition]:
    """Set Ready=False for a transient error; the object stays Reconciling"""
    message = ConditionConstants.MESSAGE_ERROR.format(error=error)
    result = mark_false(conditions, ConditionConstants.READY, generation,
                        ConditionConstants.REASON_ERROR, message)
    return mark_true(result, ConditionConstants.RECONCILING, generation,
                     ConditionConstants.REASON_ERROR, message)
