"""
RoleDefinition driver.

kopf handlers that run the Role Engine, publish status conditions and
re-run the engine when the discovery snapshot moves.
"""

import copy
import logging
from typing import Any, Dict

import kopf

from ..core import conditions
from ..core.constants import ConditionConstants, EventReasons, KubernetesConstants, NetworkConstants
from ..core.exceptions import AuthOperatorError, ValidationError
from ..core.metrics import Result, record_result, track_reconcile
from .context import ROLE_DEFINITION, OperatorContext

logger = logging.getLogger(__name__)

GROUP = KubernetesConstants.AUTHORIZATION_API_GROUP
VERSION = KubernetesConstants.AUTHORIZATION_API_VERSION
PLURAL = KubernetesConstants.Plural.ROLE_DEFINITIONS.value

CONTROLLER = KubernetesConstants.Kind.ROLE_DEFINITION.value


def reconcile_role_definition(ctx: OperatorContext, body: Dict[str, Any], patch: Dict[str, Any],
                              retry: int = 0) -> None:
    """
    Run one reconciliation and record its outcome in ``patch['status']``

    Raises:
        kopf.PermanentError: Invalid template (Stalled)
        kopf.TemporaryError: Transient failure, retried with backoff
    """
    template = copy.deepcopy(dict(body))
    metadata = template.get('metadata') or {}
    name = metadata.get('name')
    generation = metadata.get('generation')
    current = list((template.get('status') or {}).get('conditions') or [])

    try:
        with track_reconcile(CONTROLLER):
            _, result = ctx.role_engine.reconcile(template)
    except ValidationError as e:
        logger.error(f"RoleDefinition {name} is invalid: {e}")
        patch['status'] = {
            'conditions': conditions.mark_stalled(current, generation, str(e)),
            'observedGeneration': generation,
            'roleReconciled': False,
        }
        raise kopf.PermanentError(str(e))
    except AuthOperatorError as e:
        patch['status'] = {
            'conditions': conditions.mark_error(current, generation, e),
            'observedGeneration': generation,
            'roleReconciled': False,
        }
        raise ctx.temporary_error(e, retry)

    updated = conditions.mark_true(current, ConditionConstants.FINALIZER, generation,
                                   ConditionConstants.REASON_FINALIZER, ConditionConstants.MESSAGE_FINALIZER)
    updated = conditions.mark_true(updated, ConditionConstants.CREATED, generation,
                                   ConditionConstants.REASON_CREATE, ConditionConstants.MESSAGE_CREATE)
    updated = conditions.mark_true(updated, ConditionConstants.API_GROUP_FILTERED, generation,
                                   ConditionConstants.REASON_FILTERING,
                                   ConditionConstants.MESSAGE_API_FILTERED.format(count=result.filtered_groups))
    updated = conditions.mark_true(updated, ConditionConstants.RESOURCE_FILTERED, generation,
                                   ConditionConstants.REASON_FILTERING,
                                   ConditionConstants.MESSAGE_RESOURCE_FILTERED.format(count=result.filtered_resources))
    updated = conditions.mark_ready(updated, generation)

    patch['status'] = {
        'conditions': updated,
        'observedGeneration': generation,
        'roleReconciled': True,
    }
    ctx.applied_generations[name] = result.snapshot_generation

    if result.action != "unchanged":
        reason = EventReasons.CREATE if result.action == "created" else EventReasons.UPDATE
        kopf.info(body, reason=reason,
                  message=f"{result.action.capitalize()} {template['spec'].get('targetRole')} "
                          f"{template['spec'].get('targetName')} with {result.rule_count} rules")


@kopf.on.resume(GROUP, VERSION, PLURAL)
@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL)
def role_definition_changed(body, name: str, meta, patch, memo, retry: int = 0, **_):
    """Reconcile a created, updated or resumed RoleDefinition"""
    if meta.get('deletionTimestamp'):
        record_result(CONTROLLER, Result.SKIPPED)
        return
    ctx: OperatorContext = memo.context
    with ctx.serialized(ROLE_DEFINITION, name):
        reconcile_role_definition(ctx, body, patch, retry)


@kopf.timer(GROUP, VERSION, PLURAL, interval=NetworkConstants.TIMER_TICK,
            initial_delay=NetworkConstants.TIMER_TICK)
def role_definition_discovery_check(body, name: str, meta, patch, memo, retry: int = 0, **_):
    """Regenerate the role when the discovery snapshot changed since the last pass"""
    if meta.get('deletionTimestamp'):
        return
    ctx: OperatorContext = memo.context
    if not ctx.discovery_cache.is_ready():
        return
    if ctx.applied_generations.get(name) == ctx.discovery_cache.generation:
        return
    logger.info(f"Discovery changed, regenerating role of RoleDefinition {name}")
    with ctx.serialized(ROLE_DEFINITION, name):
        reconcile_role_definition(ctx, body, patch, retry)


@kopf.on.delete(GROUP, VERSION, PLURAL, optional=True)
def role_definition_deleted(body, name: str, memo, retry: int = 0, **_):
    """Delete the generated role and release the finalizer"""
    ctx: OperatorContext = memo.context
    with ctx.serialized(ROLE_DEFINITION, name):
        try:
            with track_reconcile(CONTROLLER, success=Result.FINALIZED):
                deleted = ctx.role_engine.reconcile_delete(copy.deepcopy(dict(body)))
        except AuthOperatorError as e:
            raise ctx.temporary_error(e, retry)
    ctx.forget(ROLE_DEFINITION, name)
    logger.info(f"RoleDefinition {name} cleaned up ({len(deleted)} roles deleted)")
