"""
BindDefinition driver.

kopf handlers that run the Binding Engine, publish the status payload and
conditions, and re-trigger reconciliation when referenced roles appear or
disappear.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

import kopf

from ..core import conditions
from ..core.constants import ConditionConstants, EventReasons, KubernetesConstants, NetworkConstants
from ..core.data_models import BindDefinitionSpec, from_dict
from ..core.exceptions import AuthOperatorError, PartialApplyError, ValidationError
from ..core.metrics import Result, record_result, track_reconcile
from ..core.selectors import selector_matches
from ..core.utils import utc_now
from .context import BIND_DEFINITION, OperatorContext

logger = logging.getLogger(__name__)

GROUP = KubernetesConstants.AUTHORIZATION_API_GROUP
VERSION = KubernetesConstants.AUTHORIZATION_API_VERSION
PLURAL = KubernetesConstants.Plural.BIND_DEFINITIONS.value
RBAC_GROUP = KubernetesConstants.RBAC_API_GROUP
RBAC_VERSION = KubernetesConstants.RBAC_API_VERSION

Kind = KubernetesConstants.Kind

CONTROLLER = Kind.BIND_DEFINITION.value


def _role_ref_conditions(current: List[Dict[str, Any]], generation, missing: List[str]) -> List[Dict[str, Any]]:
    if missing:
        return conditions.mark_false(current, ConditionConstants.ROLE_REFS_VALID, generation,
                                     ConditionConstants.REASON_ROLE_REF_NOT_FOUND,
                                     ConditionConstants.MESSAGE_ROLE_REFS_MISSING.format(refs=", ".join(missing)))
    return conditions.mark_true(current, ConditionConstants.ROLE_REFS_VALID, generation,
                                ConditionConstants.REASON_ROLE_REF_VALID,
                                ConditionConstants.MESSAGE_ROLE_REFS_VALID)


def reconcile_bind_definition(ctx: OperatorContext, body: Dict[str, Any], patch: Dict[str, Any],
                              retry: int = 0) -> None:
    """
    Run one reconciliation and record its outcome in ``patch['status']``

    Raises:
        kopf.PermanentError: Invalid template (Stalled)
        kopf.TemporaryError: Transient or partial failure, retried with backoff
    """
    template = copy.deepcopy(dict(body))
    metadata = template.get('metadata') or {}
    name = metadata.get('name')
    generation = metadata.get('generation')
    current = list((template.get('status') or {}).get('conditions') or [])

    try:
        with track_reconcile(CONTROLLER):
            result = ctx.binding_engine.reconcile(template)
    except ValidationError as e:
        logger.error(f"BindDefinition {name} is invalid: {e}")
        patch['status'] = {
            'conditions': conditions.mark_stalled(current, generation, str(e)),
            'observedGeneration': generation,
            'bindReconciled': False,
        }
        raise kopf.PermanentError(str(e))
    except PartialApplyError as e:
        status = e.result.to_status() if e.result is not None else {'bindReconciled': False}
        updated = current
        if e.result is not None:
            updated = _role_ref_conditions(updated, generation, e.result.missing_role_refs)
        status['conditions'] = conditions.mark_error(updated, generation, e)
        status['observedGeneration'] = generation
        patch['status'] = status
        raise ctx.temporary_error(e, retry)
    except AuthOperatorError as e:
        patch['status'] = {
            'conditions': conditions.mark_error(current, generation, e),
            'observedGeneration': generation,
            'bindReconciled': False,
        }
        raise ctx.temporary_error(e, retry)

    updated = conditions.mark_true(current, ConditionConstants.FINALIZER, generation,
                                   ConditionConstants.REASON_FINALIZER, ConditionConstants.MESSAGE_FINALIZER)
    updated = conditions.mark_true(updated, ConditionConstants.CREATED, generation,
                                   ConditionConstants.REASON_CREATE, ConditionConstants.MESSAGE_CREATE)
    updated = _role_ref_conditions(updated, generation, result.missing_role_refs)
    updated = conditions.mark_ready(updated, generation)

    status = result.to_status()
    status['conditions'] = updated
    status['observedGeneration'] = generation
    patch['status'] = status

    if result.missing_role_refs:
        kopf.warn(body, reason=EventReasons.ROLE_REF_NOT_FOUND,
                  message=f"Missing role references: {', '.join(result.missing_role_refs)}")
    if result.applied or result.pruned:
        kopf.info(body, reason=EventReasons.RECONCILED,
                  message=f"Applied {len(result.applied)} and pruned {len(result.pruned)} bindings")


def referencing_bind_definitions(bind_definitions: List[Dict[str, Any]], role_kind: str,
                                 role_name: str, only_missing: bool = False) -> List[str]:
    """
    Names of BindDefinitions that reference a role

    Args:
        bind_definitions: BindDefinition objects
        role_kind: "ClusterRole" or "Role"
        role_name: Role name
        only_missing: Only those currently reporting the role as missing

    Returns:
        Sorted list of BindDefinition names
    """
    names = []
    for bind_definition in bind_definitions:
        metadata = bind_definition.get('metadata') or {}
        if metadata.get('deletionTimestamp'):
            continue
        try:
            spec = from_dict(BindDefinitionSpec, bind_definition.get('spec') or {})
        except ValidationError:
            continue

        if role_kind == Kind.CLUSTER_ROLE.value:
            refs = set(spec.cluster_role_bindings.cluster_role_refs)
            for group in spec.role_bindings:
                refs.update(group.cluster_role_refs)
        else:
            refs = {ref for group in spec.role_bindings for ref in group.role_refs}
        if role_name not in refs:
            continue

        if only_missing:
            missing = (bind_definition.get('status') or {}).get('missingRoleRefs') or []
            prefix = f"{role_kind}/"
            if not any(ref.startswith(prefix) and ref.split('/')[-1] == role_name for ref in missing):
                continue
        names.append(metadata.get('name'))
    return sorted(names)


def namespace_bind_definitions(bind_definitions: List[Dict[str, Any]], namespace: str,
                               label_sets: List[Optional[Dict[str, str]]]) -> List[str]:
    """
    Names of BindDefinitions whose RoleBindings may target a namespace

    A BindDefinition matches when a roleBindings entry names the namespace
    or has a selector matching any of the given label sets. Passing the old
    and the new labels of a relabelled namespace catches both the bindings
    it gains and those it loses.

    Returns:
        Sorted list of BindDefinition names
    """
    names = []
    for bind_definition in bind_definitions:
        metadata = bind_definition.get('metadata') or {}
        if metadata.get('deletionTimestamp'):
            continue
        try:
            spec = from_dict(BindDefinitionSpec, bind_definition.get('spec') or {})
            matched = any(
                namespace in group.explicit_namespaces()
                or any(selector_matches(selector, labels)
                       for selector in group.namespace_selector for labels in label_sets)
                for group in spec.role_bindings
            )
        except ValidationError:
            continue
        if matched:
            names.append(metadata.get('name'))
    return sorted(names)


def touch_bind_definitions(ctx: OperatorContext, names: List[str]) -> None:
    """Annotate BindDefinitions so that kopf delivers an update to each of them"""
    for name in names:
        try:
            ctx.client.patch_declared(PLURAL, name, {'metadata': {'annotations': {
                KubernetesConstants.RECONCILE_TRIGGER_ANNOTATION: utc_now(),
            }}})
            logger.debug(f"Triggered reconciliation of BindDefinition {name}")
        except AuthOperatorError as e:
            logger.warning(f"Could not trigger reconciliation of BindDefinition {name}: {e}")


def role_event(ctx: OperatorContext, event: Dict[str, Any], role_kind: str) -> None:
    event_type = event.get('type')
    if event_type not in ('ADDED', 'DELETED'):
        return
    role_name = ((event.get('object') or {}).get('metadata') or {}).get('name')
    if not role_name:
        return
    try:
        bind_definitions = ctx.client.list_declared(PLURAL)
    except AuthOperatorError as e:
        logger.warning(f"Could not list BindDefinitions for {role_kind} {role_name}: {e}")
        return
    names = referencing_bind_definitions(bind_definitions, role_kind, role_name,
                                         only_missing=(event_type == 'ADDED'))
    if names:
        logger.info(f"{role_kind} {role_name} {event_type.lower()}, re-reconciling BindDefinitions: "
                    f"{', '.join(names)}")
        touch_bind_definitions(ctx, names)


@kopf.on.resume(GROUP, VERSION, PLURAL)
@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL)
def bind_definition_changed(body, name: str, meta, patch, memo, retry: int = 0, **_):
    """Reconcile a created, updated, resumed or re-triggered BindDefinition"""
    if meta.get('deletionTimestamp'):
        record_result(CONTROLLER, Result.SKIPPED)
        return
    ctx: OperatorContext = memo.context
    with ctx.serialized(BIND_DEFINITION, name):
        reconcile_bind_definition(ctx, body, patch, retry)


@kopf.timer(GROUP, VERSION, PLURAL, interval=NetworkConstants.TIMER_TICK,
            initial_delay=NetworkConstants.TIMER_TICK)
def bind_definition_resync(body, name: str, meta, patch, memo, retry: int = 0, **_):
    """Periodic fallback reconciliation every controllers.resync_interval seconds"""
    if meta.get('deletionTimestamp'):
        return
    ctx: OperatorContext = memo.context
    if not ctx.timer_due(BIND_DEFINITION, name, ctx.resync_interval):
        return
    with ctx.serialized(BIND_DEFINITION, name):
        reconcile_bind_definition(ctx, body, patch, retry)


@kopf.on.delete(GROUP, VERSION, PLURAL, optional=True)
def bind_definition_deleted(body, name: str, memo, retry: int = 0, **_):
    """Delete owned bindings, release subjects and the finalizer"""
    ctx: OperatorContext = memo.context
    with ctx.serialized(BIND_DEFINITION, name):
        try:
            with track_reconcile(CONTROLLER, success=Result.FINALIZED):
                deleted = ctx.binding_engine.reconcile_delete(copy.deepcopy(dict(body)))
        except AuthOperatorError as e:
            raise ctx.temporary_error(e, retry)
    ctx.forget(BIND_DEFINITION, name)
    kopf.info(body, reason=EventReasons.DELETION, message=f"Deleted {len(deleted)} bindings")
    logger.info(f"BindDefinition {name} cleaned up ({len(deleted)} bindings deleted)")


@kopf.on.event(RBAC_GROUP, RBAC_VERSION, 'clusterroles')
def cluster_role_event(event, memo, **_):
    role_event(memo.context, event, Kind.CLUSTER_ROLE.value)


@kopf.on.event(RBAC_GROUP, RBAC_VERSION, 'roles')
def role_event_handler(event, memo, **_):
    role_event(memo.context, event, Kind.ROLE.value)
