"""
Namespace driver.

Keeps the namespace label index current for namespace-scoped policies and
re-triggers the BindDefinitions whose RoleBindings a new or relabelled
namespace gains or loses.
"""

import logging
from typing import Any, Dict

import kopf

from ..core.exceptions import AuthOperatorError
from .binddefinition import PLURAL, namespace_bind_definitions, touch_bind_definitions
from .context import OperatorContext

logger = logging.getLogger(__name__)


def namespace_changed(ctx: OperatorContext, event: Dict[str, Any]) -> None:
    """
    Apply one namespace watch event

    Events of the initial listing (type None) only fill the index; the
    BindDefinitions are reconciled on resume anyway.
    """
    event_type = event.get('type')
    metadata = (event.get('object') or {}).get('metadata') or {}
    name = metadata.get('name')
    if not name:
        return

    if event_type == 'DELETED':
        ctx.namespace_index.remove(name)
        return

    previous = ctx.namespace_index.labels(name)
    labels = dict(metadata.get('labels') or {})
    ctx.namespace_index.upsert(name, labels)

    if event_type == 'ADDED':
        label_sets = [labels]
    elif event_type == 'MODIFIED' and previous is not None and dict(previous) != labels:
        label_sets = [dict(previous), labels]
    else:
        return

    try:
        bind_definitions = ctx.client.list_declared(PLURAL)
    except AuthOperatorError as e:
        logger.warning(f"Could not list BindDefinitions for namespace {name}: {e}")
        return
    names = namespace_bind_definitions(bind_definitions, name, label_sets)
    if names:
        logger.info(f"Namespace {name} {event_type.lower()}, re-reconciling BindDefinitions: {', '.join(names)}")
        touch_bind_definitions(ctx, names)


@kopf.on.event('namespaces')
def namespace_event(event, memo, **_):
    namespace_changed(memo.context, event)
