"""
Operator lifecycle handlers: settings, startup priming, shutdown and health checks.
"""

import logging

import kopf

from ..core.constants import KubernetesConstants
from ..core.exceptions import AuthOperatorError
from .context import BIND_DEFINITION, ROLE_DEFINITION, WEBHOOK_AUTHORIZER, OperatorContext
from .webhookauthorizer import index_webhook_authorizer

logger = logging.getLogger(__name__)


def prime_indexes(ctx: OperatorContext) -> None:
    """
    Load every WebhookAuthorizer and namespace before serving decisions

    The watch handlers keep both indexes current afterwards.

    Raises:
        AuthOperatorError: If either list cannot be read
    """
    for namespace in ctx.client.list_namespaces():
        metadata = namespace.get('metadata') or {}
        ctx.namespace_index.upsert(metadata['name'], metadata.get('labels'))

    indexed = 0
    for obj in ctx.client.list_declared(KubernetesConstants.Plural.WEBHOOK_AUTHORIZERS):
        if index_webhook_authorizer(ctx, obj):
            indexed += 1
    ctx.policy_index.mark_synced()
    logger.info(f"Indexed {len(ctx.namespace_index)} namespaces and {indexed} WebhookAuthorizers")



def configure_storage(settings: kopf.OperatorSettings) -> None:
    """
    Keep kopf state in annotations under its own prefix

    Annotations under the storage prefix are invisible to kopf's change
    detection, so the reconcile trigger must live outside it.
    """
    prefix = KubernetesConstants.KOPF_ANNOTATION_PREFIX
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=prefix)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=prefix)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo, **_):
    """Configure kopf and start the discovery cache"""
    ctx: OperatorContext = memo.context

    settings.execution.max_workers = sum(
        ctx.concurrency(kind) for kind in (ROLE_DEFINITION, BIND_DEFINITION, WEBHOOK_AUTHORIZER)) + 2
    settings.posting.level = logging.INFO
    configure_storage(settings)

    try:
        ctx.discovery_cache.refresh()
    except AuthOperatorError as e:
        logger.warning(f"Initial discovery failed, the background refresh will retry: {e}")
    ctx.discovery_cache.start()

    try:
        prime_indexes(ctx)
    except AuthOperatorError as e:
        raise kopf.TemporaryError(f"Could not prime the policy index: {e}", delay=5)

    logger.info("auth-operator started")


@kopf.on.cleanup()
def cleanup(memo, **_):
    ctx: OperatorContext = memo.context
    ctx.discovery_cache.stop()
    logger.info("auth-operator stopped")


@kopf.on.probe(id='discovery')
def discovery_status(memo, **_):
    ctx: OperatorContext = memo.context
    return {
        'ready': ctx.discovery_cache.is_ready(),
        'generation': ctx.discovery_cache.generation,
    }


@kopf.on.probe(id='policies')
def policy_status(memo, **_):
    ctx: OperatorContext = memo.context
    return {
        'synced': ctx.policy_index.is_synced(),
        'count': len(ctx.policy_index),
    }
