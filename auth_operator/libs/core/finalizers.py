"""
Finalizer helpers for the declared kinds.

Finalizers are written with a merge patch that carries the object's
resourceVersion, so a concurrent change to the finalizer list fails with a
conflict (a TransientError) instead of overwriting another controller's entry.
"""

import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def has_finalizer(obj: Dict[str, Any], finalizer: str) -> bool:
    return finalizer in ((obj.get('metadata') or {}).get('finalizers') or [])


def _patch_finalizers(cluster_client, plural: str, obj: Dict[str, Any], finalizers: List[str]) -> None:
    metadata = obj['metadata']
    patch = {'metadata': {'finalizers': finalizers}}
    if metadata.get('resourceVersion'):
        patch['metadata']['resourceVersion'] = metadata['resourceVersion']
    cluster_client.patch_declared(plural, metadata['name'], patch)


def ensure_finalizer(cluster_client, plural: str, obj: Dict[str, Any], finalizer: str) -> bool:
    """
    Add a finalizer if missing

    Returns:
        bool: True if the finalizer was added by this call
    """
    if has_finalizer(obj, finalizer):
        return False
    finalizers = list((obj.get('metadata') or {}).get('finalizers') or []) + [finalizer]
    _patch_finalizers(cluster_client, plural, obj, finalizers)
    logger.info(f"Added finalizer {finalizer} to {plural}/{obj['metadata']['name']}")
    return True


def remove_finalizer(cluster_client, plural: str, obj: Dict[str, Any], finalizer: str) -> bool:
    """
    Remove a finalizer, leaving every other entry in place

    Returns:
        bool: True if the finalizer was removed by this call
    """
    if not has_finalizer(obj, finalizer):
        return False
    finalizers = [f for f in obj['metadata']['finalizers'] if f != finalizer]
    _patch_finalizers(cluster_client, plural, obj, finalizers)
    logger.info(f"Removed finalizer {finalizer} from {plural}/{obj['metadata']['name']}")
    return True
