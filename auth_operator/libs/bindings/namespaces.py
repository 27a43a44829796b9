"""
Namespace resolution for namespace-scope binding groups.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.constants import KubernetesConstants
from ..core.data_models import RoleBindingGroup
from ..core.selectors import selector_matches, selector_to_string, validate_selector

logger = logging.getLogger(__name__)


def is_terminating(namespace: Optional[Dict[str, Any]]) -> bool:
    if not namespace:
        return False
    phase = (namespace.get('status') or {}).get('phase')
    return phase == KubernetesConstants.NAMESPACE_PHASE_TERMINATING or \
        bool((namespace.get('metadata') or {}).get('deletionTimestamp'))


class NamespaceResolver:
    """Resolves explicit namespaces and label selectors to live namespaces"""

    def __init__(self, cluster_client):
        self.client = cluster_client

    def resolve(self, group: RoleBindingGroup) -> List[str]:
        """
        Resolve the namespaces a binding group applies to

        The result is the union of the explicit names and the matches of every
        selector. Terminating namespaces and explicit names that do not exist
        are skipped.

        Args:
            group: Namespace-scope binding group

        Returns:
            Sorted list of namespace names

        Raises:
            ValidationError: If a selector cannot be evaluated
        """
        resolved = set()

        for name in group.explicit_namespaces():
            namespace = self.client.get_namespace(name)
            if namespace is None:
                logger.info(f"Skipping namespace {name}: it does not exist")
                continue
            if is_terminating(namespace):
                logger.info(f"Skipping namespace {name}: it is terminating")
                continue
            resolved.add(name)

        for selector in group.namespace_selector:
            validate_selector(selector)
            for namespace in self.client.list_namespaces(label_selector=selector_to_string(selector) or None):
                metadata = namespace.get('metadata') or {}
                if not selector_matches(selector, metadata.get('labels')):
                    continue
                if is_terminating(namespace):
                    logger.debug(f"Skipping terminating namespace {metadata.get('name')}")
                    continue
                resolved.add(metadata['name'])

        return sorted(resolved)
