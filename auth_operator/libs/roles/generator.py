"""
Rule Generator

Expands a RoleDefinition spec against a discovery snapshot into a sorted,
deterministic list of RBAC policy rules.
"""

import logging
from typing import Any, Dict, List, NamedTuple, Set, Tuple

from ..core.constants import KubernetesConstants
from ..core.data_models import RoleDefinitionSpec
from ..discovery.cache import DiscoverySnapshot

logger = logging.getLogger(__name__)

METRICS_PATH = "/metrics"


class GenerationResult(NamedTuple):
    """Generated rules plus what the restrictions removed"""
    rules: List[Dict[str, Any]]
    filtered_groups: int
    filtered_resources: int


class RuleGenerator:
    """Pure expansion of a role template into rules"""

    def generate(self, spec: RoleDefinitionSpec, snapshot: DiscoverySnapshot) -> GenerationResult:
        """
        Generate the rules of the target role

        Args:
            spec: RoleDefinition spec
            snapshot: Discovery snapshot to expand against

        Returns:
            GenerationResult with rules sorted for byte-identical output
        """
        candidates = snapshot.namespaced_resources() if spec.scope_namespaced else snapshot.resources

        restricted_groups = {api.name for api in spec.restricted_apis}
        restricted_verbs = set(spec.restricted_verbs)

        # (group, resource) -> verbs; a resource reported under both scopes is merged
        allowed: Dict[Tuple[str, str], Set[str]] = {}
        removed_groups: Set[str] = set()
        removed_resources = 0

        for discovered in candidates:
            if discovered.group in restricted_groups:
                removed_groups.add(discovered.group)
                continue
            if self._is_restricted_resource(spec, discovered.group, discovered.resource):
                removed_resources += 1
                continue
            verbs = {verb for verb in discovered.verbs if verb not in restricted_verbs}
            if not verbs:
                continue
            allowed.setdefault((discovered.group, discovered.resource), set()).update(verbs)

        rules = self._collapse(allowed)

        if spec.is_cluster_role and KubernetesConstants.RBACVerb.GET.value not in restricted_verbs:
            rules.append({
                'nonResourceURLs': [METRICS_PATH],
                'verbs': [KubernetesConstants.RBACVerb.GET.value],
            })

        rules.sort(key=self._sort_key)
        logger.debug(f"Generated {len(rules)} rules for {spec.target_role} {spec.target_name}")
        return GenerationResult(rules=rules, filtered_groups=len(removed_groups),
                                filtered_resources=removed_resources)

    @staticmethod
    def _is_restricted_resource(spec: RoleDefinitionSpec, group: str, resource: str) -> bool:
        for restricted in spec.restricted_resources:
            if restricted.name != resource:
                continue
            if restricted.group is None or restricted.group == group:
                return True
        return False

    @staticmethod
    def _collapse(allowed: Dict[Tuple[str, str], Set[str]]) -> List[Dict[str, Any]]:
        """One rule per (group, verb set), listing every resource sharing it"""
        grouped: Dict[Tuple[str, Tuple[str, ...]], List[str]] = {}
        for (group, resource), verbs in allowed.items():
            grouped.setdefault((group, tuple(sorted(verbs))), []).append(resource)

        return [
            {
                'apiGroups': [group],
                'resources': sorted(resources),
                'verbs': list(verbs),
            }
            for (group, verbs), resources in grouped.items()
        ]

    @staticmethod
    def _sort_key(rule: Dict[str, Any]) -> Tuple[str, str, str, str]:
        return (
            ",".join(rule.get('apiGroups', [])),
            ",".join(rule.get('verbs', [])),
            ",".join(rule.get('resources', [])),
            ",".join(rule.get('nonResourceURLs', [])),
        )
