"""
Role Engine

Reconciles a RoleDefinition into exactly one ClusterRole or Role whose rules
are regenerated from the current discovery snapshot on every pass.
"""

import logging
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from ..core.constants import ErrorMessages, KubernetesConstants
from ..core.data_models import RoleDefinitionSpec, from_dict
from ..core.exceptions import NotManagedError, ValidationError
from ..core.finalizers import ensure_finalizer, remove_finalizer
from ..core.manifests import ManifestTemplates, is_managed, is_owned_by
from ..core.metrics import record_rbac_change
from ..core.utils import validate_namespace, validate_target_name
from .generator import RuleGenerator

logger = logging.getLogger(__name__)

Kind = KubernetesConstants.Kind


class RoleResult(NamedTuple):
    """Outcome of one role reconciliation"""
    action: str
    rule_count: int
    filtered_groups: int
    filtered_resources: int
    snapshot_generation: int
    finalizer_added: bool = False


def parse_role_definition(template: Dict[str, Any]) -> RoleDefinitionSpec:
    """
    Parse and validate a RoleDefinition spec

    Raises:
        ValidationError: If the spec is malformed or self-contradictory
    """
    spec = from_dict(RoleDefinitionSpec, template.get('spec') or {})

    if spec.target_role not in [k.value for k in Kind.get_role_kinds()]:
        raise ValidationError(f"targetRole must be ClusterRole or Role, got {spec.target_role!r}")
    validate_target_name(spec.target_name)

    if spec.is_cluster_role:
        if spec.target_namespace:
            raise ValidationError("targetNamespace must not be set when targetRole is ClusterRole")
    else:
        if not spec.target_namespace:
            raise ValidationError("targetNamespace is required when targetRole is Role")
        validate_namespace(spec.target_namespace)
        if not spec.scope_namespaced:
            raise ValidationError("a Role cannot grant cluster-scoped resources; set scopeNamespaced to true")

    for restricted in spec.restricted_resources:
        if not restricted.name:
            raise ValidationError("restrictedResources entries require a name")
    return spec


class RoleEngine:
    """Generates and applies the role of a RoleDefinition"""

    def __init__(self, cluster_client, discovery_cache, generator: Optional[RuleGenerator] = None):
        """
        Initialize the role engine

        Args:
            cluster_client: ClusterClient (or compatible) for API access
            discovery_cache: DiscoveryCache providing snapshots
            generator: Rule generator (defaults to RuleGenerator)
        """
        self.client = cluster_client
        self.discovery_cache = discovery_cache
        self.generator = generator or RuleGenerator()

    def build_role(self, template: Dict[str, Any]) -> Tuple[Dict[str, Any], Any, int]:
        """
        Build the desired role without touching the cluster

        Returns:
            Tuple of (role manifest, GenerationResult, snapshot generation)

        Raises:
            ValidationError: Malformed template
            DiscoveryNotReadyError: No usable snapshot yet
        """
        spec = parse_role_definition(template)
        self._check_duplicate_target(template, spec)
        snapshot = self.discovery_cache.require_snapshot()
        generated = self.generator.generate(spec, snapshot)
        role = ManifestTemplates.role_template(
            template, spec.target_role, spec.target_name, generated.rules,
            namespace=spec.target_namespace or None,
        )
        return role, generated, snapshot.generation

    def reconcile(self, template: Dict[str, Any]) -> Tuple[Dict[str, Any], RoleResult]:
        """
        Create or update the generated role

        Args:
            template: RoleDefinition object

        Returns:
            Tuple of (applied role, RoleResult)

        Raises:
            ValidationError: Malformed template
            NotManagedError: Target name taken by a role we do not manage
            TransientError: API or discovery failures
        """
        role, generated, generation = self.build_role(template)
        finalizer_added = ensure_finalizer(
            self.client, KubernetesConstants.Plural.ROLE_DEFINITIONS, template,
            KubernetesConstants.ROLE_DEFINITION_FINALIZER,
        )

        kind = role['kind']
        name = role['metadata']['name']
        namespace = role['metadata'].get('namespace')

        existing = self.client.get(kind, name, namespace)
        if existing is None:
            applied = self.client.create(kind, role)
            record_rbac_change("created", kind)
            action = "created"
            logger.info(f"Created {kind} {name} for RoleDefinition {template['metadata']['name']}")
        else:
            self._check_ownership(template, existing)
            if self._needs_update(existing, role):
                role['metadata']['resourceVersion'] = existing['metadata'].get('resourceVersion')
                applied = self.client.replace(kind, role)
                record_rbac_change("updated", kind)
                action = "updated"
                logger.info(f"Updated {kind} {name} ({len(generated.rules)} rules)")
            else:
                applied = existing
                action = "unchanged"
                logger.debug(f"{kind} {name} is up to date")

        self._prune_stale_roles(template, kind, name, namespace)

        return applied, RoleResult(
            action=action,
            rule_count=len(generated.rules),
            filtered_groups=generated.filtered_groups,
            filtered_resources=generated.filtered_resources,
            snapshot_generation=generation,
            finalizer_added=finalizer_added,
        )

    def reconcile_delete(self, template: Dict[str, Any]) -> List[str]:
        """
        Delete the roles generated for a template, then release its finalizer

        Roles not owned by the template are left alone.

        Returns:
            List of deleted role references
        """
        deleted = []
        for kind in Kind.get_role_kinds():
            for role in self._owned_roles(template, kind.value):
                metadata = role['metadata']
                if self.client.delete(kind.value, metadata['name'], metadata.get('namespace')):
                    record_rbac_change("deleted", kind.value)
                    deleted.append(f"{kind.value} {metadata['name']}")
                    logger.info(f"Deleted {kind.value} {metadata['name']}")

        # Roles from before the label existed are found by name
        spec = from_dict(RoleDefinitionSpec, template.get('spec') or {})
        if spec.target_role and spec.target_name:
            existing = self.client.get(spec.target_role, spec.target_name, spec.target_namespace or None)
            if existing is not None and is_owned_by(existing, template):
                if self.client.delete(spec.target_role, spec.target_name, spec.target_namespace or None):
                    record_rbac_change("deleted", spec.target_role)
                    deleted.append(f"{spec.target_role} {spec.target_name}")

        remove_finalizer(
            self.client, KubernetesConstants.Plural.ROLE_DEFINITIONS, template,
            KubernetesConstants.ROLE_DEFINITION_FINALIZER,
        )
        return deleted

    def _owned_roles(self, template: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
        selector = f"{KubernetesConstants.SOURCE_NAME_LABEL}={template['metadata']['name']}"
        return [role for role in self.client.list(kind, label_selector=selector) if is_owned_by(role, template)]

    def _prune_stale_roles(self, template: Dict[str, Any], kind: str, name: str,
                           namespace: Optional[str]) -> None:
        """Delete roles left behind after the target kind, name or namespace changed"""
        for role_kind in Kind.get_role_kinds():
            for role in self._owned_roles(template, role_kind.value):
                metadata = role['metadata']
                if (role_kind.value, metadata['name'], metadata.get('namespace')) == (kind, name, namespace):
                    continue
                if self.client.delete(role_kind.value, metadata['name'], metadata.get('namespace')):
                    record_rbac_change("deleted", role_kind.value)
                logger.info(f"Deleted stale {role_kind.value} {metadata['name']}")

    def _check_duplicate_target(self, template: Dict[str, Any], spec: RoleDefinitionSpec) -> None:
        """The oldest RoleDefinition claiming a target keeps it; later ones are rejected"""
        name = template['metadata']['name']
        own_age = (template['metadata'].get('creationTimestamp') or '', name)
        for other in self.client.list_declared(KubernetesConstants.Plural.ROLE_DEFINITIONS):
            other_meta = other.get('metadata') or {}
            if other_meta.get('name') == name or other_meta.get('deletionTimestamp'):
                continue
            if (other_meta.get('creationTimestamp') or '', other_meta.get('name', '')) > own_age:
                continue
            other_spec = other.get('spec') or {}
            if other_spec.get('targetName') == spec.target_name and \
                    other_spec.get('targetRole') == spec.target_role and \
                    (other_spec.get('targetNamespace') or '') == spec.target_namespace:
                raise ValidationError(
                    f"targetName {spec.target_name} already exists in RoleDefinition {other_meta.get('name')}")

    @staticmethod
    def _check_ownership(template: Dict[str, Any], existing: Dict[str, Any]) -> None:
        if is_owned_by(existing, template):
            return
        annotations = existing['metadata'].get('annotations') or {}
        if is_managed(existing) and \
                annotations.get(KubernetesConstants.SOURCE_NAME_ANNOTATION) == template['metadata']['name']:
            return
        raise NotManagedError(ErrorMessages.TARGET_NOT_MANAGED.format(
            kind=existing.get('kind', 'role'), name=existing['metadata']['name']))

    @staticmethod
    def _needs_update(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        if (existing.get('rules') or []) != desired['rules']:
            return True
        existing_meta = existing.get('metadata') or {}
        desired_meta = desired['metadata']
        for key in ('labels', 'annotations'):
            current = existing_meta.get(key) or {}
            if any(current.get(k) != v for k, v in desired_meta[key].items()):
                return True
        owner_uids = {ref.get('uid') for ref in existing_meta.get('ownerReferences') or []}
        return any(ref.get('uid') not in owner_uids for ref in desired_meta['ownerReferences'])
