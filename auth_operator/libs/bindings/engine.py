"""
Binding Engine

Reconciles a BindDefinition into ClusterRoleBindings, RoleBindings across
the resolved namespaces and reference-counted ServiceAccount subjects.
Every object is applied independently; failures are collected and raised
together once everything else has been attempted.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core.constants import KubernetesConstants
from ..core.data_models import BindDefinitionSpec, from_dict
from ..core.exceptions import AuthOperatorError, NotManagedError, PartialApplyError, ValidationError
from ..core.finalizers import ensure_finalizer, remove_finalizer
from ..core.manifests import ManifestTemplates, is_owned_by
from ..core.metrics import record_rbac_change
from ..core.selectors import validate_selector
from ..core.utils import DNS_LABEL_PATTERN, build_binding_name, validate_namespace
from .namespaces import NamespaceResolver
from .service_accounts import EXTERNAL, GENERATED, ServiceAccountManager

logger = logging.getLogger(__name__)

Kind = KubernetesConstants.Kind
SubjectKind = KubernetesConstants.SubjectKind

# (kind, namespace, name)
ObjectKey = Tuple[str, Optional[str], str]


@dataclass
class BindingResult:
    """Status payload of a BindDefinition reconciliation"""
    generated_service_accounts: List[Dict[str, str]] = field(default_factory=list)
    external_service_accounts: List[str] = field(default_factory=list)
    missing_role_refs: List[str] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    reconciled: bool = False

    def to_status(self) -> Dict[str, Any]:
        return {
            'generatedServiceAccounts': self.generated_service_accounts,
            'externalServiceAccounts': self.external_service_accounts,
            'missingRoleRefs': self.missing_role_refs,
            'bindReconciled': self.reconciled,
        }


def parse_bind_definition(template: Dict[str, Any]) -> BindDefinitionSpec:
    """
    Parse and validate a BindDefinition spec

    Raises:
        ValidationError: If the spec is malformed
    """
    spec = from_dict(BindDefinitionSpec, template.get('spec') or {})

    if not spec.target_name or not re.match(DNS_LABEL_PATTERN, spec.target_name):
        raise ValidationError(f"Invalid targetName format: {spec.target_name!r}")
    if not spec.subjects:
        raise ValidationError("at least one subject is required")

    subject_kinds = [k.value for k in SubjectKind]
    for index, subject in enumerate(spec.subjects):
        if subject.kind not in subject_kinds:
            raise ValidationError(f"subjects[{index}]: unsupported kind {subject.kind!r}")
        if not subject.name:
            raise ValidationError(f"subjects[{index}]: name is required")
        if subject.is_service_account:
            if not subject.namespace:
                raise ValidationError(f"subjects[{index}]: ServiceAccount subjects require a namespace")
            validate_namespace(subject.namespace)

    for index, group in enumerate(spec.role_bindings):
        if not group.explicit_namespaces() and not group.namespace_selector:
            raise ValidationError(
                f"roleBindings[{index}]: one of namespace, namespaces or namespaceSelector is required")
        for selector in group.namespace_selector:
            try:
                validate_selector(selector)
            except ValidationError as e:
                raise ValidationError(f"roleBindings[{index}].namespaceSelector: {e}")
    return spec


class BindingEngine:
    """Generates and applies the bindings and subjects of a BindDefinition"""

    def __init__(self, cluster_client, resolver: Optional[NamespaceResolver] = None,
                 service_accounts: Optional[ServiceAccountManager] = None):
        """
        Initialize the binding engine

        Args:
            cluster_client: ClusterClient (or compatible) for API access
            resolver: Namespace resolver (defaults to NamespaceResolver)
            service_accounts: ServiceAccount manager (defaults to ServiceAccountManager)
        """
        self.client = cluster_client
        self.resolver = resolver or NamespaceResolver(cluster_client)
        self.service_accounts = service_accounts or ServiceAccountManager(cluster_client)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self, template: Dict[str, Any]) -> BindingResult:
        """
        Bring bindings and subjects in line with the template

        Args:
            template: BindDefinition object

        Returns:
            BindingResult status payload

        Raises:
            ValidationError: Malformed template
            PartialApplyError: Some objects failed; ``result`` holds the payload
            TransientError: API failures before any object was applied
        """
        spec = parse_bind_definition(template)
        self._check_duplicate_target(template, spec)
        ensure_finalizer(self.client, KubernetesConstants.Plural.BIND_DEFINITIONS, template,
                         KubernetesConstants.BIND_DEFINITION_FINALIZER)

        result = BindingResult()
        failures: List[Tuple[str, Exception]] = []

        self._reconcile_subjects(template, spec, result, failures)

        desired, role_refs = self._desired_bindings(template, spec, failures)
        result.missing_role_refs = self._missing_role_refs(spec, role_refs, failures)
        if result.missing_role_refs:
            logger.info(f"BindDefinition {template['metadata']['name']} references missing roles: "
                        f"{', '.join(result.missing_role_refs)}")

        for key, binding in desired.items():
            try:
                if self._apply_binding(template, binding):
                    result.applied.append(self._ref(key))
            except AuthOperatorError as e:
                failures.append((self._ref(key), e))

        result.pruned = self._prune_bindings(template, set(desired), failures)

        result.reconciled = not failures
        if failures:
            raise PartialApplyError(failures, result=result)
        return result

    def _reconcile_subjects(self, template: Dict[str, Any], spec: BindDefinitionSpec,
                            result: BindingResult, failures: List[Tuple[str, Exception]]) -> None:
        named = set()
        for subject in spec.subjects:
            if not subject.is_service_account:
                continue
            named.add((subject.namespace, subject.name))
            try:
                outcome = self.service_accounts.ensure(
                    template, subject.namespace, subject.name,
                    create_missing=spec.create_service_accounts,
                    automount_token=spec.automount_service_account_token,
                )
            except AuthOperatorError as e:
                failures.append((f"ServiceAccount {subject.namespace}/{subject.name}", e))
                continue
            if outcome.state == GENERATED:
                result.generated_service_accounts.append({
                    'kind': SubjectKind.SERVICE_ACCOUNT.value,
                    'name': outcome.name,
                    'namespace': outcome.namespace,
                })
            elif outcome.state == EXTERNAL:
                result.external_service_accounts.append(outcome.ref)

        # Accounts named on an earlier pass but no longer in the spec
        try:
            previous = self.service_accounts.referenced_accounts(template)
        except AuthOperatorError as e:
            failures.append(("ServiceAccount references", e))
            return
        for account in previous:
            if (account.namespace, account.name) in named:
                continue
            try:
                self.service_accounts.release(template, account.namespace, account.name)
            except AuthOperatorError as e:
                failures.append((f"ServiceAccount {account.ref}", e))

    def _desired_bindings(self, template: Dict[str, Any], spec: BindDefinitionSpec,
                          failures: List[Tuple[str, Exception]]
                          ) -> Tuple[Dict[ObjectKey, Dict[str, Any]], Set[Tuple[str, str]]]:
        """
        Desired bindings by key, plus every (namespace, Role name) referenced

        A ClusterRole ref and a Role ref with the same name in one namespace
        map to the same RoleBinding name. The ClusterRole ref is bound and
        the Role ref is logged and skipped, but still checked for existence.
        """
        subjects = [subject.to_dict() for subject in spec.subjects]
        desired: Dict[ObjectKey, Dict[str, Any]] = {}
        role_refs: Set[Tuple[str, str]] = set()

        def add(binding: Dict[str, Any]) -> None:
            metadata = binding['metadata']
            key = (binding['kind'], metadata.get('namespace'), metadata['name'])
            if key in desired:
                kept = desired[key]['roleRef']
                if kept['kind'] != binding['roleRef']['kind']:
                    logger.warning(f"{self._ref(key)} in BindDefinition {template['metadata']['name']}: "
                                   f"{kept['kind']} and {binding['roleRef']['kind']} {kept['name']} share "
                                   f"a binding name; binding the {kept['kind']}")
                else:
                    logger.warning(f"Duplicate binding {self._ref(key)} in BindDefinition "
                                   f"{template['metadata']['name']}; keeping the first")
                return
            desired[key] = binding

        for role_ref in spec.cluster_role_bindings.cluster_role_refs:
            add(ManifestTemplates.binding_template(
                template, Kind.CLUSTER_ROLE_BINDING.value, build_binding_name(spec.target_name, role_ref),
                Kind.CLUSTER_ROLE.value, role_ref, subjects))

        for index, group in enumerate(spec.role_bindings):
            try:
                namespaces = self.resolver.resolve(group)
            except AuthOperatorError as e:
                failures.append((f"roleBindings[{index}] namespaces", e))
                continue
            for namespace in namespaces:
                for role_kind, refs in ((Kind.CLUSTER_ROLE.value, group.cluster_role_refs),
                                        (Kind.ROLE.value, group.role_refs)):
                    for role_ref in refs:
                        if role_kind == Kind.ROLE.value:
                            role_refs.add((namespace, role_ref))
                        add(ManifestTemplates.binding_template(
                            template, Kind.ROLE_BINDING.value, build_binding_name(spec.target_name, role_ref),
                            role_kind, role_ref, subjects, namespace=namespace))
        return desired, role_refs

    def _missing_role_refs(self, spec: BindDefinitionSpec, role_refs: Set[Tuple[str, str]],
                           failures: List[Tuple[str, Exception]]) -> List[str]:
        """Referenced ClusterRoles checked cluster-wide, Roles per target namespace"""
        cluster_refs = set(spec.cluster_role_bindings.cluster_role_refs)
        for group in spec.role_bindings:
            cluster_refs.update(group.cluster_role_refs)

        missing = []
        for role_ref in sorted(cluster_refs):
            try:
                if self.client.get(Kind.CLUSTER_ROLE.value, role_ref) is None:
                    missing.append(f"{Kind.CLUSTER_ROLE.value}/{role_ref}")
            except AuthOperatorError as e:
                failures.append((f"{Kind.CLUSTER_ROLE.value} {role_ref}", e))
        for namespace, role_ref in sorted(role_refs):
            try:
                if self.client.get(Kind.ROLE.value, role_ref, namespace) is None:
                    missing.append(f"{Kind.ROLE.value}/{namespace}/{role_ref}")
            except AuthOperatorError as e:
                failures.append((f"{Kind.ROLE.value} {namespace}/{role_ref}", e))
        return missing

    def _apply_binding(self, template: Dict[str, Any], binding: Dict[str, Any]) -> bool:
        """
        Create or update one binding

        Returns:
            bool: True if the cluster was changed
        """
        kind = binding['kind']
        metadata = binding['metadata']
        name, namespace = metadata['name'], metadata.get('namespace')

        existing = self.client.get(kind, name, namespace)
        if existing is None:
            self.client.create(kind, binding)
            record_rbac_change("created", kind)
            logger.info(f"Created {kind} {self._ref((kind, namespace, name))}")
            return True

        if not is_owned_by(existing, template):
            raise NotManagedError(f"{kind} {name} already exists and is not owned by "
                                  f"BindDefinition {template['metadata']['name']}")

        # roleRef is immutable; a changed reference needs a new object
        if existing.get('roleRef') != binding['roleRef']:
            self.client.delete(kind, name, namespace)
            self.client.create(kind, binding)
            record_rbac_change("updated", kind)
            logger.info(f"Recreated {kind} {self._ref((kind, namespace, name))} with a new roleRef")
            return True

        if not self._needs_update(existing, binding):
            return False
        updated = copy.deepcopy(binding)
        updated['metadata']['resourceVersion'] = existing['metadata'].get('resourceVersion')
        self.client.replace(kind, updated)
        record_rbac_change("updated", kind)
        logger.info(f"Updated {kind} {self._ref((kind, namespace, name))}")
        return True

    def _prune_bindings(self, template: Dict[str, Any], desired_keys: set,
                        failures: List[Tuple[str, Exception]]) -> List[str]:
        pruned = []
        for key, binding in self._owned_bindings(template, failures):
            if key in desired_keys:
                continue
            try:
                if self.client.delete(key[0], key[2], key[1]):
                    record_rbac_change("deleted", key[0])
                    pruned.append(self._ref(key))
                    logger.info(f"Deleted stale {self._ref(key)}")
            except AuthOperatorError as e:
                failures.append((self._ref(key), e))
        return pruned

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def reconcile_delete(self, template: Dict[str, Any]) -> List[str]:
        """
        Delete every binding owned by the template and release its subjects

        The finalizer is only removed when every step succeeded.

        Returns:
            List of deleted binding references

        Raises:
            PartialApplyError: If anything could not be cleaned up
        """
        failures: List[Tuple[str, Exception]] = []
        deleted = []

        for key, _ in self._owned_bindings(template, failures):
            try:
                if self.client.delete(key[0], key[2], key[1]):
                    record_rbac_change("deleted", key[0])
                    deleted.append(self._ref(key))
                    logger.info(f"Deleted {self._ref(key)}")
            except AuthOperatorError as e:
                failures.append((self._ref(key), e))

        accounts = set()
        try:
            accounts.update((a.namespace, a.name) for a in self.service_accounts.referenced_accounts(template))
        except AuthOperatorError as e:
            failures.append(("ServiceAccount references", e))
        spec = from_dict(BindDefinitionSpec, template.get('spec') or {})
        accounts.update((s.namespace, s.name) for s in spec.subjects if s.is_service_account and s.namespace)

        for namespace, name in sorted(accounts):
            try:
                self.service_accounts.release(template, namespace, name)
            except AuthOperatorError as e:
                failures.append((f"ServiceAccount {namespace}/{name}", e))

        if failures:
            raise PartialApplyError(failures)

        remove_finalizer(self.client, KubernetesConstants.Plural.BIND_DEFINITIONS, template,
                         KubernetesConstants.BIND_DEFINITION_FINALIZER)
        return deleted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_bindings(self, template: Dict[str, Any], failures: List[Tuple[str, Exception]]):
        selector = f"{KubernetesConstants.SOURCE_NAME_LABEL}={template['metadata']['name']}"
        owned = []
        for kind in Kind.get_binding_kinds():
            try:
                bindings = self.client.list(kind.value, label_selector=selector)
            except AuthOperatorError as e:
                failures.append((f"list {kind.value}", e))
                continue
            for binding in bindings:
                if not is_owned_by(binding, template):
                    continue
                metadata = binding['metadata']
                owned.append(((kind.value, metadata.get('namespace'), metadata['name']), binding))
        return owned

    def _check_duplicate_target(self, template: Dict[str, Any], spec: BindDefinitionSpec) -> None:
        """The oldest BindDefinition claiming a targetName keeps it"""
        name = template['metadata']['name']
        own_age = (template['metadata'].get('creationTimestamp') or '', name)
        for other in self.client.list_declared(KubernetesConstants.Plural.BIND_DEFINITIONS):
            other_meta = other.get('metadata') or {}
            if other_meta.get('name') == name or other_meta.get('deletionTimestamp'):
                continue
            if (other_meta.get('creationTimestamp') or '', other_meta.get('name', '')) > own_age:
                continue
            if (other.get('spec') or {}).get('targetName') == spec.target_name:
                raise ValidationError(
                    f"targetName {spec.target_name} already exists in BindDefinition {other_meta.get('name')}")

    @staticmethod
    def _needs_update(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        if (existing.get('subjects') or []) != desired['subjects']:
            return True
        existing_meta = existing.get('metadata') or {}
        desired_meta = desired['metadata']
        for key in ('labels', 'annotations'):
            current = existing_meta.get(key) or {}
            if any(current.get(k) != v for k, v in desired_meta[key].items()):
                return True
        owner_uids = {ref.get('uid') for ref in existing_meta.get('ownerReferences') or []}
        return any(ref.get('uid') not in owner_uids for ref in desired_meta['ownerReferences'])

    @staticmethod
    def _ref(key: ObjectKey) -> str:
        kind, namespace, name = key
        return f"{kind} {namespace}/{name}" if namespace else f"{kind} {name}"
