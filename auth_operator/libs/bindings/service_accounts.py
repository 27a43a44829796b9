"""
Service Account Manager

Reference-counted ServiceAccount subjects. A ServiceAccount created by the
operator records every BindDefinition depending on it in the source-names
annotation and is deleted only when that set becomes empty. ServiceAccounts
that existed before are only annotated with referenced-by, never adopted
and never deleted.
"""

import copy
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from ..core.constants import KubernetesConstants
from ..core.manifests import ManifestTemplates, is_managed, owner_reference
from ..core.metrics import record_rbac_change
from ..core.utils import merge_name_list, parse_name_list, remove_from_name_list

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT = KubernetesConstants.Kind.SERVICE_ACCOUNT.value

GENERATED = "generated"
EXTERNAL = "external"
MISSING = "missing"


class SubjectOutcome(NamedTuple):
    """How a ServiceAccount subject was handled"""
    state: str
    namespace: str
    name: str

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.name}"


def _annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    metadata = obj.setdefault('metadata', {})
    if metadata.get('annotations') is None:
        metadata['annotations'] = {}
    return metadata['annotations']


class ServiceAccountManager:
    """Creates, shares and releases ServiceAccount subjects"""

    def __init__(self, cluster_client):
        self.client = cluster_client

    def ensure(self, template: Dict[str, Any], namespace: str, name: str,
               create_missing: bool = True, automount_token: bool = True) -> SubjectOutcome:
        """
        Make sure a ServiceAccount subject exists and records the template

        Args:
            template: Referencing BindDefinition
            namespace: ServiceAccount namespace
            name: ServiceAccount name
            create_missing: Create the ServiceAccount when it does not exist
            automount_token: automountServiceAccountToken for created accounts

        Returns:
            SubjectOutcome describing the account
        """
        template_name = template['metadata']['name']
        existing = self.client.get(SERVICE_ACCOUNT, name, namespace)

        if existing is None:
            if not create_missing:
                logger.info(f"ServiceAccount {namespace}/{name} does not exist and creation is disabled")
                return SubjectOutcome(MISSING, namespace, name)
            self.client.create(SERVICE_ACCOUNT, ManifestTemplates.service_account_template(
                template, name, namespace, automount_token))
            record_rbac_change("created", SERVICE_ACCOUNT)
            logger.info(f"Created ServiceAccount {namespace}/{name} for BindDefinition {template_name}")
            return SubjectOutcome(GENERATED, namespace, name)

        updated = copy.deepcopy(existing)
        annotations = _annotations(updated)

        if is_managed(existing):
            annotations[KubernetesConstants.SOURCE_NAMES_ANNOTATION] = merge_name_list(
                annotations.get(KubernetesConstants.SOURCE_NAMES_ANNOTATION), template_name)
            refs = updated['metadata'].get('ownerReferences') or []
            if not any(self._is_reference_to(ref, template) for ref in refs):
                refs.append(owner_reference(template, controller=False))
            updated['metadata']['ownerReferences'] = refs
            state = GENERATED
        else:
            annotations[KubernetesConstants.REFERENCED_BY_ANNOTATION] = merge_name_list(
                annotations.get(KubernetesConstants.REFERENCED_BY_ANNOTATION), template_name)
            state = EXTERNAL

        if updated != existing:
            self.client.replace(SERVICE_ACCOUNT, updated)
            logger.info(f"Recorded BindDefinition {template_name} on {state} ServiceAccount {namespace}/{name}")
        return SubjectOutcome(state, namespace, name)

    def release(self, template: Dict[str, Any], namespace: str, name: str) -> Optional[str]:
        """
        Drop a template's reference to a ServiceAccount

        A managed account whose reference set becomes empty is deleted.

        Returns:
            "deleted", "released", "untracked" or None when nothing changed
        """
        template_name = template['metadata']['name']
        existing = self.client.get(SERVICE_ACCOUNT, name, namespace)
        if existing is None:
            return None

        updated = copy.deepcopy(existing)
        annotations = _annotations(updated)

        if is_managed(existing):
            current = annotations.get(KubernetesConstants.SOURCE_NAMES_ANNOTATION)
            all_refs = updated['metadata'].get('ownerReferences') or []
            refs = [ref for ref in all_refs if not self._is_reference_to(ref, template)]
            if template_name not in parse_name_list(current) and len(refs) == len(all_refs):
                return None
            remaining = remove_from_name_list(current, template_name)
            if not remaining:
                self.client.delete(SERVICE_ACCOUNT, name, namespace)
                record_rbac_change("deleted", SERVICE_ACCOUNT)
                logger.info(f"Deleted ServiceAccount {namespace}/{name}: no remaining references")
                return "deleted"
            annotations[KubernetesConstants.SOURCE_NAMES_ANNOTATION] = remaining
            updated['metadata']['ownerReferences'] = refs
            result = "released"
        else:
            current = annotations.get(KubernetesConstants.REFERENCED_BY_ANNOTATION)
            if template_name not in parse_name_list(current):
                return None
            remaining = remove_from_name_list(current, template_name)
            if remaining:
                annotations[KubernetesConstants.REFERENCED_BY_ANNOTATION] = remaining
            else:
                annotations.pop(KubernetesConstants.REFERENCED_BY_ANNOTATION, None)
            result = "untracked"

        if updated == existing:
            return None
        self.client.replace(SERVICE_ACCOUNT, updated)
        logger.info(f"Released ServiceAccount {namespace}/{name} from BindDefinition {template_name}")
        return result

    def referenced_accounts(self, template: Dict[str, Any]) -> List[SubjectOutcome]:
        """
        ServiceAccounts the template referenced on earlier passes

        Combines the template's published status with a scan of managed
        ServiceAccounts whose source-names include the template.
        """
        template_name = template['metadata']['name']
        status = template.get('status') or {}
        found = {}

        for entry in status.get('generatedServiceAccounts') or []:
            if entry.get('name') and entry.get('namespace'):
                found[(entry['namespace'], entry['name'])] = GENERATED
        for ref in status.get('externalServiceAccounts') or []:
            namespace, _, name = ref.partition('/')
            if namespace and name:
                found.setdefault((namespace, name), EXTERNAL)

        selector = f"{KubernetesConstants.MANAGED_BY_LABEL}={KubernetesConstants.MANAGED_BY_VALUE}"
        for account in self.client.list(SERVICE_ACCOUNT, label_selector=selector):
            metadata = account.get('metadata') or {}
            names = parse_name_list((metadata.get('annotations') or {}).get(
                KubernetesConstants.SOURCE_NAMES_ANNOTATION))
            if template_name in names:
                found[(metadata.get('namespace'), metadata.get('name'))] = GENERATED

        return [SubjectOutcome(state, namespace, name) for (namespace, name), state in sorted(found.items())]

    @staticmethod
    def _is_reference_to(ref: Dict[str, Any], template: Dict[str, Any]) -> bool:
        uid = template['metadata'].get('uid')
        if uid:
            return ref.get('uid') == uid
        return ref.get('kind') == template.get('kind') and ref.get('name') == template['metadata']['name']
