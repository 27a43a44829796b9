"""
Manifest Templates

Builders for the RBAC objects generated by the engines. Every generated
object carries the operator's labels, the tracing annotations and an
ownerReference to the template that produced it.
"""

from typing import Any, Dict, List, Optional

from .constants import KubernetesConstants

Kind = KubernetesConstants.Kind

RBAC_API_VERSION = f"{KubernetesConstants.RBAC_API_GROUP}/{KubernetesConstants.RBAC_API_VERSION}"
AUTHORIZATION_API_VERSION = (
    f"{KubernetesConstants.AUTHORIZATION_API_GROUP}/{KubernetesConstants.AUTHORIZATION_API_VERSION}"
)


def managed_labels(template: Dict[str, Any]) -> Dict[str, str]:
    """Template labels plus the operator's own labels (ours win on conflict)"""
    labels = dict((template.get('metadata') or {}).get('labels') or {})
    labels[KubernetesConstants.MANAGED_BY_LABEL] = KubernetesConstants.MANAGED_BY_VALUE
    labels[KubernetesConstants.NAME_LABEL] = KubernetesConstants.MANAGED_BY_VALUE
    return labels


def source_annotations(template: Dict[str, Any]) -> Dict[str, str]:
    return {
        KubernetesConstants.SOURCE_KIND_ANNOTATION: template.get('kind', ''),
        KubernetesConstants.SOURCE_NAME_ANNOTATION: template['metadata']['name'],
    }


def owner_reference(template: Dict[str, Any], controller: bool = True) -> Dict[str, Any]:
    """
    Build an ownerReference pointing at a template

    Args:
        template: The owning RoleDefinition or BindDefinition
        controller: Whether the owner is the managing controller

    Returns:
        ownerReference dict
    """
    metadata = template['metadata']
    return {
        'apiVersion': template.get('apiVersion', AUTHORIZATION_API_VERSION),
        'kind': template.get('kind', ''),
        'name': metadata['name'],
        'uid': metadata.get('uid', ''),
        'controller': controller,
        'blockOwnerDeletion': True,
    }


def is_managed(obj: Optional[Dict[str, Any]]) -> bool:
    """Whether an object carries the operator's ownership marker"""
    if not obj:
        return False
    labels = (obj.get('metadata') or {}).get('labels') or {}
    return labels.get(KubernetesConstants.MANAGED_BY_LABEL) == KubernetesConstants.MANAGED_BY_VALUE


def is_owned_by(obj: Optional[Dict[str, Any]], template: Dict[str, Any]) -> bool:
    """Whether an object has an ownerReference to the given template"""
    if not obj:
        return False
    uid = template['metadata'].get('uid')
    name = template['metadata']['name']
    kind = template.get('kind')
    for ref in (obj.get('metadata') or {}).get('ownerReferences') or []:
        if uid and ref.get('uid') == uid:
            return True
        if not uid and ref.get('kind') == kind and ref.get('name') == name:
            return True
    return False


class ManifestTemplates:
    """Templates for generated Kubernetes manifests"""

    @staticmethod
    def role_template(template: Dict[str, Any], kind: str, name: str, rules: List[Dict[str, Any]],
                      namespace: Optional[str] = None) -> Dict[str, Any]:
        """ClusterRole or Role manifest"""
        labels = managed_labels(template)
        labels[KubernetesConstants.SOURCE_NAME_LABEL] = template['metadata']['name']
        metadata = {
            'name': name,
            'labels': labels,
            'annotations': source_annotations(template),
            'ownerReferences': [owner_reference(template)],
        }
        if kind == Kind.ROLE.value:
            metadata['namespace'] = namespace
        return {
            'apiVersion': RBAC_API_VERSION,
            'kind': kind,
            'metadata': metadata,
            'rules': rules,
        }

    @staticmethod
    def binding_template(template: Dict[str, Any], kind: str, name: str, role_kind: str,
                         role_name: str, subjects: List[Dict[str, Any]],
                         namespace: Optional[str] = None) -> Dict[str, Any]:
        """ClusterRoleBinding or RoleBinding manifest"""
        labels = managed_labels(template)
        labels[KubernetesConstants.SOURCE_NAME_LABEL] = template['metadata']['name']
        metadata = {
            'name': name,
            'labels': labels,
            'annotations': source_annotations(template),
            'ownerReferences': [owner_reference(template)],
        }
        if kind == Kind.ROLE_BINDING.value:
            metadata['namespace'] = namespace
        return {
            'apiVersion': RBAC_API_VERSION,
            'kind': kind,
            'metadata': metadata,
            'roleRef': {
                'apiGroup': KubernetesConstants.RBAC_API_GROUP,
                'kind': role_kind,
                'name': role_name,
            },
            'subjects': subjects,
        }

    @staticmethod
    def service_account_template(template: Dict[str, Any], name: str, namespace: str,
                                 automount_token: bool) -> Dict[str, Any]:
        """ServiceAccount manifest, co-owned (non-controller) by the referencing template"""
        return {
            'apiVersion': 'v1',
            'kind': Kind.SERVICE_ACCOUNT.value,
            'metadata': {
                'name': name,
                'namespace': namespace,
                'labels': managed_labels(template),
                'annotations': {
                    KubernetesConstants.SOURCE_KIND_ANNOTATION: template.get('kind', ''),
                    KubernetesConstants.SOURCE_NAMES_ANNOTATION: template['metadata']['name'],
                },
                'ownerReferences': [owner_reference(template, controller=False)],
            },
            'automountServiceAccountToken': automount_token,
        }
