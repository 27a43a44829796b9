"""
Data Models Module.

Typed data structures for the specs of the declared kinds. Objects arrive
from the API server (and from kopf) as camelCase dictionaries; ``from_dict``
turns them into dataclasses so the engines work with attributes instead of
nested ``Dict[str, Any]`` lookups.
"""

import re
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict, List, Optional, Type, TypeVar, Union, get_args, get_origin

from .constants import KubernetesConstants
from .exceptions import ValidationError

T = TypeVar('T')

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')

# camelCase keys that do not convert mechanically
_FIELD_ALIASES = {
    'restrictedApis': 'restricted_apis',
    'nonResourceURLs': 'non_resource_urls',
    'apiGroups': 'api_groups',
    'apiGroup': 'api_group',
}


def _to_snake(key: str) -> str:
    if key in _FIELD_ALIASES:
        return _FIELD_ALIASES[key]
    return _CAMEL_BOUNDARY.sub('_', key).lower()


def _unwrap_optional(field_type: Any) -> Any:
    if get_origin(field_type) is Union:
        args = [arg for arg in get_args(field_type) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return field_type


def from_dict(data_class: Type[T], data: Dict[str, Any]) -> T:
    """
    Recursively creates a dataclass instance from a camelCase dictionary.

    Handles nested dataclasses, lists of dataclasses and optional fields.
    Unknown keys are ignored so newer CRD fields do not break older code.

    Args:
        data_class: The target dataclass type to create
        data: Dictionary containing the data to populate the dataclass

    Returns:
        Instance of the specified dataclass populated with the provided data

    Raises:
        ValidationError: If data is not a dictionary
    """
    if not is_dataclass(data_class):
        raise ValueError(f"{data_class} is not a dataclass")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"expected an object for {data_class.__name__}, got {type(data).__name__}")

    normalized = {_to_snake(key): value for key, value in data.items()}
    field_values = {}

    for field_obj in fields(data_class):
        if field_obj.name not in normalized:
            continue
        value = normalized[field_obj.name]
        if value is None:
            continue
        field_type = _unwrap_optional(field_obj.type)

        # A single object where a list is expected is treated as a list of one
        if get_origin(field_type) in (list, List) and isinstance(value, dict):
            value = [value]

        if is_dataclass(field_type) and isinstance(value, dict):
            field_values[field_obj.name] = from_dict(field_type, value)
        elif get_origin(field_type) in (list, List) and isinstance(value, list):
            item_type = get_args(field_type)[0] if get_args(field_type) else Any
            if is_dataclass(item_type):
                field_values[field_obj.name] = [
                    from_dict(item_type, item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                field_values[field_obj.name] = list(value)
        elif get_origin(field_type) in (dict, Dict) and isinstance(value, dict):
            field_values[field_obj.name] = dict(value)
        else:
            field_values[field_obj.name] = value

    return data_class(**field_values)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

@dataclass
class LabelSelectorRequirement:
    key: str = ""
    operator: str = ""
    values: List[str] = field(default_factory=list)


@dataclass
class LabelSelector:
    """Kubernetes LabelSelector (matchLabels AND matchExpressions)"""
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


# ---------------------------------------------------------------------------
# RoleDefinition
# ---------------------------------------------------------------------------

@dataclass
class RestrictedAPIGroup:
    name: str = ""
    versions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RestrictedResource:
    """An excluded resource; ``group`` of None matches the name in every group"""
    name: str = ""
    group: Optional[str] = None


@dataclass
class RoleDefinitionSpec:
    target_role: str = ""
    target_name: str = ""
    target_namespace: str = ""
    scope_namespaced: bool = False
    restricted_apis: List[RestrictedAPIGroup] = field(default_factory=list)
    restricted_resources: List[RestrictedResource] = field(default_factory=list)
    restricted_verbs: List[str] = field(default_factory=list)

    @property
    def is_cluster_role(self) -> bool:
        return self.target_role == KubernetesConstants.Kind.CLUSTER_ROLE.value


# ---------------------------------------------------------------------------
# BindDefinition
# ---------------------------------------------------------------------------

@dataclass
class Subject:
    kind: str = ""
    name: str = ""
    namespace: str = ""
    api_group: str = ""

    @property
    def is_service_account(self) -> bool:
        return self.kind == KubernetesConstants.SubjectKind.SERVICE_ACCOUNT.value

    def to_dict(self) -> Dict[str, str]:
        """Serialize to an rbac.authorization.k8s.io/v1 Subject"""
        subject = {'kind': self.kind, 'name': self.name}
        if self.is_service_account:
            subject['namespace'] = self.namespace
        else:
            subject['apiGroup'] = self.api_group or KubernetesConstants.RBAC_API_GROUP
            if self.namespace:
                subject['namespace'] = self.namespace
        return subject


@dataclass
class ClusterRoleBindingGroup:
    cluster_role_refs: List[str] = field(default_factory=list)


@dataclass
class RoleBindingGroup:
    cluster_role_refs: List[str] = field(default_factory=list)
    role_refs: List[str] = field(default_factory=list)
    namespace: str = ""
    namespaces: List[str] = field(default_factory=list)
    namespace_selector: List[LabelSelector] = field(default_factory=list)

    def explicit_namespaces(self) -> List[str]:
        names = list(self.namespaces)
        if self.namespace and self.namespace not in names:
            names.insert(0, self.namespace)
        return names


@dataclass
class BindDefinitionSpec:
    target_name: str = ""
    subjects: List[Subject] = field(default_factory=list)
    create_service_accounts: bool = True
    automount_service_account_token: bool = True
    cluster_role_bindings: ClusterRoleBindingGroup = field(default_factory=ClusterRoleBindingGroup)
    role_bindings: List[RoleBindingGroup] = field(default_factory=list)


# ---------------------------------------------------------------------------
# WebhookAuthorizer
# ---------------------------------------------------------------------------

@dataclass
class Principal:
    user: str = ""
    groups: List[str] = field(default_factory=list)
    namespace: str = ""


@dataclass
class ResourceRule:
    verbs: List[str] = field(default_factory=list)
    api_groups: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)


@dataclass
class NonResourceRule:
    verbs: List[str] = field(default_factory=list)
    non_resource_urls: List[str] = field(default_factory=list)


@dataclass
class WebhookAuthorizerSpec:
    resource_rules: List[ResourceRule] = field(default_factory=list)
    non_resource_rules: List[NonResourceRule] = field(default_factory=list)
    allowed_principals: List[Principal] = field(default_factory=list)
    denied_principals: List[Principal] = field(default_factory=list)
    namespace_selector: LabelSelector = field(default_factory=LabelSelector)
