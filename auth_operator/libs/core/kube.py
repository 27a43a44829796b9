"""
Cluster Client

Thin facade over the Kubernetes API used by the engines. Every object goes
in and comes out as a plain camelCase dict, so the engines never touch the
generated model classes and tests can swap in an in-memory implementation.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .constants import KubernetesConstants
from .utils import API_CALL_ERRORS, handle_api_error

logger = logging.getLogger(__name__)

Kind = KubernetesConstants.Kind

# kind -> (api attribute, method suffix, namespaced)
KIND_OPERATIONS = {
    Kind.CLUSTER_ROLE.value: ('rbac_api', 'cluster_role', False),
    Kind.ROLE.value: ('rbac_api', 'namespaced_role', True),
    Kind.CLUSTER_ROLE_BINDING.value: ('rbac_api', 'cluster_role_binding', False),
    Kind.ROLE_BINDING.value: ('rbac_api', 'namespaced_role_binding', True),
    Kind.SERVICE_ACCOUNT.value: ('core_api', 'namespaced_service_account', True),
}


class ClusterClient:
    """Kubernetes API access for generated objects, namespaces and declared kinds"""

    def __init__(self, api_client: client.ApiClient):
        """
        Initialize the cluster client

        Args:
            api_client: Configured kubernetes ApiClient
        """
        self.api_client = api_client
        self.core_api = client.CoreV1Api(api_client)
        self.rbac_api = client.RbacAuthorizationV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if obj is None or isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _operation(self, kind: str, verb: str):
        try:
            api_name, suffix, namespaced = KIND_OPERATIONS[kind]
        except KeyError:
            raise ValueError(f"Unsupported kind: {kind}")
        return getattr(getattr(self, api_name), f"{verb}_{suffix}"), namespaced

    @staticmethod
    def _ref(kind: str, name: str, namespace: Optional[str]) -> str:
        return f"{kind} {namespace}/{name}" if namespace else f"{kind} {name}"

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Read an object

        Returns:
            The object as a dict, or None if it does not exist

        Raises:
            AuthOperatorError: Mapped API failure
        """
        method, namespaced = self._operation(kind, 'read')
        try:
            if namespaced:
                return self._to_dict(method(name, namespace))
            return self._to_dict(method(name))
        except ApiException as e:
            if e.status == 404:
                return None
            handle_api_error(e, f"get {self._ref(kind, name, namespace)}")
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"get {self._ref(kind, name, namespace)}")

    def create(self, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        metadata = body.get('metadata', {})
        namespace = metadata.get('namespace')
        method, namespaced = self._operation(kind, 'create')
        try:
            if namespaced:
                return self._to_dict(method(namespace, body))
            return self._to_dict(method(body))
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"create {self._ref(kind, metadata.get('name'), namespace)}")

    def replace(self, kind: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object; body must carry metadata.resourceVersion for optimistic locking"""
        metadata = body.get('metadata', {})
        name = metadata.get('name')
        namespace = metadata.get('namespace')
        method, namespaced = self._operation(kind, 'replace')
        try:
            if namespaced:
                return self._to_dict(method(name, namespace, body))
            return self._to_dict(method(name, body))
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"update {self._ref(kind, name, namespace)}")

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """
        Delete an object

        Returns:
            bool: True if deleted, False if it was already gone
        """
        method, namespaced = self._operation(kind, 'delete')
        try:
            if namespaced:
                method(name, namespace)
            else:
                method(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            handle_api_error(e, f"delete {self._ref(kind, name, namespace)}")
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"delete {self._ref(kind, name, namespace)}")

    def list(self, kind: str, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List objects of a kind across all namespaces

        Args:
            kind: Object kind
            label_selector: Optional label selector query

        Returns:
            List of object dicts
        """
        api_name, suffix, namespaced = KIND_OPERATIONS[kind]
        api = getattr(self, api_name)
        if namespaced:
            method = getattr(api, f"list_{suffix.replace('namespaced_', '')}_for_all_namespaces")
        else:
            method = getattr(api, f"list_{suffix}")
        kwargs = {'label_selector': label_selector} if label_selector else {}
        try:
            result = self._to_dict(method(**kwargs))
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"list {kind}")
        return result.get('items') or []

    def list_namespaces(self, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {'label_selector': label_selector} if label_selector else {}
        try:
            result = self._to_dict(self.core_api.list_namespace(**kwargs))
        except API_CALL_ERRORS as e:
            handle_api_error(e, "list namespaces")
        return result.get('items') or []

    def get_namespace(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(self.core_api.read_namespace(name))
        except ApiException as e:
            if e.status == 404:
                return None
            handle_api_error(e, f"get namespace {name}")
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"get namespace {name}")

    def list_declared(self, plural: str) -> List[Dict[str, Any]]:
        """List cluster-scoped objects of one of the operator's declared kinds"""
        try:
            result = self.custom_api.list_cluster_custom_object(
                group=KubernetesConstants.AUTHORIZATION_API_GROUP,
                version=KubernetesConstants.AUTHORIZATION_API_VERSION,
                plural=str(plural),
            )
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"list {plural}")
        return result.get('items') or []

    def patch_declared(self, plural: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch the metadata or spec of a declared object"""
        try:
            return self.custom_api.patch_cluster_custom_object(
                group=KubernetesConstants.AUTHORIZATION_API_GROUP,
                version=KubernetesConstants.AUTHORIZATION_API_VERSION,
                plural=str(plural),
                name=name,
                body=body,
            )
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"patch {plural}/{name}")
