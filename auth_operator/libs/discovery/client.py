"""
Discovery Client

Reads the API surface exposed by the API server: groups, versions and the
resources of each group-version with their verbs and scope.
"""

import logging
from typing import Dict, Iterable, List, Tuple

from kubernetes import client

from ..core.exceptions import AuthOperatorError
from ..core.utils import API_CALL_ERRORS, handle_api_error

logger = logging.getLogger(__name__)

# (group, resource, namespaced) -> verbs
ResourceKey = Tuple[str, str, bool]


class DiscoveryClient:
    """Low-level discovery calls against the API server"""

    def __init__(self, api_client: client.ApiClient):
        """
        Initialize discovery client

        Args:
            api_client: Configured kubernetes ApiClient
        """
        self.api_client = api_client
        self.core_api = client.CoreApi(api_client)
        self.core_v1_api = client.CoreV1Api(api_client)
        self.apis_api = client.ApisApi(api_client)
        # GET /apis/{group}/{version} for any group, built-in or aggregated
        self.group_resources_api = client.CustomObjectsApi(api_client)

    def discover(self) -> Dict[ResourceKey, List[str]]:
        """
        Discover every (group, resource, namespaced) pair with its verbs

        Verbs are unioned across all served versions of a group. A group
        whose resource list cannot be read (an unavailable aggregated API,
        for example) is skipped with a warning.

        Returns:
            Dict mapping (group, resource, namespaced) to a sorted verb list

        Raises:
            TransientError: If the core group or the group list cannot be read
        """
        discovered: Dict[ResourceKey, set] = {}

        try:
            core_versions = self.core_api.get_api_versions().versions or []
            logger.debug(f"Core API versions: {core_versions}")
            self._collect(discovered, "", self.core_v1_api.get_api_resources().resources)
        except API_CALL_ERRORS as e:
            handle_api_error(e, "discover core API resources")

        try:
            groups = self.apis_api.get_api_versions().groups or []
        except API_CALL_ERRORS as e:
            handle_api_error(e, "discover API groups")

        for group in groups:
            for version in group.versions or []:
                try:
                    resource_list = self._get_group_version_resources(group.name, version.version)
                except AuthOperatorError as e:
                    logger.warning(f"Skipping API group version {version.group_version}: {e}")
                    continue
                self._collect(discovered, group.name, resource_list.resources)

        return {key: sorted(verbs) for key, verbs in discovered.items()}

    def _get_group_version_resources(self, group: str, version: str) -> client.V1APIResourceList:
        try:
            return self.group_resources_api.get_api_resources(group, version)
        except API_CALL_ERRORS as e:
            handle_api_error(e, f"discover {group}/{version}")

    @staticmethod
    def _collect(discovered: Dict[ResourceKey, set], group: str,
                 resources: Iterable[client.V1APIResource]) -> None:
        for resource in resources or []:
            key = (group, resource.name, bool(resource.namespaced))
            discovered.setdefault(key, set()).update(resource.verbs or [])
