"""
Authentication Module

Builds the Kubernetes API client from an explicit URL and token, the local
kubeconfig, or the in-cluster service account.
"""

import logging
from typing import Optional

import urllib3
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from .exceptions import AuthenticationError
from .utils import handle_ssl_error, mask_sensitive_info

logger = logging.getLogger(__name__)


class ClusterAuth:
    """Handles cluster authentication and client construction"""

    def __init__(self, skip_tls: bool = False):
        """
        Initialize cluster authentication handler

        Args:
            skip_tls: Whether to skip TLS verification for requests
        """
        self.skip_tls = skip_tls
        self.api_url = None
        self.api_client = None

    def configure_auth(self, api_url: Optional[str] = None, token: Optional[str] = None) -> client.ApiClient:
        """
        Configure authentication with provided URL and token, or discover from context

        Args:
            api_url: API server URL (optional)
            token: Bearer token (optional)

        Returns:
            client.ApiClient: Configured API client

        Raises:
            AuthenticationError: If authentication configuration fails
        """
        if api_url and token:
            logger.info("Using provided API server URL and token for authentication")
            self.api_url = api_url
            return self._configure_with_token(api_url, token)
        return self._discover_from_context()

    def _configure_with_token(self, api_url: str, token: str) -> client.ApiClient:
        try:
            configuration = client.Configuration()
            configuration.host = api_url
            configuration.api_key = {"authorization": token}
            configuration.api_key_prefix = {"authorization": "Bearer"}

            if self.skip_tls:
                configuration.verify_ssl = False
                configuration.ssl_ca_cert = None
                urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

            self.api_client = client.ApiClient(configuration)
            logger.info(f"Configured Kubernetes client for {mask_sensitive_info(api_url, token)}")
            return self.api_client
        except Exception as e:
            handle_ssl_error(e, AuthenticationError)

    def _discover_from_context(self) -> client.ApiClient:
        """
        Discover authentication from kubeconfig or in-cluster config

        Raises:
            AuthenticationError: If neither source is usable
        """
        try:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
        except (ConfigException, OSError) as kubeconfig_error:
            logger.debug(f"Kubeconfig not usable: {kubeconfig_error}")
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster config")
            except ConfigException as incluster_error:
                raise AuthenticationError(
                    f"No usable cluster credentials: kubeconfig ({kubeconfig_error}), "
                    f"in-cluster ({incluster_error})"
                )

        self.api_client = client.ApiClient()
        configuration = self.api_client.configuration
        self.api_url = configuration.host
        if self.skip_tls:
            configuration.verify_ssl = False
            configuration.ssl_ca_cert = None
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        return self.api_client

    def is_authenticated(self) -> bool:
        return self.api_client is not None
