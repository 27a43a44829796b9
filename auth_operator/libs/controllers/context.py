"""
Operator Context

Shared state of the reconciliation drivers: engines, indexes, per-kind
concurrency limits, per-object locks and the retry policy. One instance is
built at startup and handed to every kopf handler through ``memo``.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

import kopf

from ..authorizer.decision import DecisionEngine
from ..authorizer.policy import NamespaceIndex, PolicyIndex
from ..bindings.engine import BindingEngine
from ..core.config import ConfigManager
from ..core.constants import NetworkConstants
from ..core.kube import ClusterClient
from ..core.utils import backoff_delay
from ..discovery.cache import DiscoveryCache
from ..discovery.client import DiscoveryClient
from ..roles.engine import RoleEngine

logger = logging.getLogger(__name__)

ROLE_DEFINITION = "role_definition"
BIND_DEFINITION = "bind_definition"
WEBHOOK_AUTHORIZER = "webhook_authorizer"


class OperatorContext:
    """Everything the drivers need, wired once at startup"""

    def __init__(self, cluster_client, discovery_cache: DiscoveryCache,
                 config_manager: Optional[ConfigManager] = None,
                 role_engine: Optional[RoleEngine] = None,
                 binding_engine: Optional[BindingEngine] = None,
                 policy_index: Optional[PolicyIndex] = None,
                 namespace_index: Optional[NamespaceIndex] = None):
        """
        Initialize the operator context

        Args:
            cluster_client: ClusterClient (or compatible)
            discovery_cache: Discovery cache feeding the role engine
            config_manager: Loaded configuration (defaults when omitted)
            role_engine: Role engine (built from the client when omitted)
            binding_engine: Binding engine (built from the client when omitted)
            policy_index: WebhookAuthorizer index
            namespace_index: Namespace label index
        """
        self.config = config_manager or ConfigManager()
        self.client = cluster_client
        self.discovery_cache = discovery_cache
        self.role_engine = role_engine or RoleEngine(cluster_client, discovery_cache)
        self.binding_engine = binding_engine or BindingEngine(cluster_client)
        self.policy_index = policy_index or PolicyIndex()
        self.namespace_index = namespace_index or NamespaceIndex()
        self.decision_engine = DecisionEngine(self.policy_index, self.namespace_index)

        self.retry_base_delay = self.config.get_value(
            'controllers.retry.base_delay', NetworkConstants.RETRY_BASE_DELAY)
        self.retry_max_delay = self.config.get_value(
            'controllers.retry.max_delay', NetworkConstants.RETRY_MAX_DELAY)
        self.resync_interval = float(self.config.get_value(
            'controllers.resync_interval', NetworkConstants.RESYNC_INTERVAL))

        self._semaphores = {
            kind: threading.BoundedSemaphore(max(1, int(self.config.get_value(
                f'controllers.{kind}.concurrency', NetworkConstants.DEFAULT_CONCURRENCY))))
            for kind in (ROLE_DEFINITION, BIND_DEFINITION, WEBHOOK_AUTHORIZER)
        }
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

        # RoleDefinition name -> discovery generation its role was last built from
        self.applied_generations: Dict[str, int] = {}
        # (kind, name) -> monotonic time of the last timer-driven pass
        self._timer_runs: Dict[Tuple[str, str], float] = {}

    @classmethod
    def build(cls, config_manager: ConfigManager, api_client) -> 'OperatorContext':
        """Wire the context against a live API client"""
        cluster_client = ClusterClient(api_client)
        discovery_cache = DiscoveryCache(
            DiscoveryClient(api_client),
            refresh_interval=config_manager.get_value(
                'discovery.refresh_interval', NetworkConstants.DISCOVERY_REFRESH_INTERVAL),
        )
        return cls(cluster_client, discovery_cache, config_manager=config_manager)

    def concurrency(self, kind: str) -> int:
        return int(self.config.get_value(f'controllers.{kind}.concurrency', NetworkConstants.DEFAULT_CONCURRENCY))

    def _lock_for(self, kind: str, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((kind, name), threading.Lock())

    def forget(self, kind: str, name: str) -> None:
        """Drop per-object state after the object is gone"""
        with self._locks_guard:
            self._locks.pop((kind, name), None)
            self._timer_runs.pop((kind, name), None)
        if kind == ROLE_DEFINITION:
            self.applied_generations.pop(name, None)

    def timer_due(self, kind: str, name: str, interval: float, now: Optional[float] = None) -> bool:
        """
        Whether a timer pass for an object should run

        kopf ticks the timers on a short fixed interval; this applies the
        configured one. The first tick for an object only starts its clock.

        Args:
            kind: Driver kind
            name: Object name
            interval: Configured interval in seconds
            now: Monotonic timestamp (defaults to the current time)
        """
        now = time.monotonic() if now is None else now
        key = (kind, name)
        with self._locks_guard:
            last = self._timer_runs.get(key)
            if last is not None and now - last < interval:
                return False
            self._timer_runs[key] = now
            return last is not None

    @contextmanager
    def serialized(self, kind: str, name: str):
        """Bound concurrency per kind and serialize work per object"""
        with self._semaphores[kind]:
            with self._lock_for(kind, name):
                yield

    def temporary_error(self, error: Exception, retry: int) -> kopf.TemporaryError:
        delay = backoff_delay(retry or 0, self.retry_base_delay, self.retry_max_delay)
        logger.warning(f"Retrying in {delay:.0f}s after error: {error}")
        return kopf.TemporaryError(str(error), delay=delay)
