"""
Policy and namespace indexes.

In-memory views of WebhookAuthorizer objects and namespace labels, fed by
watch events. Writers build a new mapping and swap the reference under a
lock; readers take the current mapping and evaluate without locking.
"""

import logging
import threading
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from ..core.data_models import WebhookAuthorizerSpec

logger = logging.getLogger(__name__)


class PolicyIndex:
    """Valid WebhookAuthorizer specs by object name"""

    def __init__(self):
        self._lock = threading.Lock()
        self._policies: Tuple[Tuple[str, WebhookAuthorizerSpec], ...] = ()
        self._synced = threading.Event()

    def upsert(self, name: str, spec: WebhookAuthorizerSpec) -> None:
        with self._lock:
            policies = dict(self._policies)
            policies[name] = spec
            self._policies = tuple(sorted(policies.items(), key=lambda item: item[0]))
        logger.debug(f"Policy index: upserted WebhookAuthorizer {name}")

    def remove(self, name: str) -> bool:
        """
        Remove a policy

        Returns:
            bool: True if the policy was present
        """
        with self._lock:
            policies = dict(self._policies)
            if policies.pop(name, None) is None:
                return False
            self._policies = tuple(sorted(policies.items(), key=lambda item: item[0]))
        logger.debug(f"Policy index: removed WebhookAuthorizer {name}")
        return True

    def snapshot(self) -> Tuple[Tuple[str, WebhookAuthorizerSpec], ...]:
        """Immutable (name, spec) pairs sorted by name"""
        return self._policies

    def mark_synced(self) -> None:
        if not self._synced.is_set():
            logger.info(f"Policy index synced with {len(self._policies)} WebhookAuthorizers")
        self._synced.set()

    def is_synced(self) -> bool:
        return self._synced.is_set()

    def __len__(self) -> int:
        return len(self._policies)


class NamespaceIndex:
    """Namespace labels by namespace name"""

    def __init__(self):
        self._lock = threading.Lock()
        self._labels: Mapping[str, Mapping[str, str]] = MappingProxyType({})

    def upsert(self, name: str, labels: Optional[Dict[str, str]]) -> None:
        with self._lock:
            current = dict(self._labels)
            current[name] = MappingProxyType(dict(labels or {}))
            self._labels = MappingProxyType(current)

    def remove(self, name: str) -> None:
        with self._lock:
            if name not in self._labels:
                return
            current = dict(self._labels)
            del current[name]
            self._labels = MappingProxyType(current)

    def labels(self, name: str) -> Optional[Mapping[str, str]]:
        """Labels of a namespace, or None when the namespace is unknown"""
        return self._labels.get(name)

    def snapshot(self) -> Mapping[str, Mapping[str, str]]:
        return self._labels

    def __len__(self) -> int:
        return len(self._labels)
