"""
Discovery Cache

Keeps an immutable snapshot of the API surface and refreshes it on a
background thread. Readers take the current snapshot reference and never
block on a refresh in progress.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from ..core.constants import ErrorMessages, NetworkConstants
from ..core.exceptions import AuthOperatorError, DiscoveryNotReadyError
from ..core.metrics import track_discovery

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class DiscoveredResource:
    """One API resource as reported by discovery"""
    group: str
    resource: str
    namespaced: bool
    verbs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DiscoverySnapshot:
    """
    Point-in-time view of the API surface.

    ``generation`` increases by one every time the content changes, so
    consumers can tell whether anything moved since they last looked.
    """
    resources: Tuple[DiscoveredResource, ...] = ()
    generation: int = 0
    fetched_at: float = field(default=0.0, compare=False)

    def is_empty(self) -> bool:
        return not self.resources

    def namespaced_resources(self) -> Tuple[DiscoveredResource, ...]:
        return tuple(r for r in self.resources if r.namespaced)

    def groups(self) -> Tuple[str, ...]:
        return tuple(sorted({r.group for r in self.resources}))


class DiscoveryCache:
    """Periodically refreshed discovery snapshot"""

    def __init__(self, discovery_client, refresh_interval: float = NetworkConstants.DISCOVERY_REFRESH_INTERVAL):
        """
        Initialize the discovery cache

        Args:
            discovery_client: Object with a ``discover()`` method returning
                {(group, resource, namespaced): verbs}
            refresh_interval: Seconds between refreshes
        """
        self.discovery_client = discovery_client
        self.refresh_interval = refresh_interval
        self._lock = threading.Lock()
        self._snapshot: Optional[DiscoverySnapshot] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background refresh thread (first refresh runs immediately)"""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="discovery-cache", daemon=True)
        self._thread.start()
        logger.info(f"Discovery cache started (refresh every {self.refresh_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Discovery cache stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.refresh()
            except AuthOperatorError as e:
                logger.warning(f"Discovery refresh failed, keeping previous snapshot: {e}")
            self._stop_event.wait(self.refresh_interval)

    def refresh(self) -> DiscoverySnapshot:
        """
        Fetch discovery data and swap in a new snapshot if it changed

        Returns:
            DiscoverySnapshot: The current snapshot after the refresh

        Raises:
            AuthOperatorError: If discovery fails; the previous snapshot is kept
        """
        with track_discovery():
            discovered = self.discovery_client.discover()
        resources = tuple(sorted(
            DiscoveredResource(group=group, resource=resource, namespaced=namespaced, verbs=tuple(verbs))
            for (group, resource, namespaced), verbs in discovered.items()
        ))

        with self._lock:
            current = self._snapshot
            if current is not None and current.resources == resources:
                return current
            generation = current.generation + 1 if current is not None else 1
            self._snapshot = DiscoverySnapshot(resources=resources, generation=generation,
                                               fetched_at=time.time())
            logger.info(f"Discovery snapshot generation {generation}: {len(resources)} resources")
            return self._snapshot

    def snapshot(self) -> Optional[DiscoverySnapshot]:
        """Current snapshot, or None before the first successful refresh"""
        return self._snapshot

    def require_snapshot(self) -> DiscoverySnapshot:
        """
        Current snapshot for consumers that cannot proceed without one

        Raises:
            DiscoveryNotReadyError: If no snapshot exists yet or it is empty
        """
        snapshot = self._snapshot
        if snapshot is None:
            raise DiscoveryNotReadyError(ErrorMessages.DISCOVERY_NOT_READY)
        if snapshot.is_empty():
            raise DiscoveryNotReadyError(ErrorMessages.DISCOVERY_EMPTY)
        return snapshot

    def is_ready(self) -> bool:
        snapshot = self._snapshot
        return snapshot is not None and not snapshot.is_empty()

    @property
    def generation(self) -> int:
        snapshot = self._snapshot
        return snapshot.generation if snapshot else 0
