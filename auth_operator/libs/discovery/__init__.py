"""
Discovery Libraries

Reads the live API surface and keeps it as an immutable, periodically
refreshed snapshot for rule generation.
"""

from .cache import DiscoveredResource, DiscoveryCache, DiscoverySnapshot
from .client import DiscoveryClient

__all__ = [
    'DiscoveredResource',
    'DiscoveryCache',
    'DiscoveryClient',
    'DiscoverySnapshot'
]
