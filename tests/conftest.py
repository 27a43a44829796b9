"""
Shared fixtures

An in-memory stand-in for ClusterClient plus builders for the declared
kinds, so engine and driver tests run without an API server.
"""

import copy
import itertools
from unittest.mock import Mock

import pytest

from auth_operator.libs.core.exceptions import TransientError
from auth_operator.libs.discovery.cache import DiscoveryCache

from test_constants import AuthOperatorTestConstants as C


def _parse_equality_selector(selector):
    if not selector:
        return {}
    pairs = {}
    for part in selector.split(','):
        key, _, value = part.partition('=')
        pairs[key.strip()] = value.strip()
    return pairs


def _labels(obj):
    return (obj.get('metadata') or {}).get('labels') or {}


class FakeClusterClient:
    """Dict-backed ClusterClient with failure injection"""

    def __init__(self):
        self.objects = {}
        self.namespaces = {}
        self.declared = {}
        self.patches = []
        self.calls = []
        self.failures = {}
        self._versions = itertools.count(1)

    # -- helpers --------------------------------------------------------

    def fail(self, verb, kind, name, error=None):
        """Make the next matching calls raise ``error``"""
        self.failures[(verb, kind, name)] = error or TransientError(f"injected {verb} failure")

    def _check(self, verb, kind, name):
        self.calls.append((verb, kind, name))
        error = self.failures.get((verb, kind, name))
        if error is not None:
            raise error

    def add(self, obj):
        """Seed an object without recording a call"""
        stored = copy.deepcopy(obj)
        stored.setdefault('metadata', {}).setdefault('resourceVersion', str(next(self._versions)))
        metadata = stored['metadata']
        self.objects[(stored['kind'], metadata.get('namespace'), metadata['name'])] = stored
        return stored

    def add_namespace(self, name, labels=None, terminating=False):
        namespace = {'metadata': {'name': name, 'labels': dict(labels or {})},
                     'status': {'phase': 'Terminating' if terminating else 'Active'}}
        self.namespaces[name] = namespace
        return namespace

    def add_declared(self, plural, obj):
        self.declared[(str(plural), obj['metadata']['name'])] = copy.deepcopy(obj)

    def stored(self, kind, name, namespace=None):
        return self.objects.get((kind, namespace, name))

    def names(self, kind):
        return sorted(
            f"{namespace}/{name}" if namespace else name
            for (stored_kind, namespace, name) in self.objects
            if stored_kind == kind
        )

    # -- ClusterClient surface ------------------------------------------

    def get(self, kind, name, namespace=None):
        self._check('get', kind, name)
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def create(self, kind, body):
        metadata = body['metadata']
        self._check('create', kind, metadata['name'])
        key = (kind, metadata.get('namespace'), metadata['name'])
        if key in self.objects:
            raise TransientError(f"{kind} {metadata['name']} already exists")
        stored = copy.deepcopy(body)
        stored['kind'] = kind
        stored['metadata']['resourceVersion'] = str(next(self._versions))
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def replace(self, kind, body):
        metadata = body['metadata']
        self._check('replace', kind, metadata['name'])
        key = (kind, metadata.get('namespace'), metadata['name'])
        if key not in self.objects:
            raise TransientError(f"{kind} {metadata['name']} not found")
        stored = copy.deepcopy(body)
        stored['kind'] = kind
        stored['metadata']['resourceVersion'] = str(next(self._versions))
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def delete(self, kind, name, namespace=None):
        self._check('delete', kind, name)
        return self.objects.pop((kind, namespace, name), None) is not None

    def list(self, kind, label_selector=None):
        self._check('list', kind, None)
        wanted = _parse_equality_selector(label_selector)
        return [
            copy.deepcopy(obj)
            for (stored_kind, _, _), obj in sorted(self.objects.items(), key=lambda item: str(item[0]))
            if stored_kind == kind and all(_labels(obj).get(k) == v for k, v in wanted.items())
        ]

    def list_namespaces(self, label_selector=None):
        # Selector filtering is left to the caller's local match
        return [copy.deepcopy(ns) for _, ns in sorted(self.namespaces.items())]

    def get_namespace(self, name):
        namespace = self.namespaces.get(name)
        return copy.deepcopy(namespace) if namespace is not None else None

    def list_declared(self, plural):
        return [copy.deepcopy(obj) for (stored_plural, _), obj in sorted(self.declared.items())
                if stored_plural == str(plural)]

    def patch_declared(self, plural, name, body):
        self._check('patch', str(plural), name)
        self.patches.append((str(plural), name, copy.deepcopy(body)))
        obj = self.declared.get((str(plural), name))
        if obj is not None:
            metadata = obj.setdefault('metadata', {})
            for key, value in (body.get('metadata') or {}).items():
                if isinstance(value, dict):
                    metadata.setdefault(key, {}).update(value)
                elif key != 'resourceVersion':
                    metadata[key] = value
        return copy.deepcopy(obj) if obj is not None else body


@pytest.fixture
def cluster():
    """Empty in-memory cluster"""
    return FakeClusterClient()


@pytest.fixture
def discovery_client():
    client = Mock()
    client.discover.return_value = copy.deepcopy(C.DISCOVERY)
    return client


@pytest.fixture
def discovery_cache(discovery_client):
    """Discovery cache holding one snapshot of C.DISCOVERY"""
    cache = DiscoveryCache(discovery_client, refresh_interval=3600)
    cache.refresh()
    return cache


def build_role_definition(name="tenant-reader", uid="uid-rd-1", created="2026-01-01T00:00:00Z",
                          finalizers=None, **spec):
    spec.setdefault('targetRole', 'ClusterRole')
    spec.setdefault('targetName', 'tenant-reader-role')
    spec.setdefault('scopeNamespaced', True)
    return {
        'apiVersion': C.API_VERSION,
        'kind': 'RoleDefinition',
        'metadata': {
            'name': name,
            'uid': uid,
            'generation': 1,
            'resourceVersion': '10',
            'creationTimestamp': created,
            'finalizers': list(finalizers or []),
        },
        'spec': spec,
    }


def build_bind_definition(name="dev-binder", uid="uid-bd-1", created="2026-01-01T00:00:00Z",
                          finalizers=None, status=None, **spec):
    spec.setdefault('targetName', 'dev-team')
    spec.setdefault('subjects', [{'kind': 'User', 'name': 'alice'}])
    obj = {
        'apiVersion': C.API_VERSION,
        'kind': 'BindDefinition',
        'metadata': {
            'name': name,
            'uid': uid,
            'generation': 1,
            'resourceVersion': '20',
            'creationTimestamp': created,
            'finalizers': list(finalizers or []),
        },
        'spec': spec,
    }
    if status is not None:
        obj['status'] = status
    return obj


@pytest.fixture
def role_definition():
    """Factory for RoleDefinition objects"""
    return build_role_definition


@pytest.fixture
def bind_definition():
    """Factory for BindDefinition objects"""
    return build_bind_definition
