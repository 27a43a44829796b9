"""
Prometheus Metrics

Reconciliation, API discovery and RBAC write counters. Every series lives in
the default prometheus_client registry and is served by the webhook app on
``/metrics``.
"""

import time
from contextlib import contextmanager
from typing import Optional

from prometheus_client import Counter, Histogram

from .exceptions import AuthOperatorError, NotManagedError, TransientError, ValidationError

NAMESPACE = "auth_operator"


class Result:
    """Values of the ``result`` label"""
    SUCCESS = "success"
    ERROR = "error"
    REQUEUE = "requeue"
    SKIPPED = "skipped"
    FINALIZED = "finalized"


class ErrorType:
    """Values of the ``error_type`` label"""
    API = "api"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


RECONCILE_TOTAL = Counter(
    'reconcile_total', 'Total number of reconciliations per controller',
    ['controller', 'result'], namespace=NAMESPACE)
RECONCILE_DURATION = Histogram(
    'reconcile_duration_seconds', 'Duration of reconciliations in seconds',
    ['controller'], namespace=NAMESPACE)
RECONCILE_ERRORS = Counter(
    'reconcile_errors_total', 'Total number of reconciliation errors by type',
    ['controller', 'error_type'], namespace=NAMESPACE)

API_DISCOVERY_DURATION = Histogram(
    'api_discovery_duration_seconds', 'Duration of API discovery refreshes in seconds',
    namespace=NAMESPACE)
API_DISCOVERY_ERRORS = Counter(
    'api_discovery_errors_total', 'Total number of failed API discovery refreshes',
    namespace=NAMESPACE)

RBAC_RESOURCES_CREATED = Counter(
    'rbac_resources_created_total', 'RBAC objects created by the operator',
    ['resource_type'], namespace=NAMESPACE)
RBAC_RESOURCES_UPDATED = Counter(
    'rbac_resources_updated_total', 'RBAC objects updated by the operator',
    ['resource_type'], namespace=NAMESPACE)
RBAC_RESOURCES_DELETED = Counter(
    'rbac_resources_deleted_total', 'RBAC objects deleted by the operator',
    ['resource_type'], namespace=NAMESPACE)

_RBAC_COUNTERS = {
    "created": RBAC_RESOURCES_CREATED,
    "updated": RBAC_RESOURCES_UPDATED,
    "deleted": RBAC_RESOURCES_DELETED,
}


def error_type(error: Exception) -> str:
    """Map an operator error onto an ``error_type`` label value"""
    if isinstance(error, NotManagedError):
        return ErrorType.CONFLICT
    if isinstance(error, ValidationError):
        return ErrorType.VALIDATION
    if isinstance(error, AuthOperatorError):
        return ErrorType.API
    return ErrorType.INTERNAL


def record_rbac_change(action: str, kind: str) -> None:
    """
    Count one write to an RBAC object or ServiceAccount

    Args:
        action: "created", "updated" or "deleted"
        kind: Kind of the written object
    """
    _RBAC_COUNTERS[action].labels(resource_type=kind).inc()


def record_result(controller: str, result: str, error_kind: Optional[str] = None) -> None:
    """Count one reconciliation outcome, and its error type when it failed"""
    RECONCILE_TOTAL.labels(controller=controller, result=result).inc()
    if error_kind:
        RECONCILE_ERRORS.labels(controller=controller, error_type=error_kind).inc()


@contextmanager
def track_reconcile(controller: str, success: str = Result.SUCCESS):
    """
    Time a reconciliation and count its outcome

    Transient failures count as ``requeue``, everything else as ``error``.
    The exception is re-raised unchanged.

    Args:
        controller: Controller label (kind of the reconciled object)
        success: Result recorded when the block completes
    """
    started = time.monotonic()
    try:
        yield
    except Exception as e:
        result = Result.REQUEUE if isinstance(e, TransientError) else Result.ERROR
        record_result(controller, result, error_type(e))
        raise
    else:
        record_result(controller, success)
    finally:
        RECONCILE_DURATION.labels(controller=controller).observe(time.monotonic() - started)


@contextmanager
def track_discovery():
    """Time an API discovery refresh and count it when it fails"""
    started = time.monotonic()
    try:
        yield
    except Exception:
        API_DISCOVERY_ERRORS.inc()
        raise
    finally:
        API_DISCOVERY_DURATION.observe(time.monotonic() - started)
