"""
Core Utilities

Common utility functions used across the auth-operator.
"""

import hashlib
import logging
import re
import urllib3
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Type

from kubernetes.client.rest import ApiException

from .constants import ErrorMessages, KubernetesConstants, NetworkConstants
from .exceptions import (
    AuthOperatorError, AuthenticationError, TransientError, ValidationError
)

DNS_LABEL_PATTERN = r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$'

# Failures of an API call; anything else is a bug and propagates
API_CALL_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)


def setup_logging(debug: bool = False) -> None:
    """
    Set up logging configuration for the application.

    Args:
        debug: Enable debug logging level
    """
    level = logging.DEBUG if debug else logging.INFO

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from the HTTP stack
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('kubernetes').setLevel(logging.WARNING)

    if debug:
        logger = logging.getLogger(__name__)
        logger.debug("Debug mode enabled")


def disable_ssl_warnings() -> None:
    """Disable SSL warnings when skip_tls is configured"""
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def mask_sensitive_info(text: str, token: str = None) -> str:
    """
    Mask sensitive information in text for logging and debug output.

    Args:
        text: Text to mask
        token: Token to mask (optional)

    Returns:
        Text with sensitive information masked
    """
    if not text:
        return text

    masked_text = text
    if token and token in masked_text:
        masked_text = masked_text.replace(token, "***MASKED***")

    masked_text = re.sub(r'Bearer [A-Za-z0-9+/=_.-]+', 'Bearer ***MASKED***', masked_text)
    masked_text = re.sub(r'Basic [A-Za-z0-9+/=]+', 'Basic ***MASKED***', masked_text)
    return masked_text


def validate_namespace(namespace: str) -> bool:
    """
    Validate if the provided string is a valid Kubernetes namespace.

    Args:
        namespace: Kubernetes namespace to validate

    Returns:
        bool: True if valid namespace

    Raises:
        ValidationError: If namespace is invalid
    """
    if not namespace or not isinstance(namespace, str):
        raise ValidationError("Namespace cannot be empty")

    if not re.match(DNS_LABEL_PATTERN, namespace):
        raise ValidationError(f"Invalid Kubernetes namespace format: {namespace}")

    if len(namespace) > 63:
        raise ValidationError(f"Namespace too long (max 63 chars): {namespace}")

    return True


def validate_target_name(name: str, field: str = "targetName") -> bool:
    """
    Validate a generated object name (DNS label, 5 to 63 characters).

    Raises:
        ValidationError: If the name is invalid
    """
    if not name or not isinstance(name, str):
        raise ValidationError(f"{field} cannot be empty")
    if len(name) < 5 or len(name) > 63:
        raise ValidationError(f"{field} must be between 5 and 63 characters: {name}")
    if not re.match(DNS_LABEL_PATTERN, name):
        raise ValidationError(f"Invalid {field} format: {name}")
    return True


def build_binding_name(target_name: str, role_ref: str) -> str:
    """
    Build the deterministic name of a generated binding.

    Format is ``{target_name}-{role_ref}-binding``. Names longer than the
    Kubernetes limit are truncated and suffixed with a short hash of the
    full name so they stay unique.

    Args:
        target_name: BindDefinition target name
        role_ref: Referenced role name

    Returns:
        str: Binding name
    """
    full_name = f"{target_name}-{role_ref}-{KubernetesConstants.BINDING_SUFFIX}"
    max_length = KubernetesConstants.MAX_RESOURCE_NAME_LENGTH
    if len(full_name) <= max_length:
        return full_name

    hash_suffix = hashlib.sha256(full_name.encode('utf-8')).hexdigest()[:8]
    return full_name[:max_length - 1 - len(hash_suffix)] + "-" + hash_suffix


def parse_name_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated annotation value into a list of names"""
    if not value:
        return []
    return [name.strip() for name in value.split(',') if name.strip()]


def merge_name_list(existing: Optional[str], name: str) -> str:
    """Add a name to a comma-separated list if not already present"""
    names = parse_name_list(existing)
    if name not in names:
        names.append(name)
    return ",".join(names)


def remove_from_name_list(existing: Optional[str], name: str) -> str:
    """Remove a name from a comma-separated list"""
    return ",".join(n for n in parse_name_list(existing) if n != name)


def capped_groups(groups: Iterable[str], limit: int = NetworkConstants.MAX_LOGGED_GROUPS) -> List[str]:
    """Return at most ``limit`` groups, with a marker for the remainder"""
    groups = list(groups or [])
    if len(groups) <= limit:
        return groups
    return groups[:limit] + [f"...and {len(groups) - limit} more"]


def backoff_delay(retry: int, base_delay: float, max_delay: float) -> float:
    """
    Exponential backoff delay for the given retry attempt.

    Args:
        retry: Zero-based retry counter
        base_delay: Delay of the first retry in seconds
        max_delay: Upper bound in seconds

    Returns:
        float: Delay in seconds
    """
    if retry < 0:
        retry = 0
    return min(base_delay * (2 ** min(retry, 32)), max_delay)


def utc_now() -> str:
    """Current UTC time in RFC 3339 format with second precision"""
    return datetime.now(timezone.utc).replace(microsecond=0).strftime('%Y-%m-%dT%H:%M:%SZ')


def handle_ssl_error(error: Exception, exception_class: Type[AuthOperatorError] = AuthenticationError) -> None:
    """
    Centralized SSL error handling with user-friendly messages

    Args:
        error: The caught exception
        exception_class: The specific exception class to raise

    Raises:
        AuthOperatorError: Appropriate error type with user-friendly message
    """
    error_str = str(error)

    if "certificate verify failed" in error_str or "CERTIFICATE_VERIFY_FAILED" in error_str:
        raise exception_class(ErrorMessages.SSL_CERT_VERIFICATION_FAILED)
    elif "SSLError" in error_str or "SSL:" in error_str:
        raise exception_class(ErrorMessages.SSL_CONNECTION_ERROR.format(error=error))
    else:
        raise exception_class(f"Connection error: {error}")


def handle_network_error(error: Exception, context: str = "",
                         exception_class: Type[AuthOperatorError] = TransientError) -> None:
    """
    Centralized network error handling with context-specific messages

    Args:
        error: The caught exception
        context: Context information for better error messages
        exception_class: The specific exception class to raise

    Raises:
        AuthOperatorError: Appropriate error type with user-friendly message
    """
    error_str = str(error).lower()

    if "connection refused" in error_str:
        raise exception_class(f"{context}: {ErrorMessages.CONNECTION_REFUSED}")
    elif "timeout" in error_str or "timed out" in error_str:
        raise exception_class(f"{context}: {ErrorMessages.CONNECTION_TIMEOUT}")
    elif "ssl" in error_str and "certificate" in error_str:
        handle_ssl_error(error, exception_class)
    else:
        raise exception_class(f"{context}: {error}")


def handle_api_error(error: Exception, context: str = "") -> None:
    """
    Centralized API error handling for Kubernetes API exceptions

    Maps status codes onto the error taxonomy: 401/403 to
    AuthenticationError, 400/422 to ValidationError, everything else
    (409 conflicts, 429, 5xx, connection problems) to TransientError.

    Args:
        error: The caught exception (ApiException or other)
        context: Operation description for the error message

    Raises:
        AuthOperatorError: Appropriate error type with user-friendly message
    """
    prefix = f"{context}: " if context else ""

    if isinstance(error, ApiException):
        status = error.status or 0
        reason = error.reason or ""
        if status == 401:
            raise AuthenticationError(
                f"{prefix}Unauthorized (401). Verify that the operator credentials are valid."
            )
        if status == 403:
            raise AuthenticationError(
                f"{prefix}Forbidden (403). The operator service account lacks the necessary RBAC permissions."
            )
        if status in (400, 422):
            raise ValidationError(f"{prefix}Rejected by the API server ({status}): {reason}")
        raise TransientError(f"{prefix}API error ({status}): {reason}")

    if isinstance(error, AuthOperatorError):
        raise error

    error_str = str(error).lower()
    if any(ssl_indicator in error_str for ssl_indicator in ["ssl", "certificate", "tls"]):
        handle_ssl_error(error, TransientError)
    handle_network_error(error, context or "API connection failed", TransientError)
