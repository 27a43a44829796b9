"""
Authorization Decision Engine

Evaluates an access request against every applicable WebhookAuthorizer.
Deny overrides Allow across all applicable policies; when nothing matches
the engine abstains so that other authorizers in the chain decide.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from ..core.constants import KubernetesConstants
from ..core.data_models import NonResourceRule, Principal, ResourceRule, WebhookAuthorizerSpec
from ..core.selectors import selector_matches
from ..core.utils import capped_groups
from .policy import NamespaceIndex, PolicyIndex

logger = logging.getLogger(__name__)

WILDCARD = "*"


class Decision(str, Enum):
    """Outcome of an authorization decision"""
    ALLOW = "Allow"
    DENY = "Deny"
    ABSTAIN = "Abstain"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AccessRequest:
    """
    The requester and attempted action of a SubjectAccessReview.

    ``resource`` is empty for non-resource requests, which carry ``path``.
    """
    user: str = ""
    groups: List[str] = field(default_factory=list)
    verb: str = ""
    api_group: str = ""
    resource: str = ""
    subresource: str = ""
    name: str = ""
    namespace: str = ""
    path: str = ""
    is_resource_request: bool = True


@dataclass(frozen=True)
class DecisionResult:
    decision: Decision
    reason: str
    policy_name: Optional[str] = None
    evaluated: int = 0

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW

    @property
    def denied(self) -> bool:
        return self.decision == Decision.DENY


def _matches(patterns: Iterable[str], value: str) -> bool:
    return any(pattern == WILDCARD or pattern == value for pattern in patterns)


def _path_matches(patterns: Iterable[str], path: str) -> bool:
    for pattern in patterns:
        if pattern == WILDCARD or pattern == path:
            return True
        if pattern.endswith(WILDCARD) and path.startswith(pattern[:-1]):
            return True
    return False


def resource_rule_matches(rule: ResourceRule, request: AccessRequest) -> bool:
    return (_matches(rule.verbs, request.verb)
            and _matches(rule.api_groups, request.api_group)
            and _matches(rule.resources, request.resource))


def non_resource_rule_matches(rule: NonResourceRule, request: AccessRequest) -> bool:
    return _matches(rule.verbs, request.verb) and _path_matches(rule.non_resource_urls, request.path)


def principal_matches(principals: Iterable[Principal], user: str, groups: Iterable[str]) -> bool:
    """
    Whether the requester matches any principal

    A principal matches on its user name, on any shared group, or, when it
    names a namespace, on the service account user
    ``system:serviceaccount:<namespace>:<user>``.
    """
    groups = set(groups or [])
    for principal in principals:
        if principal.user and principal.user == user:
            return True
        if principal.groups and groups.intersection(principal.groups):
            return True
        if principal.namespace and principal.user:
            expected = f"{KubernetesConstants.SERVICE_ACCOUNT_USER_PREFIX}{principal.namespace}:{principal.user}"
            if user == expected:
                return True
    return False


class DecisionEngine:
    """Answers access requests from the policy and namespace indexes"""

    def __init__(self, policy_index: PolicyIndex, namespace_index: NamespaceIndex):
        """
        Initialize the decision engine

        Args:
            policy_index: Index of valid WebhookAuthorizers
            namespace_index: Index of namespace labels
        """
        self.policy_index = policy_index
        self.namespace_index = namespace_index

    def is_applicable(self, spec: WebhookAuthorizerSpec, request: AccessRequest) -> bool:
        """
        Whether a policy speaks to the request at all

        A rule must match the action, and a non-empty namespace selector must
        match the labels of the request's namespace. Unknown namespaces,
        cluster-scoped and non-resource requests never match a selector.
        """
        if request.is_resource_request:
            if not any(resource_rule_matches(rule, request) for rule in spec.resource_rules):
                return False
        elif not any(non_resource_rule_matches(rule, request) for rule in spec.non_resource_rules):
            return False

        selector = spec.namespace_selector
        if selector is None or selector.is_empty():
            return True
        if not request.is_resource_request or not request.namespace:
            return False
        labels = self.namespace_index.labels(request.namespace)
        if labels is None:
            return False
        return selector_matches(selector, dict(labels))

    def decide(self, request: AccessRequest) -> DecisionResult:
        """
        Decide a request

        Args:
            request: Access request

        Returns:
            DecisionResult with decision, reason and deciding policy
        """
        policies = self.policy_index.snapshot()
        applicable = [(name, spec) for name, spec in policies if self.is_applicable(spec, request)]

        result = None
        for name, spec in applicable:
            if principal_matches(spec.denied_principals, request.user, request.groups):
                result = DecisionResult(Decision.DENY, f"Access denied by WebhookAuthorizer {name}",
                                        name, len(policies))
                break
        if result is None:
            for name, spec in applicable:
                if principal_matches(spec.allowed_principals, request.user, request.groups):
                    result = DecisionResult(Decision.ALLOW, f"Access granted by WebhookAuthorizer {name}",
                                            name, len(policies))
                    break
        if result is None:
            result = DecisionResult(Decision.ABSTAIN, "No WebhookAuthorizer matched the request",
                                    None, len(policies))

        self._log_decision(request, result)
        return result

    @staticmethod
    def _log_decision(request: AccessRequest, result: DecisionResult) -> None:
        if request.is_resource_request:
            target = f"{request.verb} {request.api_group or 'core'}/{request.resource}"
            if request.namespace:
                target += f" in {request.namespace}"
        else:
            target = f"{request.verb} {request.path}"
        message = (f"{result.decision} user={request.user} groups={capped_groups(request.groups)} "
                   f"action={target} policy={result.policy_name or '-'} evaluated={result.evaluated}")
        if result.decision == Decision.DENY:
            logger.info(message)
        else:
            logger.debug(message)
