"""
Tests for the policy index, the decision engine and WebhookAuthorizer validation
"""

import logging

import pytest

from auth_operator.libs.authorizer import (
    AccessRequest, Decision, DecisionEngine, NamespaceIndex, PolicyIndex,
    authorizer_conditions, validate_webhook_authorizer
)
from auth_operator.libs.core.conditions import get_condition
from auth_operator.libs.core.data_models import WebhookAuthorizerSpec, from_dict


def policy(**values):
    return from_dict(WebhookAuthorizerSpec, values)


READ_PODS = [{'verbs': ['get', 'list'], 'apiGroups': [''], 'resources': ['pods']}]


@pytest.fixture
def indexes():
    policies = PolicyIndex()
    namespaces = NamespaceIndex()
    namespaces.upsert('prod', {'env': 'prod'})
    namespaces.upsert('dev', {'env': 'dev'})
    return policies, namespaces


@pytest.fixture
def engine(indexes):
    return DecisionEngine(*indexes)


def pods_request(user="alice", groups=None, verb="get", namespace="dev"):
    return AccessRequest(user=user, groups=list(groups or []), verb=verb, api_group="",
                         resource="pods", namespace=namespace)


class TestPolicyIndex:
    """Test the copy-on-write policy index"""

    def test_snapshot_is_sorted_and_stable(self):
        """Test that readers keep their snapshot while writers swap it"""
        # Arrange
        index = PolicyIndex()
        index.upsert("zeta", policy())
        index.upsert("alpha", policy())

        # Act
        before = index.snapshot()
        removed = index.remove("zeta")
        missing = index.remove("zeta")

        # Assert
        assert [name for name, _ in before] == ["alpha", "zeta"]
        assert [name for name, _ in index.snapshot()] == ["alpha"]
        assert removed is True
        assert missing is False
        assert len(index) == 1

    def test_sync_flag(self):
        """Test that readiness is reported only after the initial load"""
        # Arrange
        index = PolicyIndex()

        # Act & Assert
        assert index.is_synced() is False
        index.mark_synced()
        assert index.is_synced() is True


class TestDecisionEngine:
    """Test deny-overrides-allow evaluation"""

    def test_allow_by_user(self, indexes, engine):
        """Test that a matching allowed principal grants access"""
        # Arrange
        indexes[0].upsert("readers", policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}]))

        # Act
        result = engine.decide(pods_request())

        # Assert
        assert result.decision == Decision.ALLOW
        assert result.allowed is True
        assert result.reason == "Access granted by WebhookAuthorizer readers"
        assert result.policy_name == "readers"

    def test_deny_overrides_allow_across_policies(self, indexes, engine):
        """Test that a deny in any applicable policy beats an allow in another"""
        # Arrange
        indexes[0].upsert("a-allow", policy(resourceRules=READ_PODS, allowedPrincipals=[{'groups': ['devs']}]))
        indexes[0].upsert("b-deny", policy(resourceRules=READ_PODS, deniedPrincipals=[{'user': 'alice'}]))

        # Act
        result = engine.decide(pods_request(groups=['devs']))

        # Assert
        assert result.decision == Decision.DENY
        assert result.denied is True
        assert result.reason == "Access denied by WebhookAuthorizer b-deny"

    def test_deny_in_inapplicable_policy_is_ignored(self, indexes, engine):
        """Test that a deny only counts when its policy applies to the request"""
        # Arrange
        indexes[0].upsert("allow", policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}]))
        indexes[0].upsert("deny-secrets", policy(
            resourceRules=[{'verbs': ['*'], 'apiGroups': ['*'], 'resources': ['secrets']}],
            deniedPrincipals=[{'user': 'alice'}]))

        # Act
        result = engine.decide(pods_request())

        # Assert
        assert result.decision == Decision.ALLOW

    def test_abstain_when_nothing_matches(self, indexes, engine):
        """Test that the engine never defaults to allow or deny"""
        # Arrange
        indexes[0].upsert("readers", policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'bob'}]))

        # Act
        unmatched_principal = engine.decide(pods_request())
        unmatched_rule = engine.decide(pods_request(verb="delete"))

        # Assert
        for result in (unmatched_principal, unmatched_rule):
            assert result.decision == Decision.ABSTAIN
            assert result.allowed is False
            assert result.denied is False
            assert result.reason == "No WebhookAuthorizer matched the request"
            assert result.evaluated == 1

    def test_wildcards_match_every_value(self, indexes, engine):
        """Test wildcard verbs, groups and resources"""
        # Arrange
        indexes[0].upsert("admins", policy(
            resourceRules=[{'verbs': ['*'], 'apiGroups': ['*'], 'resources': ['*']}],
            allowedPrincipals=[{'groups': ['admins']}]))
        request = AccessRequest(user="root", groups=["admins"], verb="delete", api_group="apps",
                                resource="deployments", namespace="prod")

        # Act & Assert
        assert engine.decide(request).decision == Decision.ALLOW

    def test_namespace_selector(self, indexes, engine):
        """Test that a selector restricts a policy to matching namespaces"""
        # Arrange
        indexes[0].upsert("prod-readers", policy(
            resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}],
            namespaceSelector={'matchLabels': {'env': 'prod'}}))

        # Act
        in_prod = engine.decide(pods_request(namespace="prod"))
        in_dev = engine.decide(pods_request(namespace="dev"))
        unknown = engine.decide(pods_request(namespace="unknown"))
        cluster_wide = engine.decide(pods_request(namespace=""))

        # Assert
        assert in_prod.decision == Decision.ALLOW
        assert in_dev.decision == Decision.ABSTAIN
        assert unknown.decision == Decision.ABSTAIN
        assert cluster_wide.decision == Decision.ABSTAIN

    def test_namespace_label_change_takes_effect(self, indexes, engine):
        """Test that namespace label updates are visible to the next decision"""
        # Arrange
        indexes[0].upsert("prod-readers", policy(
            resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}],
            namespaceSelector={'matchLabels': {'env': 'prod'}}))

        # Act
        indexes[1].upsert('dev', {'env': 'prod'})

        # Assert
        assert engine.decide(pods_request(namespace="dev")).decision == Decision.ALLOW

    def test_non_resource_prefix_match(self, indexes, engine):
        """Test trailing wildcard matching of non-resource URLs"""
        # Arrange
        indexes[0].upsert("logs", policy(
            nonResourceRules=[{'verbs': ['get'], 'nonResourceURLs': ['/logs/*']}],
            allowedPrincipals=[{'user': 'alice'}]))

        # Act
        matched = engine.decide(AccessRequest(user="alice", verb="get", path="/logs/kube.log",
                                              is_resource_request=False))
        other = engine.decide(AccessRequest(user="alice", verb="get", path="/metrics",
                                            is_resource_request=False))

        # Assert
        assert matched.decision == Decision.ALLOW
        assert other.decision == Decision.ABSTAIN

    def test_service_account_principal(self, indexes, engine):
        """Test that a namespaced principal matches the service account user"""
        # Arrange
        indexes[0].upsert("ci", policy(resourceRules=READ_PODS,
                                       allowedPrincipals=[{'user': 'ci', 'namespace': 'build'}]))

        # Act
        result = engine.decide(pods_request(user="system:serviceaccount:build:ci"))

        # Assert
        assert result.decision == Decision.ALLOW

    def test_deny_is_logged_at_info(self, indexes, engine, caplog):
        """Test that denials are visible at the default log level"""
        # Arrange
        indexes[0].upsert("deny", policy(resourceRules=READ_PODS, deniedPrincipals=[{'user': 'alice'}]))
        groups = [f"group-{i}" for i in range(15)]

        # Act
        with caplog.at_level(logging.INFO, logger="auth_operator.libs.authorizer.decision"):
            engine.decide(pods_request(groups=groups))

        # Assert
        messages = [record.getMessage() for record in caplog.records]
        assert any(message.startswith("Deny user=alice") for message in messages)
        assert any("...and 5 more" in message for message in messages)


class TestWebhookAuthorizerValidation:
    """Test validation errors, warnings and status conditions"""

    def test_valid_spec(self):
        """Test a valid spec ends up Ready"""
        # Arrange
        spec = policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}],
                      namespaceSelector={'matchLabels': {'env': 'prod'}})

        # Act
        errors, warnings = validate_webhook_authorizer(spec)
        conditions = authorizer_conditions(spec, errors, [], 3)

        # Assert
        assert errors == []
        assert warnings == []
        assert get_condition(conditions, "Ready")['status'] == "True"
        assert get_condition(conditions, "Ready")['reason'] == "AuthorizerReady"
        assert get_condition(conditions, "NamespaceSelectorValid")['reason'] == "SelectorValid"
        assert get_condition(conditions, "PrincipalConfigured")['status'] == "True"
        assert get_condition(conditions, "Stalled") is None
        assert all(c['observedGeneration'] == 3 for c in conditions)

    def test_invalid_selector_stalls(self):
        """Test that an unparseable selector marks the object Stalled"""
        # Arrange
        spec = policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}],
                      namespaceSelector={'matchExpressions': [{'key': 'env', 'operator': 'In'}]})

        # Act
        errors, _ = validate_webhook_authorizer(spec)
        conditions = authorizer_conditions(spec, errors, [], 1)

        # Assert
        assert len(errors) == 1
        assert get_condition(conditions, "NamespaceSelectorValid")['status'] == "False"
        assert get_condition(conditions, "RulesValid")['status'] == "True"
        assert get_condition(conditions, "Stalled")['reason'] == "InvalidNamespaceSelector"
        assert get_condition(conditions, "Ready")['status'] == "False"

    def test_missing_rules_and_principals(self):
        """Test that an empty spec is invalid and reports missing principals"""
        # Arrange
        spec = policy()

        # Act
        errors, warnings = validate_webhook_authorizer(spec)
        conditions = authorizer_conditions(spec, errors, [], 1)

        # Assert
        assert "at least one resourceRule or nonResourceRule is required" in errors
        assert warnings
        assert get_condition(conditions, "RulesValid")['reason'] == "InvalidRules"
        assert get_condition(conditions, "PrincipalConfigured")['status'] == "False"
        assert get_condition(conditions, "NamespaceSelectorValid")['reason'] == "SelectorEmpty"
        assert get_condition(conditions, "Stalled")['status'] == "True"

    def test_overlapping_principal_warning(self):
        """Test that a principal both allowed and denied is flagged"""
        # Arrange
        spec = policy(resourceRules=READ_PODS, allowedPrincipals=[{'user': 'alice'}],
                      deniedPrincipals=[{'user': 'alice'}])

        # Act
        errors, warnings = validate_webhook_authorizer(spec)

        # Assert
        assert errors == []
        assert any("denied takes precedence" in warning for warning in warnings)
