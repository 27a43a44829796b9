"""
Tests for the kopf reconciliation drivers
"""

import time
from types import SimpleNamespace

import kopf
import pytest
from unittest.mock import Mock, patch

from auth_operator.libs.bindings.engine import BindingResult
from auth_operator.libs.controllers import binddefinition, namespaces, operator, roledefinition, webhookauthorizer
from auth_operator.libs.controllers.context import BIND_DEFINITION, ROLE_DEFINITION, OperatorContext
from auth_operator.libs.core.conditions import get_condition
from auth_operator.libs.core.config import ConfigManager
from auth_operator.libs.core.constants import KubernetesConstants
from auth_operator.libs.core.exceptions import TransientError
from auth_operator.libs.discovery.cache import DiscoveryCache
from auth_operator.libs.roles.engine import RoleResult

TRIGGER = KubernetesConstants.RECONCILE_TRIGGER_ANNOTATION

VALID_AUTHORIZER = {
    'resourceRules': [{'verbs': ['get'], 'apiGroups': [''], 'resources': ['pods']}],
    'allowedPrincipals': [{'user': 'alice'}],
}


@pytest.fixture
def ctx(cluster, discovery_cache):
    return OperatorContext(cluster, discovery_cache)


@pytest.fixture
def memo(ctx):
    return SimpleNamespace(context=ctx)


def authorizer(name, spec, generation=1):
    return {
        'apiVersion': 'authorization.t-caas.telekom.com/v1alpha1',
        'kind': 'WebhookAuthorizer',
        'metadata': {'name': name, 'generation': generation},
        'spec': spec,
    }


class TestOperatorContext:
    """Test retry policy and per-object state"""

    @pytest.mark.parametrize("retry, delay", [(0, 1.0), (2, 4.0), (30, 300.0)])
    def test_temporary_error_backoff(self, ctx, retry, delay):
        """Test that retries back off exponentially up to the configured cap"""
        # Act
        error = ctx.temporary_error(TransientError("timeout"), retry)

        # Assert
        assert isinstance(error, kopf.TemporaryError)
        assert error.delay == delay

    def test_forget_drops_per_object_state(self, ctx):
        """Test that deleted objects leave no locks or generations behind"""
        # Arrange
        with ctx.serialized(ROLE_DEFINITION, "rd"):
            pass
        ctx.applied_generations["rd"] = 3

        # Act
        ctx.forget(ROLE_DEFINITION, "rd")

        # Assert
        assert (ROLE_DEFINITION, "rd") not in ctx._locks
        assert "rd" not in ctx.applied_generations

    def test_timer_due_applies_interval(self, ctx):
        """Test that a timer pass runs once per interval and the first tick only starts the clock"""
        # Act
        first = ctx.timer_due(BIND_DEFINITION, "bd", 60, now=100.0)
        early = ctx.timer_due(BIND_DEFINITION, "bd", 60, now=130.0)
        due = ctx.timer_due(BIND_DEFINITION, "bd", 60, now=161.0)
        again = ctx.timer_due(BIND_DEFINITION, "bd", 60, now=170.0)

        # Assert
        assert (first, early, due, again) == (False, False, True, False)

    def test_forget_resets_timer(self, ctx):
        """Test that a recreated object starts a fresh timer clock"""
        # Arrange
        ctx.timer_due(BIND_DEFINITION, "bd", 60, now=100.0)

        # Act
        ctx.forget(BIND_DEFINITION, "bd")

        # Assert
        assert ctx.timer_due(BIND_DEFINITION, "bd", 60, now=500.0) is False

    def test_concurrency_from_config(self, ctx):
        """Test per-kind worker limits"""
        assert ctx.concurrency(BIND_DEFINITION) == 5


class TestRoleDefinitionDriver:
    """Test status publication of the RoleDefinition driver"""

    @patch('kopf.info')
    def test_successful_reconcile(self, mock_info, ctx, role_definition):
        """Test status and events after creating a role"""
        # Arrange
        body = role_definition()
        status_patch = {}

        # Act
        roledefinition.reconcile_role_definition(ctx, body, status_patch)

        # Assert
        status = status_patch['status']
        assert status['roleReconciled'] is True
        assert status['observedGeneration'] == 1
        for condition_type in ("Finalizer", "Created", "APIGroupFiltered", "ResourceFiltered", "Ready"):
            assert get_condition(status['conditions'], condition_type)['status'] == "True"
        assert ctx.applied_generations["tenant-reader"] == 1
        mock_info.assert_called_once()
        assert mock_info.call_args.kwargs['reason'] == "Create"

    def test_invalid_template_is_permanent(self, ctx, role_definition):
        """Test that an invalid template stalls without retries"""
        # Arrange
        status_patch = {}

        # Act
        with pytest.raises(kopf.PermanentError):
            roledefinition.reconcile_role_definition(ctx, role_definition(targetRole="Nope"), status_patch)

        # Assert
        conditions = status_patch['status']['conditions']
        assert get_condition(conditions, "Stalled")['status'] == "True"
        assert get_condition(conditions, "Ready")['status'] == "False"
        assert status_patch['status']['roleReconciled'] is False

    def test_unready_discovery_is_temporary(self, cluster, discovery_client, role_definition):
        """Test that a missing snapshot is retried"""
        # Arrange
        ctx = OperatorContext(cluster, DiscoveryCache(discovery_client))
        status_patch = {}

        # Act
        with pytest.raises(kopf.TemporaryError):
            roledefinition.reconcile_role_definition(ctx, role_definition(), status_patch)

        # Assert
        conditions = status_patch['status']['conditions']
        assert get_condition(conditions, "Reconciling")['status'] == "True"
        assert get_condition(conditions, "Ready")['reason'] == "Error"

    def test_changed_handler_skips_deleting_objects(self, memo, role_definition):
        """Test that the change handler leaves deletion to the delete handler"""
        # Arrange
        body = role_definition()
        body['metadata']['deletionTimestamp'] = "2026-02-01T00:00:00Z"
        status_patch = {}

        # Act
        roledefinition.role_definition_changed(body=body, name="tenant-reader", meta=body['metadata'],
                                               patch=status_patch, memo=memo)

        # Assert
        assert status_patch == {}

    def test_discovery_check_only_runs_on_new_generation(self, cluster, discovery_cache, role_definition):
        """Test that the timer regenerates only after discovery moved"""
        # Arrange
        role_engine = Mock()
        role_engine.reconcile.return_value = ({}, RoleResult("unchanged", 3, 0, 0, 1))
        ctx = OperatorContext(cluster, discovery_cache, role_engine=role_engine)
        memo = SimpleNamespace(context=ctx)
        body = role_definition()
        ctx.applied_generations["tenant-reader"] = 1

        # Act
        roledefinition.role_definition_discovery_check(body=body, name="tenant-reader", meta=body['metadata'],
                                                       patch={}, memo=memo)
        ctx.applied_generations["tenant-reader"] = 0
        roledefinition.role_definition_discovery_check(body=body, name="tenant-reader", meta=body['metadata'],
                                                       patch={}, memo=memo)

        # Assert
        role_engine.reconcile.assert_called_once()

    @patch('kopf.info')
    def test_delete_handler(self, mock_info, cluster, memo, ctx, role_definition):
        """Test that deletion removes the role and per-object state"""
        # Arrange
        roledefinition.reconcile_role_definition(ctx, role_definition(), {})
        body = role_definition(finalizers=[KubernetesConstants.ROLE_DEFINITION_FINALIZER])

        # Act
        roledefinition.role_definition_deleted(body=body, name="tenant-reader", memo=memo)

        # Assert
        assert cluster.names("ClusterRole") == []
        assert "tenant-reader" not in ctx.applied_generations


class TestBindDefinitionDriver:
    """Test status publication and role-triggered reconciliation"""

    @patch('kopf.info')
    @patch('kopf.warn')
    def test_missing_role_refs_in_status(self, mock_warn, mock_info, ctx, bind_definition):
        """Test that missing roles are reported but do not block"""
        # Arrange
        body = bind_definition(clusterRoleBindings={'clusterRoleRefs': ['missing-role']})
        status_patch = {}

        # Act
        binddefinition.reconcile_bind_definition(ctx, body, status_patch)

        # Assert
        status = status_patch['status']
        assert status['bindReconciled'] is True
        assert status['missingRoleRefs'] == ["ClusterRole/missing-role"]
        role_refs = get_condition(status['conditions'], "RoleRefsValid")
        assert role_refs['status'] == "False"
        assert role_refs['reason'] == "RoleRefNotFound"
        assert get_condition(status['conditions'], "Ready")['status'] == "True"
        mock_warn.assert_called_once()
        mock_info.assert_called_once()

    def test_partial_failure_publishes_status(self, cluster, ctx, bind_definition):
        """Test that a partial apply still publishes what was computed"""
        # Arrange
        cluster.add({'kind': 'ClusterRole', 'metadata': {'name': 'view'}, 'rules': []})
        cluster.fail('create', 'ClusterRoleBinding', 'dev-team-view-binding')
        body = bind_definition(clusterRoleBindings={'clusterRoleRefs': ['view']})
        status_patch = {}

        # Act
        with pytest.raises(kopf.TemporaryError):
            binddefinition.reconcile_bind_definition(ctx, body, status_patch, retry=1)

        # Assert
        status = status_patch['status']
        assert status['bindReconciled'] is False
        assert status['missingRoleRefs'] == []
        assert get_condition(status['conditions'], "RoleRefsValid")['status'] == "True"
        assert get_condition(status['conditions'], "Reconciling")['status'] == "True"

    def test_invalid_template_is_permanent(self, ctx, bind_definition):
        """Test that an invalid BindDefinition stalls"""
        # Arrange
        status_patch = {}

        # Act
        with pytest.raises(kopf.PermanentError):
            binddefinition.reconcile_bind_definition(ctx, bind_definition(subjects=[]), status_patch)

        # Assert
        assert get_condition(status_patch['status']['conditions'], "Stalled")['status'] == "True"

    @pytest.fixture
    def referencing(self, cluster, bind_definition):
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-a", clusterRoleBindings={'clusterRoleRefs': ['edit']},
            status={'missingRoleRefs': ["ClusterRole/edit"]}))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-b", roleBindings=[{'clusterRoleRefs': ['edit'], 'namespace': 'team-a'}]))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-c", clusterRoleBindings={'clusterRoleRefs': ['view']}))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-d", roleBindings=[{'roleRefs': ['edit'], 'namespace': 'team-a'}]))
        return cluster

    @staticmethod
    def _touched(cluster):
        return [name for _, name, body in cluster.patches if TRIGGER in body['metadata']['annotations']]

    def test_added_role_touches_definitions_missing_it(self, referencing, memo):
        """Test that a new ClusterRole re-triggers only definitions waiting for it"""
        # Act
        binddefinition.cluster_role_event(event={'type': 'ADDED', 'object': {'metadata': {'name': 'edit'}}},
                                          memo=memo)

        # Assert
        assert self._touched(referencing) == ["bd-a"]

    def test_deleted_role_touches_every_reference(self, referencing, memo):
        """Test that a deleted ClusterRole re-triggers every referencing definition"""
        # Act
        binddefinition.cluster_role_event(event={'type': 'DELETED', 'object': {'metadata': {'name': 'edit'}}},
                                          memo=memo)

        # Assert
        assert self._touched(referencing) == ["bd-a", "bd-b"]

    def test_deleted_namespaced_role(self, referencing, memo):
        """Test that Role events match roleRefs only"""
        # Act
        binddefinition.role_event_handler(
            event={'type': 'DELETED', 'object': {'metadata': {'name': 'edit', 'namespace': 'team-a'}}}, memo=memo)

        # Assert
        assert self._touched(referencing) == ["bd-d"]

    def test_modified_role_is_ignored(self, referencing, memo):
        """Test that rule changes of a role need no binding work"""
        # Act
        binddefinition.cluster_role_event(event={'type': 'MODIFIED', 'object': {'metadata': {'name': 'edit'}}},
                                          memo=memo)

        # Assert
        assert referencing.patches == []

    def test_failed_touch_continues(self, referencing, memo):
        """Test that one failing trigger does not stop the others"""
        # Arrange
        referencing.fail('patch', 'binddefinitions', 'bd-a')

        # Act
        binddefinition.cluster_role_event(event={'type': 'DELETED', 'object': {'metadata': {'name': 'edit'}}},
                                          memo=memo)

        # Assert
        assert self._touched(referencing) == ["bd-b"]

    def test_initial_listing_touches_nothing(self, referencing, memo):
        """Test that roles replayed at startup neither list nor touch BindDefinitions"""
        # Act
        with patch.object(referencing, 'list_declared', wraps=referencing.list_declared) as mock_list:
            binddefinition.cluster_role_event(event={'type': None, 'object': {'metadata': {'name': 'edit'}}},
                                              memo=memo)

        # Assert
        mock_list.assert_not_called()
        assert referencing.patches == []

    def test_resync_follows_configured_interval(self, cluster, discovery_cache, bind_definition, tmp_path):
        """Test that the resync timer honours controllers.resync_interval from the config file"""
        # Arrange
        config_file = tmp_path / "auth-operator.yaml"
        config_file.write_text("controllers:\n  resync_interval: 120\n")
        config_manager = ConfigManager()
        config_manager.load_config(str(config_file))
        binding_engine = Mock()
        binding_engine.reconcile.return_value = BindingResult(reconciled=True)
        ctx = OperatorContext(cluster, discovery_cache, config_manager=config_manager,
                              binding_engine=binding_engine)
        memo = SimpleNamespace(context=ctx)
        body = bind_definition()
        key = (BIND_DEFINITION, "dev-binder")

        # Act
        ctx._timer_runs[key] = time.monotonic() - 90
        binddefinition.bind_definition_resync(body=body, name="dev-binder", meta=body['metadata'],
                                              patch={}, memo=memo)
        skipped = binding_engine.reconcile.call_count
        ctx._timer_runs[key] = time.monotonic() - 130
        binddefinition.bind_definition_resync(body=body, name="dev-binder", meta=body['metadata'],
                                              patch={}, memo=memo)

        # Assert
        assert ctx.resync_interval == 120
        assert skipped == 0
        binding_engine.reconcile.assert_called_once()

    @patch('kopf.info')
    def test_delete_handler(self, mock_info, cluster, memo, ctx, bind_definition):
        """Test that deletion cleans up owned bindings"""
        # Arrange
        cluster.add({'kind': 'ClusterRole', 'metadata': {'name': 'view'}, 'rules': []})
        spec = {'clusterRoleBindings': {'clusterRoleRefs': ['view']}}
        binddefinition.reconcile_bind_definition(ctx, bind_definition(**spec), {})
        body = bind_definition(finalizers=[KubernetesConstants.BIND_DEFINITION_FINALIZER], **spec)

        # Act
        binddefinition.bind_definition_deleted(body=body, name="dev-binder", memo=memo)

        # Assert
        assert cluster.names("ClusterRoleBinding") == []
        assert mock_info.call_args.kwargs['reason'] == "Deletion"


class TestWebhookAuthorizerDriver:
    """Test policy index maintenance and status"""

    def test_valid_authorizer_is_indexed(self, ctx, memo):
        """Test that a valid object becomes active"""
        # Arrange
        body = authorizer("readers", VALID_AUTHORIZER)
        status_patch = {}

        # Act
        webhookauthorizer.webhook_authorizer_changed(body=body, name="readers", meta=body['metadata'],
                                                     status=None, patch=status_patch, memo=memo)

        # Assert
        assert [name for name, _ in ctx.policy_index.snapshot()] == ["readers"]
        assert status_patch['status']['authorizerConfigured'] is True
        assert get_condition(status_patch['status']['conditions'], "Ready")['status'] == "True"

    def test_invalid_authorizer_is_removed(self, ctx, memo):
        """Test that an object turning invalid stops influencing decisions"""
        # Arrange
        webhookauthorizer.index_webhook_authorizer(ctx, authorizer("readers", VALID_AUTHORIZER))
        body = authorizer("readers", {'allowedPrincipals': [{'user': 'alice'}]}, generation=2)
        status_patch = {}

        # Act
        with pytest.raises(kopf.PermanentError):
            webhookauthorizer.webhook_authorizer_changed(body=body, name="readers", meta=body['metadata'],
                                                         status=None, patch=status_patch, memo=memo)

        # Assert
        assert len(ctx.policy_index) == 0
        assert status_patch['status']['authorizerConfigured'] is False
        assert get_condition(status_patch['status']['conditions'], "Stalled")['status'] == "True"

    def test_watch_events(self, ctx, memo):
        """Test that watch events add and remove policies"""
        # Act
        webhookauthorizer.webhook_authorizer_event(
            event={'type': 'ADDED', 'object': authorizer("readers", VALID_AUTHORIZER)}, memo=memo)
        added = len(ctx.policy_index)
        webhookauthorizer.webhook_authorizer_event(
            event={'type': 'DELETED', 'object': authorizer("readers", VALID_AUTHORIZER)}, memo=memo)

        # Assert
        assert added == 1
        assert len(ctx.policy_index) == 0


class TestNamespaceDriver:
    """Test namespace indexing and BindDefinition re-triggering"""

    @pytest.fixture
    def selecting(self, cluster, bind_definition):
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-dev", roleBindings=[{'clusterRoleRefs': ['edit'],
                                          'namespaceSelector': [{'matchLabels': {'env': 'dev'}}]}]))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-prod", roleBindings=[{'clusterRoleRefs': ['view'],
                                           'namespaceSelector': [{'matchLabels': {'env': 'prod'}}]}]))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-named", roleBindings=[{'roleRefs': ['reader'], 'namespaces': ['team-a']}]))
        cluster.add_declared("binddefinitions", bind_definition(
            name="bd-cluster", clusterRoleBindings={'clusterRoleRefs': ['view']}))
        return cluster

    @staticmethod
    def _touched(cluster):
        return sorted(name for _, name, body in cluster.patches if TRIGGER in body['metadata']['annotations'])

    @staticmethod
    def _event(event_type, name, labels=None):
        return {'type': event_type, 'object': {'metadata': {'name': name, 'labels': labels or {}}}}

    def test_added_namespace_touches_selecting_definitions(self, selecting, ctx, memo):
        """Test that a new namespace gets its RoleBindings without waiting for the resync"""
        # Act
        namespaces.namespace_event(event=self._event('ADDED', 'team-b', {'env': 'dev'}), memo=memo)

        # Assert
        assert self._touched(selecting) == ["bd-dev"]
        assert dict(ctx.namespace_index.labels('team-b')) == {'env': 'dev'}

    def test_added_namespace_touches_explicit_references(self, selecting, memo):
        """Test that a namespace named explicitly re-triggers its BindDefinition when it appears"""
        # Act
        namespaces.namespace_event(event=self._event('ADDED', 'team-a'), memo=memo)

        # Assert
        assert self._touched(selecting) == ["bd-named"]

    def test_relabelled_namespace_touches_old_and_new_matches(self, selecting, memo):
        """Test that a label change re-triggers the definitions it gains and loses"""
        # Arrange
        namespaces.namespace_event(event=self._event(None, 'team-b', {'env': 'dev'}), memo=memo)

        # Act
        namespaces.namespace_event(event=self._event('MODIFIED', 'team-b', {'env': 'prod'}), memo=memo)

        # Assert
        assert self._touched(selecting) == ["bd-dev", "bd-prod"]

    def test_unchanged_labels_touch_nothing(self, selecting, memo):
        """Test that status-only namespace updates need no binding work"""
        # Arrange
        namespaces.namespace_event(event=self._event(None, 'team-b', {'env': 'dev'}), memo=memo)

        # Act
        namespaces.namespace_event(event=self._event('MODIFIED', 'team-b', {'env': 'dev'}), memo=memo)

        # Assert
        assert selecting.patches == []

    def test_initial_listing_only_indexes(self, selecting, ctx, memo):
        """Test that namespaces seen at startup are indexed without re-triggering anything"""
        # Act
        with patch.object(selecting, 'list_declared', wraps=selecting.list_declared) as mock_list:
            namespaces.namespace_event(event=self._event(None, 'team-b', {'env': 'dev'}), memo=memo)

        # Assert
        mock_list.assert_not_called()
        assert selecting.patches == []
        assert dict(ctx.namespace_index.labels('team-b')) == {'env': 'dev'}

    def test_deleted_namespace_leaves_the_index(self, selecting, ctx, memo):
        """Test that a deleted namespace is dropped and triggers nothing"""
        # Arrange
        namespaces.namespace_event(event=self._event(None, 'prod', {'env': 'prod'}), memo=memo)

        # Act
        namespaces.namespace_event(event=self._event('DELETED', 'prod'), memo=memo)

        # Assert
        assert ctx.namespace_index.labels('prod') is None
        assert selecting.patches == []

    def test_matching_skips_deleting_and_invalid_definitions(self, bind_definition):
        """Test that definitions being deleted or failing to parse are never matched"""
        # Arrange
        deleting = bind_definition(name="bd-gone", roleBindings=[{'clusterRoleRefs': ['edit'], 'namespace': 'dev'}])
        deleting['metadata']['deletionTimestamp'] = "2026-01-02T00:00:00Z"
        invalid = bind_definition(name="bd-invalid", roleBindings=[{'clusterRoleRefs': ['edit'], 'namespaceSelector': [
            {'matchExpressions': [{'key': 'env', 'operator': 'Near'}]}]}])
        matching = bind_definition(name="bd-ok", roleBindings=[{'clusterRoleRefs': ['edit'], 'namespace': 'dev'}])

        # Act
        names = binddefinition.namespace_bind_definitions([deleting, invalid, matching], 'dev', [{'env': 'dev'}])

        # Assert
        assert names == ["bd-ok"]


class TestOperatorLifecycle:
    """Test startup priming, settings and health checks"""

    def test_prime_indexes(self, cluster, ctx):
        """Test that the initial load fills both indexes and marks them synced"""
        # Arrange
        cluster.add_namespace('prod', {'env': 'prod'})
        cluster.add_namespace('dev', {'env': 'dev'})
        cluster.add_declared("webhookauthorizers", authorizer("readers", VALID_AUTHORIZER))
        cluster.add_declared("webhookauthorizers", authorizer("broken", {}))

        # Act
        operator.prime_indexes(ctx)

        # Assert
        assert len(ctx.namespace_index) == 2
        assert [name for name, _ in ctx.policy_index.snapshot()] == ["readers"]
        assert ctx.policy_index.is_synced() is True

    def test_startup_and_cleanup(self, ctx, memo):
        """Test kopf settings, discovery start and health checks"""
        # Arrange
        settings = kopf.OperatorSettings()

        # Act
        operator.configure(settings=settings, memo=memo)
        try:
            discovery = operator.discovery_status(memo=memo)
            policies = operator.policy_status(memo=memo)
        finally:
            operator.cleanup(memo=memo)

        # Assert
        assert settings.execution.max_workers == 17
        assert isinstance(settings.persistence.progress_storage, kopf.AnnotationsProgressStorage)
        assert settings.persistence.progress_storage.prefix == KubernetesConstants.KOPF_ANNOTATION_PREFIX
        assert discovery == {'ready': True, 'generation': 1}
        assert policies == {'synced': True, 'count': 0}
        assert ctx.discovery_cache._thread is None

    def test_trigger_annotation_changes_kopf_essence(self):
        """Test that touching the reconcile trigger is a change kopf delivers as an update"""
        # Arrange
        settings = kopf.OperatorSettings()
        operator.configure_storage(settings)
        prefix = KubernetesConstants.KOPF_ANNOTATION_PREFIX

        def essence(annotations):
            body = kopf.Body({
                'apiVersion': 'authorization.t-caas.telekom.com/v1alpha1',
                'kind': 'BindDefinition',
                'metadata': {'name': 'dev-binder', 'annotations': annotations},
                'spec': {'targetName': 'dev-team'},
            })
            built = settings.persistence.diffbase_storage.build(body=body)
            return settings.persistence.progress_storage.clear(essence=built)

        kopf_state = {
            f"{prefix}/bind_definition_changed": '{"started": "2026-01-01T00:00:00Z"}',
            f"{prefix}/last-handled-configuration": '{"spec": {"targetName": "dev-team"}}',
        }

        # Act
        before = essence(dict(kopf_state))
        after = essence(dict(kopf_state, **{TRIGGER: "2026-01-01T00:00:05Z"}))

        # Assert
        assert before != after
        assert after['metadata']['annotations'] == {TRIGGER: "2026-01-01T00:00:05Z"}
        assert 'annotations' not in before.get('metadata', {})
