"""
Constants Module

Centralized constants for the auth-operator to eliminate magic strings
and improve maintainability.
"""


class KubernetesConstants:
    """Kubernetes-related constants with enum-based structure"""

    from enum import Enum

    # API Group constants - simple attributes for extensible values
    AUTHORIZATION_API_GROUP = "authorization.t-caas.telekom.com"
    AUTHORIZATION_API_VERSION = "v1alpha1"
    RBAC_API_GROUP = "rbac.authorization.k8s.io"
    RBAC_API_VERSION = "v1"
    SAR_API_VERSION = "authorization.k8s.io/v1"

    # Label constants - standard Kubernetes labels
    MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
    NAME_LABEL = "app.kubernetes.io/name"
    MANAGED_BY_VALUE = "auth-operator"

    # Annotation and label keys owned by the operator
    SOURCE_KIND_ANNOTATION = "authorization.t-caas.telekom.com/source-kind"
    SOURCE_NAME_ANNOTATION = "authorization.t-caas.telekom.com/source-name"
    SOURCE_NAMES_ANNOTATION = "authorization.t-caas.telekom.com/source-names"
    REFERENCED_BY_ANNOTATION = "authorization.t-caas.telekom.com/referenced-by"
    RECONCILE_TRIGGER_ANNOTATION = "authorization.t-caas.telekom.com/reconcile-trigger"
    SOURCE_NAME_LABEL = "authorization.t-caas.telekom.com/source-name"

    # kopf progress and diff-base annotations; kopf hides its own prefix from
    # change detection, so it must differ from the keys above
    KOPF_ANNOTATION_PREFIX = "kopf.authorization.t-caas.telekom.com"

    # Finalizers
    ROLE_DEFINITION_FINALIZER = "roledefinition.authorization.t-caas.telekom.com/finalizer"
    BIND_DEFINITION_FINALIZER = "binddefinition.authorization.t-caas.telekom.com/finalizer"

    # Naming limits
    MAX_RESOURCE_NAME_LENGTH = 253
    BINDING_SUFFIX = "binding"

    # Service account user name prefix used by the API server
    SERVICE_ACCOUNT_USER_PREFIX = "system:serviceaccount:"

    NAMESPACE_PHASE_TERMINATING = "Terminating"

    class Kind(str, Enum):
        """Kinds handled by the operator"""
        ROLE_DEFINITION = "RoleDefinition"
        BIND_DEFINITION = "BindDefinition"
        WEBHOOK_AUTHORIZER = "WebhookAuthorizer"
        CLUSTER_ROLE = "ClusterRole"
        ROLE = "Role"
        CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
        ROLE_BINDING = "RoleBinding"
        SERVICE_ACCOUNT = "ServiceAccount"
        NAMESPACE = "Namespace"

        def __str__(self) -> str:
            """Return the kind name for use in manifests"""
            return self.value

        @classmethod
        def get_role_kinds(cls) -> list:
            """Get the kinds a RoleDefinition may target"""
            return [cls.CLUSTER_ROLE, cls.ROLE]

        @classmethod
        def get_binding_kinds(cls) -> list:
            """Get the binding kinds generated by a BindDefinition"""
            return [cls.CLUSTER_ROLE_BINDING, cls.ROLE_BINDING]

    class SubjectKind(str, Enum):
        """RBAC subject kinds"""
        USER = "User"
        GROUP = "Group"
        SERVICE_ACCOUNT = "ServiceAccount"

        def __str__(self) -> str:
            return self.value

    class RBACVerb(str, Enum):
        """RBAC verbs used in Kubernetes role definitions"""
        CREATE = "create"
        GET = "get"
        LIST = "list"
        WATCH = "watch"
        UPDATE = "update"
        PATCH = "patch"
        DELETE = "delete"
        DELETE_COLLECTION = "deletecollection"
        WILDCARD = "*"

        def __str__(self) -> str:
            """Return the verb value for use in RBAC rules"""
            return self.value

    class Plural(str, Enum):
        """Plural resource names of the declared kinds"""
        ROLE_DEFINITIONS = "roledefinitions"
        BIND_DEFINITIONS = "binddefinitions"
        WEBHOOK_AUTHORIZERS = "webhookauthorizers"

        def __str__(self) -> str:
            """Return the plural for use in Kubernetes API calls"""
            return self.value


class ConditionConstants:
    """Status condition types, reasons and messages"""

    STATUS_TRUE = "True"
    STATUS_FALSE = "False"

    # kstatus condition types
    READY = "Ready"
    RECONCILING = "Reconciling"
    STALLED = "Stalled"

    # Kind specific condition types
    FINALIZER = "Finalizer"
    CREATED = "Created"
    ROLE_REFS_VALID = "RoleRefsValid"
    API_GROUP_FILTERED = "APIGroupFiltered"
    RESOURCE_FILTERED = "ResourceFiltered"
    RULES_VALID = "RulesValid"
    NAMESPACE_SELECTOR_VALID = "NamespaceSelectorValid"
    PRINCIPAL_CONFIGURED = "PrincipalConfigured"

    # Reasons
    REASON_RECONCILED = "Reconciled"
    REASON_PROGRESSING = "Progressing"
    REASON_ERROR = "Error"
    REASON_INVALID_SPEC = "InvalidSpec"
    REASON_FINALIZER = "OrphanPrevention"
    REASON_CREATE = "TriggeredCreate"
    REASON_FILTERING = "Filtering"
    REASON_ROLE_REF_VALID = "RoleRefValidation"
    REASON_ROLE_REF_NOT_FOUND = "RoleRefNotFound"
    REASON_AUTHORIZER_READY = "AuthorizerReady"
    REASON_INVALID_RULES = "InvalidRules"
    REASON_INVALID_NAMESPACE_SELECTOR = "InvalidNamespaceSelector"
    REASON_NO_PRINCIPALS = "NoPrincipals"
    REASON_ALL_RULES_VALID = "AllRulesValid"
    REASON_SELECTOR_VALID = "SelectorValid"
    REASON_SELECTOR_EMPTY = "SelectorEmpty"
    REASON_SELECTOR_INVALID = "SelectorInvalid"
    REASON_PRINCIPALS_CONFIGURED = "PrincipalsConfigured"

    # Messages
    MESSAGE_RECONCILED = "Resource is fully reconciled"
    MESSAGE_PROGRESSING = "Controller is reconciling the resource"
    MESSAGE_ERROR = "Error during reconciliation: {error}"
    MESSAGE_FINALIZER = "Set finalizer to prevent orphaned resources"
    MESSAGE_CREATE = "Reconciling creation request"
    MESSAGE_API_FILTERED = "Filtered {count} API groups via denylist"
    MESSAGE_RESOURCE_FILTERED = "Filtered {count} API resources via denylist"
    MESSAGE_ROLE_REFS_VALID = "All referenced roles exist"
    MESSAGE_ROLE_REFS_MISSING = "Missing role references: {refs}"
    MESSAGE_AUTHORIZER_READY = "All rules are valid and the authorizer is actively processing requests"
    MESSAGE_INVALID_RULES = "One or more resource/non-resource rules are malformed: {error}"
    MESSAGE_INVALID_SELECTOR = "The namespace selector cannot be parsed: {error}"
    MESSAGE_NO_PRINCIPALS = "Neither allowedPrincipals nor deniedPrincipals are defined"
    MESSAGE_RULES_VALID = "All resourceRules and nonResourceRules are syntactically valid"
    MESSAGE_SELECTOR_VALID = "Namespace selector is parseable"
    MESSAGE_SELECTOR_EMPTY = "No namespace selector defined (matches all namespaces)"
    MESSAGE_PRINCIPALS_CONFIGURED = "Principals are configured"


class EventReasons:
    """Reasons attached to Kubernetes events emitted by the drivers"""

    FINALIZER = "Finalizer"
    CREATE = "Create"
    UPDATE = "Update"
    DELETION = "Deletion"
    RECONCILED = "Reconciled"
    ROLE_REF_NOT_FOUND = "RoleRefNotFound"


class NetworkConstants:
    """Network and timing defaults"""

    DEFAULT_WEBHOOK_HOST = "0.0.0.0"
    DEFAULT_WEBHOOK_PORT = 9443
    MAX_REQUEST_BODY_SIZE = 1 << 20
    MAX_LOGGED_GROUPS = 10

    DISCOVERY_REFRESH_INTERVAL = 30.0
    RESYNC_INTERVAL = 60.0
    TIMER_TICK = 5.0
    RETRY_BASE_DELAY = 1.0
    RETRY_MAX_DELAY = 300.0
    DEFAULT_CONCURRENCY = 5


class FileConstants:
    """File-related constants"""

    DEFAULT_CONFIG_FILE = "auth-operator.yaml"


class ErrorMessages:
    """Centralized error messages"""

    SSL_CERT_VERIFICATION_FAILED = (
        "SSL certificate verification failed. The cluster appears to use self-signed certificates. "
        "Set cluster.skip_tls to bypass certificate verification."
    )
    SSL_CONNECTION_ERROR = "SSL connection error occurred: {error}"
    CONNECTION_TIMEOUT = "Connection to the Kubernetes API timed out. The request will be retried."
    CONNECTION_REFUSED = "Connection to the Kubernetes API was refused. The request will be retried."
    DISCOVERY_NOT_READY = "API discovery snapshot is not ready yet"
    DISCOVERY_EMPTY = "API discovery snapshot contains no resources"
    TARGET_NOT_MANAGED = "{kind} {name} already exists and is not managed by auth-operator"
