"""
Shared module to hold constant values for the library
"""

# Prefix used for all labels, annotations and finalizers owned by the operator
OPERATOR_PREFIX = "gateway-operator.konghq.com"

## Labels ######################################################################

# The managed-by label carries the role value of the owner kind that manages a
# child (controlplane, dataplane, gateway)
MANAGED_BY_LABEL = f"{OPERATOR_PREFIX}/managed-by"

# Owner identity labels used by the watch feed to map child events back onto
# the owner key and by the census to scope a listing to one owner
OWNER_UID_LABEL = f"{OPERATOR_PREFIX}/owner-uid"
MANAGED_BY_NAME_LABEL = f"{OPERATOR_PREFIX}/managed-by-name"
MANAGED_BY_NAMESPACE_LABEL = f"{OPERATOR_PREFIX}/managed-by-namespace"

# Older releases labelled children with a single label and no owner uid. These
# are still read by the census and removed whenever a child is patched.
LEGACY_MANAGED_BY_LABEL = "konghq.com/gateway-operator"
LEGACY_OWNER_UID_LABEL = "konghq.com/gateway-operator-owner-uid"

# Values for the managed-by labels
MANAGED_BY_CONTROLPLANE = "controlplane"
MANAGED_BY_DATAPLANE = "dataplane"
MANAGED_BY_GATEWAY = "gateway"

# Label used to pin a Service selector to a particular Deployment generation
SELECTOR_LABEL = f"{OPERATOR_PREFIX}/selector"
APP_LABEL = "app"

# DataPlane service type label and values
DATAPLANE_SERVICE_TYPE_LABEL = f"{OPERATOR_PREFIX}/dataplane-service-type"
DATAPLANE_SERVICE_TYPE_ADMIN = "admin"
DATAPLANE_SERVICE_TYPE_INGRESS = "ingress"

# DataPlane live/preview state labels
DATAPLANE_SERVICE_STATE_LABEL = f"{OPERATOR_PREFIX}/dataplane-service-state"
DATAPLANE_DEPLOYMENT_STATE_LABEL = f"{OPERATOR_PREFIX}/dataplane-deployment-state"
STATE_LIVE = "live"
STATE_PREVIEW = "preview"

# Label used by EndpointSlices to point at their Service
SERVICE_NAME_LABEL = "kubernetes.io/service-name"

# Separates the certificate Secrets of one owner by what they are used for
CERTIFICATE_PURPOSE_LABEL = f"{OPERATOR_PREFIX}/certificate-purpose"
CERTIFICATE_PURPOSE_ADMIN = "admin-api"
CERTIFICATE_PURPOSE_CLIENT = "admin-api-client"
CERTIFICATE_PURPOSE_WEBHOOK = "admission-webhook"

# Service role label of the ControlPlane admission webhook Service
CONTROLPLANE_SERVICE_LABEL = f"{OPERATOR_PREFIX}/service"
CONTROLPLANE_SERVICE_WEBHOOK = "webhook"

## Annotations #################################################################

# Promotion trigger for BreakBeforePromotion rollouts
PROMOTE_WHEN_READY_ANNOTATION = f"{OPERATOR_PREFIX}/promote-when-ready"
PROMOTE_WHEN_READY_VALUE = "true"

# Key usages recorded on a certificate secret
CERTIFICATE_KEY_USAGES_ANNOTATION = f"{OPERATOR_PREFIX}/key-usages"

## Finalizers ##################################################################

CLEANUP_CLUSTER_ROLE_BINDING_FINALIZER = (
    f"{OPERATOR_PREFIX}/cleanup-cluster-role-binding"
)
CLEANUP_CLUSTER_ROLE_FINALIZER = f"{OPERATOR_PREFIX}/cleanup-cluster-role"
CLEANUP_VALIDATING_WEBHOOK_CONFIGURATION_FINALIZER = (
    f"{OPERATOR_PREFIX}/cleanup-validating-webhook-configuration"
)

# Finalizer that older releases placed on a DataPlane's children. It is
# removed before a duplicate child is deleted.
WAIT_FOR_OWNER_FINALIZER = f"{OPERATOR_PREFIX}/wait-for-owner"

## Kinds #######################################################################

OPERATOR_GROUP = "gateway-operator.konghq.com"
OPERATOR_API_VERSION = f"{OPERATOR_GROUP}/v1beta1"
GATEWAY_API_VERSION = "gateway.networking.k8s.io/v1"

KIND_CONTROLPLANE = "ControlPlane"
KIND_DATAPLANE = "DataPlane"
KIND_GATEWAY = "Gateway"
KIND_GATEWAY_CLASS = "GatewayClass"
KIND_GATEWAY_CONFIGURATION = "GatewayConfiguration"

## Containers ##################################################################

DATAPLANE_PROXY_CONTAINER_NAME = "proxy"
CONTROLPLANE_CONTAINER_NAME = "controller"

DATAPLANE_ADMIN_PORT = 8444
DATAPLANE_PROXY_PORT = 8000
DATAPLANE_PROXY_SSL_PORT = 8443
DATAPLANE_METRICS_PORT = 8100

# Mount point of the cluster certificate inside the proxy and controller pods
CLUSTER_CERTIFICATE_VOLUME = "cluster-certificate"
CLUSTER_CERTIFICATE_MOUNT_PATH = "/var/cluster-certificate"

# Admission webhook served by the controller. Setting the listen address to
# "off" disables the webhook and its children.
CONTROLPLANE_WEBHOOK_PORT = 8080
CONTROLPLANE_WEBHOOK_LISTEN_ENV = "CONTROLLER_ADMISSION_WEBHOOK_LISTEN"
CONTROLPLANE_WEBHOOK_LISTEN_DEFAULT = f"0.0.0.0:{CONTROLPLANE_WEBHOOK_PORT}"
CONTROLPLANE_WEBHOOK_LISTEN_OFF = "off"
CONTROLPLANE_WEBHOOK_VOLUME = "admission-webhook-certificate"
CONTROLPLANE_WEBHOOK_MOUNT_PATH = "/admission-webhook"

## Misc ########################################################################

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Grace period given to a DataPlane proxy to drain connections
DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = 30
