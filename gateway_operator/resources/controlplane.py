"""
Child roles and generators for the resources owned by a ControlPlane: its
ServiceAccount, the cluster wide RBAC that lets it watch Gateway API and
Kong resources, the controller Deployment, and the admission webhook that
validates Kong configuration (a Service, its serving certificate and a
ValidatingWebhookConfiguration).
"""

# Standard
from dataclasses import dataclass
from typing import List, Optional

# Local
from .. import constants
from ..census import ChildIdentity
from ..ensure import LABEL_SECTIONS, ChildRole
from ..managed_object import ManagedObject
from ..teardown import ADMISSION_API_VERSION, RBAC_API_VERSION
from .common import (
    cluster_certificate_path,
    env_value,
    field_ref,
    get_container,
    mount_cluster_certificate,
    pod_template,
    set_default_resources,
    set_env,
    set_env_defaults,
)
from .defaults import ResourceDefaults

DEPLOYMENT_API_VERSION = "apps/v1"

# Read access to everything the ingress controller translates, write access to
# the status of what it reports on
_READ = ["get", "list", "watch"]
_STATUS = ["get", "patch", "update"]
CLUSTER_ROLE_RULES = [
    {
        "apiGroups": [""],
        "resources": [
            "endpoints",
            "namespaces",
            "nodes",
            "pods",
            "secrets",
            "services",
            "configmaps",
        ],
        "verbs": _READ,
    },
    {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "patch"]},
    {"apiGroups": [""], "resources": ["services/status"], "verbs": _STATUS},
    {
        "apiGroups": ["discovery.k8s.io"],
        "resources": ["endpointslices"],
        "verbs": _READ,
    },
    {
        "apiGroups": ["networking.k8s.io"],
        "resources": ["ingresses", "ingressclasses"],
        "verbs": _READ,
    },
    {
        "apiGroups": ["networking.k8s.io"],
        "resources": ["ingresses/status"],
        "verbs": _STATUS,
    },
    {
        "apiGroups": ["gateway.networking.k8s.io"],
        "resources": [
            "gateways",
            "gatewayclasses",
            "httproutes",
            "grpcroutes",
            "tcproutes",
            "tlsroutes",
            "udproutes",
            "referencegrants",
        ],
        "verbs": _READ,
    },
    {
        "apiGroups": ["gateway.networking.k8s.io"],
        "resources": [
            "gateways/status",
            "gatewayclasses/status",
            "httproutes/status",
            "grpcroutes/status",
            "tcproutes/status",
            "tlsroutes/status",
            "udproutes/status",
        ],
        "verbs": _STATUS,
    },
    {
        "apiGroups": ["configuration.konghq.com"],
        "resources": [
            "kongclusterplugins",
            "kongconsumers",
            "kongconsumergroups",
            "kongingresses",
            "kongplugins",
            "kongupstreampolicies",
            "tcpingresses",
            "udpingresses",
        ],
        "verbs": _READ,
    },
    {
        "apiGroups": ["configuration.konghq.com"],
        "resources": [
            "kongclusterplugins/status",
            "kongconsumers/status",
            "kongconsumergroups/status",
            "kongplugins/status",
            "tcpingresses/status",
            "udpingresses/status",
        ],
        "verbs": _STATUS,
    },
    {
        "apiGroups": ["coordination.k8s.io"],
        "resources": ["leases"],
        "verbs": ["get", "list", "watch", "create", "update", "patch"],
    },
]


@dataclass
class DataPlaneTarget:
    """The DataPlane Services a ControlPlane configures

    Attributes:
        ingress_service:  str
            Name of the DataPlane's live ingress Service
        admin_service:  str
            Name of the DataPlane's live admin Service
    """

    ingress_service: str
    admin_service: str


@dataclass
class ControlPlaneDeploymentParams:
    """Inputs of the controller Deployment generator"""

    service_account: str
    certificate_secret: str
    defaults: ResourceDefaults
    # None while the ControlPlane has no DataPlane. The Deployment is then
    # scaled to zero.
    dataplane: Optional[DataPlaneTarget] = None
    # None while the admission webhook is disabled
    webhook_certificate_secret: Optional[str] = None


@dataclass
class ClusterRoleBindingParams:
    """Inputs of the ClusterRoleBinding generator"""

    service_account: str
    cluster_role: str


@dataclass
class WebhookConfigurationParams:
    """Inputs of the ValidatingWebhookConfiguration generator

    Attributes:
        service:  str
            Name of the admission webhook Service
        ca_bundle:  str
            Base64 encoded CA that signed the webhook serving certificate
    """

    service: str
    ca_bundle: str


## Spec accessors ##############################################################


def controller_image(controlplane: ManagedObject, defaults: ResourceDefaults) -> str:
    containers = (
        controlplane.nested_get("spec.deployment.podTemplateSpec.spec.containers")
        or []
    )
    for container in containers:
        if container.get("name") == constants.CONTROLPLANE_CONTAINER_NAME:
            return container.get("image") or defaults.controlplane_image
    return defaults.controlplane_image


def admission_webhook_enabled(controlplane: ManagedObject) -> bool:
    """The webhook is on unless the controller container sets its listen
    address to off
    """
    containers = (
        controlplane.nested_get("spec.deployment.podTemplateSpec.spec.containers")
        or []
    )
    for container in containers:
        if container.get("name") == constants.CONTROLPLANE_CONTAINER_NAME:
            listen = env_value(
                container.get("env"), constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV
            )
            return listen != constants.CONTROLPLANE_WEBHOOK_LISTEN_OFF
    return True


## Generators ##################################################################


def generate_service_account(controlplane: ManagedObject, _) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "generateName": f"{controlplane.name}-",
            "labels": {constants.APP_LABEL: controlplane.name},
        },
    }


def generate_cluster_role(controlplane: ManagedObject, _) -> dict:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRole",
        "metadata": {
            "generateName": f"{controlplane.name}-",
            "labels": {constants.APP_LABEL: controlplane.name},
        },
        "rules": CLUSTER_ROLE_RULES,
    }


def generate_cluster_role_binding(
    controlplane: ManagedObject,
    params: ClusterRoleBindingParams,
) -> dict:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRoleBinding",
        "metadata": {
            "generateName": f"{controlplane.name}-",
            "labels": {constants.APP_LABEL: controlplane.name},
        },
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": params.cluster_role,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": params.service_account,
                "namespace": controlplane.namespace,
            }
        ],
    }


def generate_deployment(
    controlplane: ManagedObject,
    params: ControlPlaneDeploymentParams,
) -> dict:
    """Build the ingress controller Deployment. Without a DataPlane there is
    nothing to configure, so it runs zero replicas.
    """
    options = controlplane.spec.get("deployment") or {}
    labels = {constants.APP_LABEL: controlplane.name}

    template = pod_template(options.get("podTemplateSpec"))
    template["metadata"].setdefault("labels", {}).update(labels)
    pod_spec = template["spec"]
    pod_spec["serviceAccountName"] = params.service_account

    container = get_container(pod_spec, constants.CONTROLPLANE_CONTAINER_NAME)
    if not container.get("image"):
        container["image"] = params.defaults.controlplane_image
    set_env_defaults(
        container,
        {
            "POD_NAMESPACE": field_ref("metadata.namespace"),
            "POD_NAME": field_ref("metadata.name"),
            "CONTROLLER_ELECTION_ID": f"{controlplane.name}.konghq.com",
            "CONTROLLER_KONG_ADMIN_TLS_CLIENT_CERT_FILE": cluster_certificate_path(
                "tls.crt"
            ),
            "CONTROLLER_KONG_ADMIN_TLS_CLIENT_KEY_FILE": cluster_certificate_path(
                "tls.key"
            ),
            "CONTROLLER_KONG_ADMIN_CA_CERT_FILE": cluster_certificate_path("ca.crt"),
        },
    )
    set_env(
        container,
        "CONTROLLER_GATEWAY_API_CONTROLLER_NAME",
        params.defaults.controller_name,
        override=True,
    )
    if params.dataplane is not None:
        namespace = controlplane.namespace
        set_env(
            container,
            "CONTROLLER_PUBLISH_SERVICE",
            f"{namespace}/{params.dataplane.ingress_service}",
        )
        set_env(
            container,
            "CONTROLLER_KONG_ADMIN_SVC",
            f"{namespace}/{params.dataplane.admin_service}",
        )
    set_default_resources(container, params.defaults.controlplane_resources)
    mount_cluster_certificate(pod_spec, container, params.certificate_secret)
    if params.webhook_certificate_secret is not None:
        _serve_admission_webhook(pod_spec, container, params.webhook_certificate_secret)

    replicas = options.get("replicas")
    if params.dataplane is None:
        replicas = 0
    elif replicas is None:
        replicas = 1

    return {
        "apiVersion": DEPLOYMENT_API_VERSION,
        "kind": "Deployment",
        "metadata": {
            "generateName": f"{controlplane.name}-",
            "labels": dict(labels),
        },
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": template,
        },
    }


def generate_webhook_service(controlplane: ManagedObject, _) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "generateName": f"{controlplane.name}-webhook-",
            "labels": {constants.APP_LABEL: controlplane.name},
        },
        "spec": {
            "type": "ClusterIP",
            "selector": {constants.APP_LABEL: controlplane.name},
            "ports": [
                {
                    "name": "webhook",
                    "protocol": "TCP",
                    "port": constants.CONTROLPLANE_WEBHOOK_PORT,
                    "targetPort": constants.CONTROLPLANE_WEBHOOK_PORT,
                }
            ],
        },
    }


def generate_webhook_configuration(
    controlplane: ManagedObject,
    params: WebhookConfigurationParams,
) -> dict:
    """Route admission of Kong configuration, Secrets, Gateways and Ingresses
    to the controller. Failures are ignored so an unavailable controller never
    blocks writes to the cluster.
    """
    client_config = {
        "service": {
            "namespace": controlplane.namespace,
            "name": params.service,
            "port": constants.CONTROLPLANE_WEBHOOK_PORT,
        },
        "caBundle": params.ca_bundle,
    }
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": "ValidatingWebhookConfiguration",
        "metadata": {
            "generateName": f"{controlplane.name}-",
            "labels": {constants.APP_LABEL: controlplane.name},
        },
        "webhooks": [
            _webhook(name, client_config, rules) for name, rules in _WEBHOOK_RULES
        ],
    }


## Roles #######################################################################


SERVICE_ACCOUNT_ROLE = ChildRole(
    name="service account",
    kind="ServiceAccount",
    api_version="v1",
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    generate=generate_service_account,
    sections=list(LABEL_SECTIONS),
)

CLUSTER_ROLE_ROLE = ChildRole(
    name="cluster role",
    kind="ClusterRole",
    api_version=RBAC_API_VERSION,
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    cluster_scoped=True,
    generate=generate_cluster_role,
    sections=LABEL_SECTIONS + ["rules"],
)

CLUSTER_ROLE_BINDING_ROLE = ChildRole(
    name="cluster role binding",
    kind="ClusterRoleBinding",
    api_version=RBAC_API_VERSION,
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    cluster_scoped=True,
    generate=generate_cluster_role_binding,
    sections=LABEL_SECTIONS + ["subjects"],
    recreate_sections=["roleRef"],
)

DEPLOYMENT_ROLE = ChildRole(
    name="deployment",
    kind="Deployment",
    api_version=DEPLOYMENT_API_VERSION,
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    generate=generate_deployment,
    sections=LABEL_SECTIONS + ["spec.replicas", "spec.template"],
    recreate_sections=["spec.selector"],
)

WEBHOOK_SERVICE_ROLE = ChildRole(
    name="admission webhook service",
    kind="Service",
    api_version="v1",
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    role_labels={
        constants.CONTROLPLANE_SERVICE_LABEL: constants.CONTROLPLANE_SERVICE_WEBHOOK
    },
    generate=generate_webhook_service,
    sections=LABEL_SECTIONS + ["spec.selector", "spec.ports"],
)

WEBHOOK_CONFIGURATION_ROLE = ChildRole(
    name="validating webhook configuration",
    kind="ValidatingWebhookConfiguration",
    api_version=ADMISSION_API_VERSION,
    managed_by=constants.MANAGED_BY_CONTROLPLANE,
    cluster_scoped=True,
    generate=generate_webhook_configuration,
    sections=LABEL_SECTIONS + ["webhooks"],
)

# The webhook certificate is a serving certificate for the webhook Service
WEBHOOK_KEY_USAGES = ["digital_signature", "key_encipherment", "server_auth"]


def certificate_labels() -> dict:
    """Role labels of the ControlPlane's admin API client certificate"""
    return {constants.CERTIFICATE_PURPOSE_LABEL: constants.CERTIFICATE_PURPOSE_CLIENT}


def webhook_certificate_labels() -> dict:
    """Role labels of the ControlPlane's admission webhook serving certificate"""
    return {constants.CERTIFICATE_PURPOSE_LABEL: constants.CERTIFICATE_PURPOSE_WEBHOOK}


def webhook_certificate_identity() -> ChildIdentity:
    return ChildIdentity(
        kind="Secret",
        api_version="v1",
        managed_by=constants.MANAGED_BY_CONTROLPLANE,
        role_labels=webhook_certificate_labels(),
    )


def webhook_certificate_subject(controlplane: ManagedObject, service: str) -> str:
    return f"{service}.{controlplane.namespace}.svc"


## Implementation Details ######################################################

# Resources validated by the controller, by webhook name
_KONG_GROUP = "configuration.konghq.com"
_WEBHOOK_RULES = [
    (
        "validations.kong.konghq.com",
        [
            {
                "apiGroups": [_KONG_GROUP],
                "apiVersions": ["*"],
                "resources": [
                    "kongconsumers",
                    "kongconsumergroups",
                    "kongplugins",
                    "kongclusterplugins",
                    "kongingresses",
                ],
            }
        ],
    ),
    (
        "secrets.validation.ingress-controller.konghq.com",
        [{"apiGroups": [""], "apiVersions": ["v1"], "resources": ["secrets"]}],
    ),
    (
        "gateways.validation.ingress-controller.konghq.com",
        [
            {
                "apiGroups": ["gateway.networking.k8s.io"],
                "apiVersions": ["v1", "v1beta1"],
                "resources": ["gateways", "httproutes"],
            }
        ],
    ),
    (
        "ingresses.validation.ingress-controller.konghq.com",
        [
            {
                "apiGroups": ["networking.k8s.io"],
                "apiVersions": ["v1"],
                "resources": ["ingresses"],
            }
        ],
    ),
]


def _webhook(name: str, client_config: dict, rules: List[dict]) -> dict:
    return {
        "name": name,
        "admissionReviewVersions": ["v1"],
        "sideEffects": "None",
        "failurePolicy": "Ignore",
        "matchPolicy": "Equivalent",
        "timeoutSeconds": 10,
        "clientConfig": dict(client_config),
        "rules": [
            dict(rule, operations=["CREATE", "UPDATE"], scope="*") for rule in rules
        ],
    }


def _serve_admission_webhook(pod_spec: dict, container: dict, secret_name: str):
    """Mount the serving certificate and expose the webhook port"""
    set_env(
        container,
        constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV,
        constants.CONTROLPLANE_WEBHOOK_LISTEN_DEFAULT,
    )
    set_env(
        container,
        "CONTROLLER_ADMISSION_WEBHOOK_CERT_FILE",
        f"{constants.CONTROLPLANE_WEBHOOK_MOUNT_PATH}/tls.crt",
    )
    set_env(
        container,
        "CONTROLLER_ADMISSION_WEBHOOK_KEY_FILE",
        f"{constants.CONTROLPLANE_WEBHOOK_MOUNT_PATH}/tls.key",
    )
    mount_cluster_certificate(
        pod_spec,
        container,
        secret_name,
        volume_name=constants.CONTROLPLANE_WEBHOOK_VOLUME,
        mount_path=constants.CONTROLPLANE_WEBHOOK_MOUNT_PATH,
    )
    ports = [
        port
        for port in container.get("ports") or []
        if port.get("name") != "webhook"
    ]
    container["ports"] = ports + [
        {
            "name": "webhook",
            "containerPort": constants.CONTROLPLANE_WEBHOOK_PORT,
            "protocol": "TCP",
        }
    ]
