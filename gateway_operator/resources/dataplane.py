"""
Child roles and generators for the resources owned by a DataPlane: the proxy
Deployments, the admin and ingress Services and the autoscaler. Deployments
and Services exist in a live and, during a blue-green rollout, a preview
flavour that differ only by their state label and pod selector.
"""

# Standard
from dataclasses import dataclass
from typing import List, Optional

# First Party
import alog

# Local
from .. import constants
from ..census import ChildIdentity
from ..deploy_manager import DeployManagerBase
from ..ensure import ChildRole
from ..exceptions import assert_cluster
from ..managed_object import ManagedObject
from .common import (
    cluster_certificate_path,
    get_container,
    mount_cluster_certificate,
    pod_template,
    set_default_resources,
    set_env_defaults,
)
from .defaults import ResourceDefaults

log = alog.use_channel("RSDPL")

DEPLOYMENT_API_VERSION = "apps/v1"
HPA_API_VERSION = "autoscaling/v2"

DEPLOYMENT_SECTIONS = [
    "metadata.labels",
    "metadata.annotations",
    "spec.replicas",
    "spec.template",
    "spec.strategy",
]
SERVICE_SECTIONS = [
    "metadata.labels",
    "metadata.annotations",
    "spec.type",
    "spec.selector",
    "spec.ports",
]

DEFAULT_INGRESS_SERVICE_TYPE = "LoadBalancer"

# Listen addresses of the proxy. The admin API is only served over TLS since it
# is reached by the ControlPlane with the cluster certificate.
_PROXY_ENV_DEFAULTS = {
    "KONG_DATABASE": "off",
    "KONG_ROUTER_FLAVOR": "expressions",
    "KONG_ADMIN_LISTEN": (
        f"0.0.0.0:{constants.DATAPLANE_ADMIN_PORT} http2 ssl reuseport backlog=16384"
    ),
    "KONG_PROXY_LISTEN": (
        f"0.0.0.0:{constants.DATAPLANE_PROXY_PORT} reuseport backlog=16384, "
        f"0.0.0.0:{constants.DATAPLANE_PROXY_SSL_PORT} http2 ssl reuseport "
        "backlog=16384"
    ),
    "KONG_STATUS_LISTEN": f"0.0.0.0:{constants.DATAPLANE_METRICS_PORT}",
    "KONG_PROXY_ACCESS_LOG": "/dev/stdout",
    "KONG_PROXY_ERROR_LOG": "/dev/stderr",
    "KONG_ADMIN_ACCESS_LOG": "/dev/stdout",
    "KONG_ADMIN_ERROR_LOG": "/dev/stderr",
    "KONG_CLUSTER_CERT": cluster_certificate_path("tls.crt"),
    "KONG_CLUSTER_CERT_KEY": cluster_certificate_path("tls.key"),
    "KONG_ADMIN_SSL_CERT": cluster_certificate_path("tls.crt"),
    "KONG_ADMIN_SSL_CERT_KEY": cluster_certificate_path("tls.key"),
    "KONG_NGINX_ADMIN_SSL_CLIENT_CERTIFICATE": cluster_certificate_path("ca.crt"),
    "KONG_NGINX_ADMIN_SSL_VERIFY_CLIENT": "on",
    "KONG_NGINX_ADMIN_SSL_VERIFY_DEPTH": "3",
}


## Desired specs ###############################################################


@dataclass
class DeploymentParams:
    """Inputs of the proxy Deployment generator

    Attributes:
        selector:  str
            The value of the selector label on the pods
        certificate_secret:  str
            The name of the mTLS certificate Secret to mount
        defaults:  ResourceDefaults
            Image and resource defaults
        replicas:  Optional[int]
            The replica count. None leaves it to the autoscaler.
    """

    selector: str
    certificate_secret: str
    defaults: ResourceDefaults
    replicas: Optional[int] = None


@dataclass
class ServiceParams:
    """Inputs of the Service generators"""

    selector: str


@dataclass
class AutoscalerParams:
    """Inputs of the autoscaler generator"""

    deployment_name: str


## Spec accessors ##############################################################


def deployment_options(dataplane: ManagedObject) -> dict:
    return dataplane.spec.get("deployment") or {}


def horizontal_scaling(dataplane: ManagedObject) -> Optional[dict]:
    return dataplane.nested_get("spec.deployment.scaling.horizontalScaling")


def blue_green_options(dataplane: ManagedObject) -> Optional[dict]:
    return dataplane.nested_get("spec.deployment.rollout.strategy.blueGreen")


def proxy_image(dataplane: ManagedObject, defaults: ResourceDefaults) -> str:
    """The proxy image the DataPlane asks for, or the default one"""
    containers = (
        dataplane.nested_get("spec.deployment.podTemplateSpec.spec.containers") or []
    )
    for container in containers:
        if container.get("name") == constants.DATAPLANE_PROXY_CONTAINER_NAME:
            return container.get("image") or defaults.dataplane_image
    return defaults.dataplane_image


def desired_replicas(dataplane: ManagedObject) -> Optional[int]:
    """The replica count of the live Deployment. None when an autoscaler owns
    it.
    """
    if horizontal_scaling(dataplane) is not None:
        return None
    replicas = deployment_options(dataplane).get("replicas")
    return 1 if replicas is None else replicas


def preview_replicas(dataplane: ManagedObject) -> int:
    """A preview Deployment is never autoscaled. It starts at the size the
    live one is expected to have.
    """
    scaling = horizontal_scaling(dataplane)
    if scaling is not None:
        return scaling.get("minReplicas") or 1
    replicas = deployment_options(dataplane).get("replicas")
    return 1 if replicas is None else replicas


def pod_selector(dataplane: ManagedObject, selector: str) -> dict:
    return {constants.APP_LABEL: dataplane.name, constants.SELECTOR_LABEL: selector}


## Generators ##################################################################


def generate_deployment(dataplane: ManagedObject, params: DeploymentParams) -> dict:
    """Build the proxy Deployment from the DataPlane's pod template"""
    options = deployment_options(dataplane)
    selector_labels = pod_selector(dataplane, params.selector)

    template = pod_template(options.get("podTemplateSpec"))
    template["metadata"].setdefault("labels", {}).update(selector_labels)
    pod_spec = template["spec"]
    pod_spec.setdefault(
        "terminationGracePeriodSeconds",
        constants.DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
    )

    container = get_container(pod_spec, constants.DATAPLANE_PROXY_CONTAINER_NAME)
    if not container.get("image"):
        container["image"] = params.defaults.dataplane_image
    set_env_defaults(container, _PROXY_ENV_DEFAULTS)
    set_default_resources(container, params.defaults.dataplane_resources)
    container.setdefault(
        "ports",
        [
            {
                "name": "proxy",
                "containerPort": constants.DATAPLANE_PROXY_PORT,
                "protocol": "TCP",
            },
            {
                "name": "proxy-ssl",
                "containerPort": constants.DATAPLANE_PROXY_SSL_PORT,
                "protocol": "TCP",
            },
            {
                "name": "metrics",
                "containerPort": constants.DATAPLANE_METRICS_PORT,
                "protocol": "TCP",
            },
            {
                "name": "admin-ssl",
                "containerPort": constants.DATAPLANE_ADMIN_PORT,
                "protocol": "TCP",
            },
        ],
    )
    container.setdefault(
        "readinessProbe",
        {
            "httpGet": {
                "path": "/status/ready",
                "port": constants.DATAPLANE_METRICS_PORT,
                "scheme": "HTTP",
            },
            "initialDelaySeconds": 5,
            "periodSeconds": 10,
        },
    )
    mount_cluster_certificate(pod_spec, container, params.certificate_secret)

    spec = {
        "selector": {"matchLabels": selector_labels},
        "template": template,
        "strategy": {
            "type": "RollingUpdate",
            "rollingUpdate": {"maxSurge": 1, "maxUnavailable": 0},
        },
    }
    if params.replicas is not None:
        spec["replicas"] = params.replicas

    return {
        "apiVersion": DEPLOYMENT_API_VERSION,
        "kind": "Deployment",
        "metadata": {
            "generateName": f"dataplane-{dataplane.name}-",
            "labels": {constants.APP_LABEL: dataplane.name},
        },
        "spec": spec,
    }


def generate_admin_service(dataplane: ManagedObject, params: ServiceParams) -> dict:
    """Headless Service that lets the ControlPlane reach every proxy pod's
    admin API
    """
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "generateName": f"dataplane-admin-{dataplane.name}-",
            "labels": {constants.APP_LABEL: dataplane.name},
        },
        "spec": {
            "type": "ClusterIP",
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": pod_selector(dataplane, params.selector),
            "ports": [
                {
                    "name": "admin",
                    "protocol": "TCP",
                    "port": constants.DATAPLANE_ADMIN_PORT,
                    "targetPort": constants.DATAPLANE_ADMIN_PORT,
                }
            ],
        },
    }


def generate_ingress_service(dataplane: ManagedObject, params: ServiceParams) -> dict:
    """The Service that receives the proxied traffic"""
    options = dataplane.nested_get("spec.network.services.ingress") or {}
    metadata = {
        "generateName": f"dataplane-ingress-{dataplane.name}-",
        "labels": {constants.APP_LABEL: dataplane.name},
    }
    if options.get("annotations"):
        metadata["annotations"] = dict(options["annotations"])
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": metadata,
        "spec": {
            "type": options.get("type") or DEFAULT_INGRESS_SERVICE_TYPE,
            "selector": pod_selector(dataplane, params.selector),
            "ports": [
                {
                    "name": "http",
                    "protocol": "TCP",
                    "port": 80,
                    "targetPort": constants.DATAPLANE_PROXY_PORT,
                },
                {
                    "name": "https",
                    "protocol": "TCP",
                    "port": 443,
                    "targetPort": constants.DATAPLANE_PROXY_SSL_PORT,
                },
            ],
        },
    }


def generate_autoscaler(dataplane: ManagedObject, params: AutoscalerParams) -> dict:
    scaling = horizontal_scaling(dataplane) or {}
    spec = {
        "scaleTargetRef": {
            "apiVersion": DEPLOYMENT_API_VERSION,
            "kind": "Deployment",
            "name": params.deployment_name,
        },
        "minReplicas": scaling.get("minReplicas") or 1,
        "maxReplicas": scaling["maxReplicas"],
    }
    for key in ["metrics", "behavior"]:
        if scaling.get(key):
            spec[key] = scaling[key]
    return {
        "apiVersion": HPA_API_VERSION,
        "kind": "HorizontalPodAutoscaler",
        "metadata": {
            "generateName": f"{dataplane.name}-",
            "labels": {constants.APP_LABEL: dataplane.name},
        },
        "spec": spec,
    }


## Roles #######################################################################


def drop_wait_for_owner_finalizer(
    deploy_manager: DeployManagerBase,
    child: ManagedObject,
):
    """Children written by older releases carry a finalizer that blocks their
    deletion. It is removed before a duplicate is deleted.
    """
    if constants.WAIT_FOR_OWNER_FINALIZER not in child.finalizers:
        return
    finalizers = [
        fin for fin in child.finalizers if fin != constants.WAIT_FOR_OWNER_FINALIZER
    ]
    log.debug("Removing %s from %s", constants.WAIT_FOR_OWNER_FINALIZER, child)
    success, _ = deploy_manager.patch_object(
        kind=child.kind,
        name=child.name,
        patch={"metadata": {"finalizers": finalizers or None}},
        namespace=child.namespace,
        api_version=child.api_version,
        resource_version=child.resource_version,
    )
    assert_cluster(success, f"Failed to remove finalizer from {child}")


def deployment_identity() -> ChildIdentity:
    """Every proxy Deployment of a DataPlane regardless of state"""
    return ChildIdentity(
        kind="Deployment",
        api_version=DEPLOYMENT_API_VERSION,
        managed_by=constants.MANAGED_BY_DATAPLANE,
        legacy_role_labels={},
    )


def deployment_role(
    state: str,
    autoscaled: bool = False,
    create_only: bool = False,
) -> ChildRole:
    """The proxy Deployment in the given state

    Args:
        state:  str
            live or preview
        autoscaled:  bool
            If set, the replica count is owned by the autoscaler and never
            compared
        create_only:  bool
            If set, an existing Deployment is left untouched. Live Deployments
            of a blue-green DataPlane only change through promotion.
    """
    sections = list(DEPLOYMENT_SECTIONS)
    if autoscaled:
        sections.remove("spec.replicas")
    return ChildRole(
        name=f"{state} deployment",
        kind="Deployment",
        api_version=DEPLOYMENT_API_VERSION,
        managed_by=constants.MANAGED_BY_DATAPLANE,
        role_labels={constants.DATAPLANE_DEPLOYMENT_STATE_LABEL: state},
        # Releases before blue-green had a single unlabelled Deployment
        legacy_role_labels={} if state == constants.STATE_LIVE else None,
        generate=generate_deployment,
        sections=sections,
        create_only=create_only,
        pre_delete_hook=drop_wait_for_owner_finalizer,
        recreate_sections=["spec.selector"],
    )


def _service_role(service_type: str, state: str, generate) -> ChildRole:
    return ChildRole(
        name=f"{state} {service_type} service",
        kind="Service",
        api_version="v1",
        managed_by=constants.MANAGED_BY_DATAPLANE,
        role_labels={
            constants.DATAPLANE_SERVICE_TYPE_LABEL: service_type,
            constants.DATAPLANE_SERVICE_STATE_LABEL: state,
        },
        legacy_role_labels=(
            {constants.DATAPLANE_SERVICE_TYPE_LABEL: service_type}
            if state == constants.STATE_LIVE
            else None
        ),
        generate=generate,
        sections=list(SERVICE_SECTIONS),
        pre_delete_hook=drop_wait_for_owner_finalizer,
    )


def admin_service_role(state: str) -> ChildRole:
    return _service_role(
        constants.DATAPLANE_SERVICE_TYPE_ADMIN, state, generate_admin_service
    )


def ingress_service_role(state: str) -> ChildRole:
    return _service_role(
        constants.DATAPLANE_SERVICE_TYPE_INGRESS, state, generate_ingress_service
    )


def autoscaler_role() -> ChildRole:
    return ChildRole(
        name="autoscaler",
        kind="HorizontalPodAutoscaler",
        api_version=HPA_API_VERSION,
        managed_by=constants.MANAGED_BY_DATAPLANE,
        generate=generate_autoscaler,
    )


def certificate_labels() -> dict:
    """Role labels of the DataPlane's admin API certificate"""
    return {constants.CERTIFICATE_PURPOSE_LABEL: constants.CERTIFICATE_PURPOSE_ADMIN}


def service_addresses(service: ManagedObject) -> List[dict]:
    """The addresses of a Service in Gateway API form. Load balancer addresses
    come first, then the cluster IP.
    """
    addresses = []
    for ingress in (service.status.get("loadBalancer") or {}).get("ingress") or []:
        if ingress.get("ip"):
            addresses.append({"type": "IPAddress", "value": ingress["ip"]})
        if ingress.get("hostname"):
            addresses.append({"type": "Hostname", "value": ingress["hostname"]})
    cluster_ip = service.spec.get("clusterIP")
    if cluster_ip and cluster_ip != "None":
        addresses.append({"type": "IPAddress", "value": cluster_ip})
    return addresses
