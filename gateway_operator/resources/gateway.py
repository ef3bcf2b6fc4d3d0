"""
Child roles and generators for the resources owned by a Gateway: the DataPlane
and ControlPlane that implement it, and the NetworkPolicy that limits access
to the DataPlane's admin API to the ControlPlane's pods.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import copy

# Local
from .. import constants
from ..ensure import ChildRole
from ..managed_object import ManagedObject
from ..utils import nested_get
from .common import env_value

NETWORK_POLICY_API_VERSION = "networking.k8s.io/v1"


@dataclass
class GatewayConfiguration:
    """The options a Gateway's GatewayConfiguration passes to its children.
    A Gateway without a GatewayConfiguration gets empty options.
    """

    dataplane_options: dict = field(default_factory=dict)
    controlplane_options: dict = field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: Optional[dict]) -> "GatewayConfiguration":
        spec = (resource or {}).get("spec") or {}
        return cls(
            dataplane_options=copy.deepcopy(spec.get("dataPlaneOptions") or {}),
            controlplane_options=copy.deepcopy(spec.get("controlPlaneOptions") or {}),
        )


@dataclass
class ControlPlaneParams:
    """Inputs of the ControlPlane generator"""

    gateway_configuration: GatewayConfiguration
    dataplane_name: str
    gateway_class_name: str


@dataclass
class NetworkPolicyParams:
    """Inputs of the NetworkPolicy generator"""

    gateway_configuration: GatewayConfiguration
    dataplane_name: str
    controlplane_name: str


## Listen addresses ############################################################


def parse_listen(listen: str) -> Tuple[Optional[int], Optional[int]]:
    """Parse a Kong *_LISTEN value into its plain and TLS ports

    Args:
        listen:  str
            Comma separated listen entries ("0.0.0.0:8000 reuseport, ...")

    Returns:
        port:  Optional[int]
            The port of the first entry without the ssl flag
        ssl_port:  Optional[int]
            The port of the first entry with the ssl flag
    """
    port, ssl_port = None, None
    for entry in listen.split(","):
        words = entry.split()
        if not words or ":" not in words[0]:
            continue
        try:
            entry_port = int(words[0].rsplit(":", 1)[1])
        except ValueError:
            continue
        if "ssl" in words[1:]:
            ssl_port = entry_port if ssl_port is None else ssl_port
        else:
            port = entry_port if port is None else port
    return port, ssl_port


def _proxy_env(gateway_configuration: GatewayConfiguration) -> List[dict]:
    containers = (
        nested_get(
            gateway_configuration.dataplane_options,
            "deployment.podTemplateSpec.spec.containers",
        )
        or []
    )
    for container in containers:
        if container.get("name") == constants.DATAPLANE_PROXY_CONTAINER_NAME:
            return container.get("env") or []
    return []


## Generators ##################################################################


def generate_dataplane(gateway: ManagedObject, params: GatewayConfiguration) -> dict:
    return {
        "apiVersion": constants.OPERATOR_API_VERSION,
        "kind": constants.KIND_DATAPLANE,
        "metadata": {"generateName": f"{gateway.name}-"},
        "spec": copy.deepcopy(params.dataplane_options),
    }


def generate_controlplane(gateway: ManagedObject, params: ControlPlaneParams) -> dict:
    spec = copy.deepcopy(params.gateway_configuration.controlplane_options)
    spec["dataplane"] = params.dataplane_name
    spec["gatewayClass"] = params.gateway_class_name
    return {
        "apiVersion": constants.OPERATOR_API_VERSION,
        "kind": constants.KIND_CONTROLPLANE,
        "metadata": {"generateName": f"{gateway.name}-"},
        "spec": spec,
    }


def generate_network_policy(
    gateway: ManagedObject,
    params: NetworkPolicyParams,
) -> dict:
    """Only the ControlPlane may reach the admin API. Proxy and metrics ports
    stay open. Ports follow the listen addresses set in the proxy env.
    """
    env = _proxy_env(params.gateway_configuration)
    proxy_port = constants.DATAPLANE_PROXY_PORT
    proxy_ssl_port = constants.DATAPLANE_PROXY_SSL_PORT
    admin_port = constants.DATAPLANE_ADMIN_PORT

    proxy_listen = env_value(env, "KONG_PROXY_LISTEN")
    if proxy_listen:
        port, ssl_port = parse_listen(proxy_listen)
        proxy_port = port or proxy_port
        proxy_ssl_port = ssl_port or proxy_ssl_port
    admin_listen = env_value(env, "KONG_ADMIN_LISTEN")
    if admin_listen:
        _, ssl_port = parse_listen(admin_listen)
        admin_port = ssl_port or admin_port

    def tcp(*ports: int) -> List[Dict]:
        return [{"protocol": "TCP", "port": port} for port in ports]

    return {
        "apiVersion": NETWORK_POLICY_API_VERSION,
        "kind": "NetworkPolicy",
        "metadata": {"generateName": f"{params.dataplane_name}-limit-admin-api-"},
        "spec": {
            "podSelector": {
                "matchLabels": {constants.APP_LABEL: params.dataplane_name}
            },
            "policyTypes": ["Ingress"],
            "ingress": [
                {
                    "ports": tcp(admin_port),
                    "from": [
                        {
                            "podSelector": {
                                "matchLabels": {
                                    constants.APP_LABEL: params.controlplane_name
                                }
                            },
                            "namespaceSelector": {
                                "matchLabels": {
                                    "kubernetes.io/metadata.name": gateway.namespace
                                }
                            },
                        }
                    ],
                },
                {"ports": tcp(proxy_port, proxy_ssl_port)},
                {"ports": tcp(constants.DATAPLANE_METRICS_PORT)},
            ],
        },
    }


## Roles #######################################################################


DATAPLANE_ROLE = ChildRole(
    name="dataplane",
    kind=constants.KIND_DATAPLANE,
    api_version=constants.OPERATOR_API_VERSION,
    managed_by=constants.MANAGED_BY_GATEWAY,
    generate=generate_dataplane,
)

CONTROLPLANE_ROLE = ChildRole(
    name="controlplane",
    kind=constants.KIND_CONTROLPLANE,
    api_version=constants.OPERATOR_API_VERSION,
    managed_by=constants.MANAGED_BY_GATEWAY,
    generate=generate_controlplane,
)

NETWORK_POLICY_ROLE = ChildRole(
    name="network policy",
    kind="NetworkPolicy",
    api_version=NETWORK_POLICY_API_VERSION,
    managed_by=constants.MANAGED_BY_GATEWAY,
    generate=generate_network_policy,
)
