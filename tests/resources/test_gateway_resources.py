"""
Tests for the Gateway child generators
"""

# Third Party
import pytest

# Local
from gateway_operator import constants
from gateway_operator.managed_object import ManagedObject
from gateway_operator.resources import gateway
from gateway_operator.test_helpers.helpers import setup_owner


@pytest.mark.parametrize(
    ["listen", "ports"],
    [
        ("0.0.0.0:8000 reuseport, 0.0.0.0:8443 http2 ssl", (8000, 8443)),
        ("0.0.0.0:8444 http2 ssl reuseport", (None, 8444)),
        ("[::]:9000, 0.0.0.0:9001", (9000, None)),
        ("off", (None, None)),
        ("0.0.0.0:abc", (None, None)),
    ],
)
def test_parse_listen(listen, ports):
    assert gateway.parse_listen(listen) == ports


def test_gateway_configuration_from_missing():
    config = gateway.GatewayConfiguration.from_resource(None)
    assert config.dataplane_options == {}
    assert config.controlplane_options == {}


def test_generate_controlplane_points_at_dataplane():
    owner = ManagedObject(setup_owner(kind=constants.KIND_GATEWAY))
    controlplane = gateway.generate_controlplane(
        owner,
        gateway.ControlPlaneParams(
            gateway_configuration=gateway.GatewayConfiguration(
                controlplane_options={"deployment": {"replicas": 2}}
            ),
            dataplane_name="gw-dp",
            gateway_class_name="kong",
        ),
    )
    assert controlplane["kind"] == constants.KIND_CONTROLPLANE
    assert controlplane["spec"] == {
        "deployment": {"replicas": 2},
        "dataplane": "gw-dp",
        "gatewayClass": "kong",
    }


def test_network_policy_follows_listen_env():
    """The admin and proxy ports are taken from the proxy listen env"""
    owner = ManagedObject(setup_owner(kind=constants.KIND_GATEWAY))
    configuration = gateway.GatewayConfiguration(
        dataplane_options={
            "deployment": {
                "podTemplateSpec": {
                    "spec": {
                        "containers": [
                            {
                                "name": constants.DATAPLANE_PROXY_CONTAINER_NAME,
                                "env": [
                                    {
                                        "name": "KONG_PROXY_LISTEN",
                                        "value": "0.0.0.0:9000, 0.0.0.0:9443 ssl",
                                    },
                                    {
                                        "name": "KONG_ADMIN_LISTEN",
                                        "value": "0.0.0.0:9444 ssl",
                                    },
                                ],
                            }
                        ]
                    }
                }
            }
        }
    )
    policy = gateway.generate_network_policy(
        owner,
        gateway.NetworkPolicyParams(
            gateway_configuration=configuration,
            dataplane_name="gw-dp",
            controlplane_name="gw-cp",
        ),
    )
    admin_rule, proxy_rule, metrics_rule = policy["spec"]["ingress"]
    assert admin_rule["ports"] == [{"protocol": "TCP", "port": 9444}]
    assert admin_rule["from"][0]["podSelector"]["matchLabels"] == {
        constants.APP_LABEL: "gw-cp"
    }
    assert [port["port"] for port in proxy_rule["ports"]] == [9000, 9443]
    assert metrics_rule["ports"][0]["port"] == constants.DATAPLANE_METRICS_PORT
    assert policy["spec"]["podSelector"]["matchLabels"] == {
        constants.APP_LABEL: "gw-dp"
    }
