"""
Tests for the ControlPlane child generators
"""

# Third Party
import pytest

# Local
from gateway_operator import constants
from gateway_operator.managed_object import ManagedObject
from gateway_operator.resources import controlplane
from gateway_operator.test_helpers.helpers import make_defaults, setup_owner

## Helpers #####################################################################


def make_controlplane(env=None):
    container = {"name": constants.CONTROLPLANE_CONTAINER_NAME}
    if env is not None:
        container["env"] = env
    spec = {"deployment": {"podTemplateSpec": {"spec": {"containers": [container]}}}}
    return ManagedObject(setup_owner(kind=constants.KIND_CONTROLPLANE, spec=spec))


def deployment_params(webhook_certificate_secret=None):
    return controlplane.ControlPlaneDeploymentParams(
        service_account="sa",
        certificate_secret="client-cert",
        defaults=make_defaults(),
        webhook_certificate_secret=webhook_certificate_secret,
    )


def listen_env(value):
    return [{"name": constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV, "value": value}]


## Admission webhook ###########################################################


@pytest.mark.parametrize(
    ["env", "enabled"],
    [
        (None, True),
        (listen_env("0.0.0.0:9443"), True),
        (listen_env(constants.CONTROLPLANE_WEBHOOK_LISTEN_OFF), False),
    ],
)
def test_admission_webhook_enabled(env, enabled):
    assert controlplane.admission_webhook_enabled(make_controlplane(env)) is enabled


def test_admission_webhook_enabled_without_deployment_options():
    owner = ManagedObject(setup_owner(kind=constants.KIND_CONTROLPLANE))
    assert controlplane.admission_webhook_enabled(owner)


def test_webhook_configuration_points_at_service():
    owner = make_controlplane()
    config = controlplane.generate_webhook_configuration(
        owner, controlplane.WebhookConfigurationParams(service="hook", ca_bundle="Q0E=")
    )
    assert config["kind"] == "ValidatingWebhookConfiguration"
    names = [webhook["name"] for webhook in config["webhooks"]]
    assert len(names) == len(set(names))
    for webhook in config["webhooks"]:
        assert webhook["clientConfig"] == {
            "service": {
                "namespace": owner.namespace,
                "name": "hook",
                "port": constants.CONTROLPLANE_WEBHOOK_PORT,
            },
            "caBundle": "Q0E=",
        }
        assert webhook["admissionReviewVersions"] == ["v1"]
        for rule in webhook["rules"]:
            assert rule["operations"] == ["CREATE", "UPDATE"]


def test_deployment_serves_webhook():
    deployment = controlplane.generate_deployment(
        make_controlplane(), deployment_params("webhook-cert")
    )
    pod_spec = deployment["spec"]["template"]["spec"]
    volumes = {vol["name"]: vol for vol in pod_spec["volumes"]}
    assert (
        volumes[constants.CONTROLPLANE_WEBHOOK_VOLUME]["secret"]["secretName"]
        == "webhook-cert"
    )
    assert volumes[constants.CLUSTER_CERTIFICATE_VOLUME]["secret"]["secretName"] == (
        "client-cert"
    )
    container = pod_spec["containers"][0]
    assert [port["containerPort"] for port in container["ports"]] == [
        constants.CONTROLPLANE_WEBHOOK_PORT
    ]


def test_deployment_keeps_user_listen_address():
    deployment = controlplane.generate_deployment(
        make_controlplane(listen_env("0.0.0.0:9443")), deployment_params("webhook-cert")
    )
    container = deployment["spec"]["template"]["spec"]["containers"][0]
    listen = [
        entry["value"]
        for entry in container["env"]
        if entry["name"] == constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV
    ]
    assert listen == ["0.0.0.0:9443"]


def test_deployment_without_webhook():
    deployment = controlplane.generate_deployment(
        make_controlplane(listen_env(constants.CONTROLPLANE_WEBHOOK_LISTEN_OFF)),
        deployment_params(),
    )
    pod_spec = deployment["spec"]["template"]["spec"]
    assert constants.CONTROLPLANE_WEBHOOK_VOLUME not in [
        vol["name"] for vol in pod_spec["volumes"]
    ]
    assert not pod_spec["containers"][0].get("ports")
