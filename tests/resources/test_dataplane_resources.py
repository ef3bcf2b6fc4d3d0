"""
Tests for the DataPlane child generators
"""

# Local
from gateway_operator import constants
from gateway_operator.managed_object import ManagedObject
from gateway_operator.resources import dataplane
from gateway_operator.resources.common import deployment_available
from gateway_operator.test_helpers.helpers import make_defaults, setup_owner

## Helpers #####################################################################


def make_dataplane(deployment=None, **spec):
    if deployment is not None:
        spec["deployment"] = deployment
    return ManagedObject(setup_owner(spec=spec))


def proxy_container(deployment):
    containers = deployment["spec"]["template"]["spec"]["containers"]
    return next(
        c for c in containers if c["name"] == constants.DATAPLANE_PROXY_CONTAINER_NAME
    )


## Replicas ####################################################################


def test_desired_replicas_default():
    assert dataplane.desired_replicas(make_dataplane()) == 1
    assert dataplane.desired_replicas(make_dataplane({"replicas": 3})) == 3


def test_desired_replicas_autoscaled():
    """An autoscaled DataPlane leaves the replica count unset"""
    owner = make_dataplane(
        {"replicas": 3, "scaling": {"horizontalScaling": {"maxReplicas": 5}}}
    )
    assert dataplane.desired_replicas(owner) is None


def test_preview_replicas():
    owner = make_dataplane(
        {"scaling": {"horizontalScaling": {"minReplicas": 2, "maxReplicas": 5}}}
    )
    assert dataplane.preview_replicas(owner) == 2
    assert dataplane.preview_replicas(make_dataplane({"replicas": 4})) == 4


def test_proxy_image():
    defaults = make_defaults()
    assert dataplane.proxy_image(make_dataplane(), defaults) == "kong:3.6"
    owner = make_dataplane(
        {
            "podTemplateSpec": {
                "spec": {"containers": [{"name": "proxy", "image": "kong:3.7"}]}
            }
        }
    )
    assert dataplane.proxy_image(owner, defaults) == "kong:3.7"


## Generators ##################################################################


def test_generate_deployment_defaults():
    owner = make_dataplane()
    deployment = dataplane.generate_deployment(
        owner,
        dataplane.DeploymentParams(
            selector="abc",
            certificate_secret="cert",
            defaults=make_defaults(),
            replicas=2,
        ),
    )
    spec = deployment["spec"]
    assert spec["replicas"] == 2
    assert spec["selector"]["matchLabels"] == {
        constants.APP_LABEL: owner.name,
        constants.SELECTOR_LABEL: "abc",
    }
    assert spec["template"]["metadata"]["labels"][constants.SELECTOR_LABEL] == "abc"
    container = proxy_container(deployment)
    assert container["image"] == "kong:3.6"
    mounts = [mount["name"] for mount in container["volumeMounts"]]
    assert constants.CLUSTER_CERTIFICATE_VOLUME in mounts
    volumes = spec["template"]["spec"]["volumes"]
    assert volumes[-1]["secret"]["secretName"] == "cert"


def test_generate_deployment_keeps_user_template():
    """User env and resources win and the owner spec is not mutated"""
    template = {
        "spec": {
            "containers": [
                {
                    "name": "proxy",
                    "image": "kong:3.7",
                    "env": [{"name": "KONG_LOG_LEVEL", "value": "debug"}],
                    "resources": {"limits": {"cpu": "2"}},
                }
            ]
        }
    }
    owner = make_dataplane({"podTemplateSpec": template})
    deployment = dataplane.generate_deployment(
        owner,
        dataplane.DeploymentParams(
            selector="abc", certificate_secret="cert", defaults=make_defaults()
        ),
    )
    assert "replicas" not in deployment["spec"]
    container = proxy_container(deployment)
    assert container["image"] == "kong:3.7"
    assert container["resources"] == {"limits": {"cpu": "2"}}
    assert {"name": "KONG_LOG_LEVEL", "value": "debug"} in container["env"]
    assert "volumeMounts" not in template["spec"]["containers"][0]


def test_generate_services_use_selector():
    owner = make_dataplane(
        network={"services": {"ingress": {"type": "NodePort", "annotations": {"a": "b"}}}}
    )
    params = dataplane.ServiceParams(selector="abc")
    admin = dataplane.generate_admin_service(owner, params)
    ingress = dataplane.generate_ingress_service(owner, params)
    assert admin["spec"]["clusterIP"] == "None"
    assert admin["spec"]["selector"][constants.SELECTOR_LABEL] == "abc"
    assert ingress["spec"]["type"] == "NodePort"
    assert ingress["metadata"]["annotations"] == {"a": "b"}
    assert ingress["spec"]["selector"][constants.SELECTOR_LABEL] == "abc"


def test_generate_autoscaler():
    owner = make_dataplane(
        {"scaling": {"horizontalScaling": {"maxReplicas": 5, "metrics": [{"x": 1}]}}}
    )
    hpa = dataplane.generate_autoscaler(
        owner, dataplane.AutoscalerParams(deployment_name="dp-abc")
    )
    assert hpa["spec"]["scaleTargetRef"]["name"] == "dp-abc"
    assert hpa["spec"]["minReplicas"] == 1
    assert hpa["spec"]["maxReplicas"] == 5
    assert hpa["spec"]["metrics"] == [{"x": 1}]


## Status helpers ##############################################################


def test_service_addresses():
    service = ManagedObject(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "svc"},
            "spec": {"clusterIP": "10.0.0.1"},
            "status": {
                "loadBalancer": {"ingress": [{"ip": "1.2.3.4"}, {"hostname": "lb.io"}]}
            },
        }
    )
    assert dataplane.service_addresses(service) == [
        {"type": "IPAddress", "value": "1.2.3.4"},
        {"type": "Hostname", "value": "lb.io"},
        {"type": "IPAddress", "value": "10.0.0.1"},
    ]


def test_deployment_available():
    def deployment(generation, **status):
        return ManagedObject(
            {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "metadata": {"name": "d", "generation": generation},
                "status": status,
            }
        )

    ready = {"replicas": 2, "availableReplicas": 2, "readyReplicas": 2}
    assert deployment_available(deployment(1, observedGeneration=1, **ready))
    assert not deployment_available(deployment(2, observedGeneration=1, **ready))
    assert not deployment_available(
        deployment(1, replicas=2, availableReplicas=1, readyReplicas=2)
    )
    assert not deployment_available(deployment(1))
