"""
Tests for the ControlPlane controller
"""

# Third Party
import pytest

# Local
from gateway_operator import constants, status
from gateway_operator.controllers import ControlPlaneController, DataPlaneController
from gateway_operator.exceptions import ValidationError
from gateway_operator.managed_object import ManagedObject
from gateway_operator.certificates import CA_CERT_KEY
from gateway_operator.teardown import ADMISSION_API_VERSION, TEARDOWN_FINALIZERS
from gateway_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockDeployManager,
    make_child,
    make_defaults,
    reconcile_until_stable,
    setup_ca,
    setup_owner,
)

## Helpers #####################################################################


def setup(spec=None, with_dataplane=False):
    resources = [setup_owner(kind=constants.KIND_CONTROLPLANE, spec=spec)]
    if with_dataplane:
        resources.append(setup_owner(kind=constants.KIND_DATAPLANE, name="proxies"))
    dm = MockDeployManager(resources=resources)
    defaults = make_defaults()
    setup_ca(dm, defaults)
    if with_dataplane:
        reconcile_until_stable(
            DataPlaneController(dm, defaults), dm, constants.KIND_DATAPLANE, "proxies"
        )
    return dm, ControlPlaneController(dm, defaults)


def converge(dm, controller):
    return reconcile_until_stable(
        controller, dm, constants.KIND_CONTROLPLANE, "test-owner"
    )


def provisioned(owner):
    return status.get_condition(
        status.PROVISIONED_CONDITION, owner.status.get("conditions")
    )


def cluster_children(dm, kind):
    return [
        obj
        for obj in dm.list_objs(kind)
        if obj["metadata"].get("labels", {}).get(constants.MANAGED_BY_LABEL)
        == constants.MANAGED_BY_CONTROLPLANE
    ]


def get_owner(dm):
    content = dm.get_obj(constants.KIND_CONTROLPLANE, "test-owner", TEST_NAMESPACE)
    return ManagedObject(content) if content else None


def controlplane_children(dm, kind, **labels):
    return [
        obj
        for obj in dm.list_objs(kind, namespace=TEST_NAMESPACE)
        if obj["metadata"].get("labels", {}).get(constants.MANAGED_BY_LABEL)
        == constants.MANAGED_BY_CONTROLPLANE
        and all(
            obj["metadata"]["labels"].get(key) == value
            for key, value in labels.items()
        )
    ]


def webhook_services(dm):
    return controlplane_children(
        dm,
        "Service",
        **{constants.CONTROLPLANE_SERVICE_LABEL: constants.CONTROLPLANE_SERVICE_WEBHOOK},
    )


def webhook_secrets(dm):
    return controlplane_children(
        dm,
        "Secret",
        **{constants.CERTIFICATE_PURPOSE_LABEL: constants.CERTIFICATE_PURPOSE_WEBHOOK},
    )


def controller_container(dm):
    deployment = controlplane_children(dm, "Deployment")[0]
    return deployment["spec"]["template"]["spec"]["containers"][0]


def webhook_disabled_spec():
    return {
        "deployment": {
            "podTemplateSpec": {
                "spec": {
                    "containers": [
                        {
                            "name": constants.CONTROLPLANE_CONTAINER_NAME,
                            "env": [
                                {
                                    "name": constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV,
                                    "value": constants.CONTROLPLANE_WEBHOOK_LISTEN_OFF,
                                }
                            ],
                        }
                    ]
                }
            }
        }
    }


## Tests #######################################################################


def test_finalizers_added_first():
    """The first pass only adds the teardown finalizers"""
    dm, controller = setup()
    dm.reset_write_counts()
    controller.reconcile(get_owner(dm))
    owner = get_owner(dm)
    assert owner.finalizers == TEARDOWN_FINALIZERS
    assert not cluster_children(dm, "ClusterRole")
    dm.create_object.assert_not_called()


def test_without_dataplane():
    """Without a DataPlane the controller is scaled to zero"""
    dm, controller = setup()
    owner = converge(dm, controller)

    cond = provisioned(owner)
    assert cond["status"] == status.FALSE
    assert cond["reason"] == status.ConditionReason.NO_DATAPLANE
    deployments = dm.list_objs("Deployment", namespace=TEST_NAMESPACE)
    assert len(deployments) == 1
    assert deployments[0]["spec"]["replicas"] == 0

    cluster_roles = cluster_children(dm, "ClusterRole")
    bindings = cluster_children(dm, "ClusterRoleBinding")
    assert len(cluster_roles) == 1
    assert len(bindings) == 1
    assert bindings[0]["roleRef"]["name"] == cluster_roles[0]["metadata"]["name"]
    assert "namespace" not in cluster_roles[0]["metadata"]


def test_missing_dataplane_requeues():
    """A ControlPlane that names a DataPlane that does not exist waits for it
    on a timer
    """
    dm, controller = setup(spec={"dataplane": "proxies"})
    owner = converge(dm, controller)
    cond = provisioned(owner)
    assert cond["reason"] == status.ConditionReason.DEPENDENCIES_NOT_READY
    assert controller.reconcile(owner) is not None
    assert not dm.list_objs("Deployment", namespace=TEST_NAMESPACE)


def test_with_dataplane():
    """The controller is pointed at the DataPlane's admin Service"""
    dm, controller = setup(spec={"dataplane": "proxies"}, with_dataplane=True)
    owner = converge(dm, controller)

    assert provisioned(owner)["status"] == status.TRUE
    assert status.is_condition_true(status.READY_CONDITION, owner.status["conditions"])
    deployment = [
        obj
        for obj in dm.list_objs("Deployment", namespace=TEST_NAMESPACE)
        if obj["metadata"].get("labels", {}).get(constants.MANAGED_BY_LABEL)
        == constants.MANAGED_BY_CONTROLPLANE
    ][0]
    assert deployment["spec"]["replicas"] == 1

    client_secrets = [
        obj
        for obj in dm.list_objs("Secret", namespace=TEST_NAMESPACE)
        if obj["metadata"].get("labels", {}).get(constants.CERTIFICATE_PURPOSE_LABEL)
        == constants.CERTIFICATE_PURPOSE_CLIENT
    ]
    assert len(client_secrets) == 1


def test_invalid_image():
    dm, controller = setup(
        spec={
            "deployment": {
                "podTemplateSpec": {
                    "spec": {
                        "containers": [
                            {
                                "name": constants.CONTROLPLANE_CONTAINER_NAME,
                                "image": "example/controller:1.0",
                            }
                        ]
                    }
                }
            }
        }
    )
    with pytest.raises(ValidationError):
        converge(dm, controller)
    ready = status.get_condition(
        status.READY_CONDITION, get_owner(dm).status["conditions"]
    )
    assert ready["reason"] == status.ConditionReason.VALIDATION_FAILED


def test_deletion_tears_down_cluster_children():
    """Deleting the ControlPlane removes its cluster scoped children before the
    owner goes away
    """
    dm, controller = setup()
    converge(dm, controller)
    assert cluster_children(dm, "ClusterRoleBinding")
    assert cluster_children(dm, "ValidatingWebhookConfiguration")

    dm.disable([get_owner(dm).definition])
    owner = get_owner(dm)
    assert owner.deletion_timestamp is not None

    assert converge(dm, controller) is None
    assert get_owner(dm) is None
    assert not cluster_children(dm, "ClusterRoleBinding")
    assert not cluster_children(dm, "ClusterRole")
    assert not cluster_children(dm, "ValidatingWebhookConfiguration")


def test_admission_webhook_children():
    """The webhook Service, its serving certificate and the webhook
    configuration are provisioned and wired together
    """
    dm, controller = setup(spec={"dataplane": "proxies"}, with_dataplane=True)
    owner = converge(dm, controller)
    assert provisioned(owner)["status"] == status.TRUE

    services = webhook_services(dm)
    assert len(services) == 1
    service = services[0]
    assert service["spec"]["type"] == "ClusterIP"
    assert service["spec"]["selector"] == {constants.APP_LABEL: "test-owner"}
    assert [port["port"] for port in service["spec"]["ports"]] == [
        constants.CONTROLPLANE_WEBHOOK_PORT
    ]

    secrets = webhook_secrets(dm)
    assert len(secrets) == 1

    configurations = cluster_children(dm, "ValidatingWebhookConfiguration")
    assert len(configurations) == 1
    configuration = configurations[0]
    assert configuration["apiVersion"] == ADMISSION_API_VERSION
    assert "namespace" not in configuration["metadata"]
    assert configuration["webhooks"]
    for webhook in configuration["webhooks"]:
        client_config = webhook["clientConfig"]
        assert client_config["service"] == {
            "namespace": TEST_NAMESPACE,
            "name": service["metadata"]["name"],
            "port": constants.CONTROLPLANE_WEBHOOK_PORT,
        }
        assert client_config["caBundle"] == secrets[0]["data"][CA_CERT_KEY]
        assert webhook["failurePolicy"] == "Ignore"

    container = controller_container(dm)
    env = {entry["name"]: entry.get("value") for entry in container["env"]}
    assert (
        env[constants.CONTROLPLANE_WEBHOOK_LISTEN_ENV]
        == constants.CONTROLPLANE_WEBHOOK_LISTEN_DEFAULT
    )
    assert {
        "name": "webhook",
        "containerPort": constants.CONTROLPLANE_WEBHOOK_PORT,
        "protocol": "TCP",
    } in container["ports"]
    assert constants.CONTROLPLANE_WEBHOOK_MOUNT_PATH in [
        mount["mountPath"] for mount in container["volumeMounts"]
    ]


def test_admission_webhook_disabled():
    """Turning the webhook off deletes its children and unmounts the serving
    certificate
    """
    dm, controller = setup()
    converge(dm, controller)
    assert webhook_services(dm)
    assert cluster_children(dm, "ValidatingWebhookConfiguration")

    dm.patch_object(
        constants.KIND_CONTROLPLANE,
        "test-owner",
        {"spec": webhook_disabled_spec()},
        namespace=TEST_NAMESPACE,
    )
    converge(dm, controller)

    assert not cluster_children(dm, "ValidatingWebhookConfiguration")
    assert not webhook_services(dm)
    assert not webhook_secrets(dm)
    client_secrets = controlplane_children(
        dm,
        "Secret",
        **{constants.CERTIFICATE_PURPOSE_LABEL: constants.CERTIFICATE_PURPOSE_CLIENT},
    )
    assert len(client_secrets) == 1
    container = controller_container(dm)
    assert constants.CONTROLPLANE_WEBHOOK_MOUNT_PATH not in [
        mount["mountPath"] for mount in container["volumeMounts"]
    ]


def test_admission_webhook_never_created_when_disabled():
    dm, controller = setup(spec=webhook_disabled_spec())
    converge(dm, controller)
    assert not webhook_services(dm)
    assert not webhook_secrets(dm)
    assert not cluster_children(dm, "ValidatingWebhookConfiguration")
    assert controlplane_children(dm, "Deployment")


def test_duplicate_webhook_children_reduced():
    """Duplicate webhook Services and configurations are reduced to the
    oldest one
    """
    owner_manifest = setup_owner(kind=constants.KIND_CONTROLPLANE)
    duplicates = [
        make_child(
            owner_manifest,
            "Service",
            name,
            constants.MANAGED_BY_CONTROLPLANE,
            role_labels={
                constants.CONTROLPLANE_SERVICE_LABEL: constants.CONTROLPLANE_SERVICE_WEBHOOK
            },
            created=created,
            spec={"type": "ClusterIP"},
        )
        for name, created in [("webhook-old", 0), ("webhook-new", 10)]
    ] + [
        make_child(
            owner_manifest,
            "ValidatingWebhookConfiguration",
            name,
            constants.MANAGED_BY_CONTROLPLANE,
            api_version=ADMISSION_API_VERSION,
            cluster_scoped=True,
            created=created,
        )
        for name, created in [("config-old", 0), ("config-new", 10)]
    ]
    dm = MockDeployManager(resources=[owner_manifest] + duplicates)
    defaults = make_defaults()
    setup_ca(dm, defaults)
    converge(dm, ControlPlaneController(dm, defaults))

    assert [svc["metadata"]["name"] for svc in webhook_services(dm)] == [
        "webhook-old"
    ]
    configurations = cluster_children(dm, "ValidatingWebhookConfiguration")
    assert [obj["metadata"]["name"] for obj in configurations] == ["config-old"]
    for webhook in configurations[0]["webhooks"]:
        assert webhook["clientConfig"]["service"]["name"] == "webhook-old"
