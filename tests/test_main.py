"""
Tests for the __main__.py entrypoint to the library as an executable
"""

# Standard
from unittest import mock
import argparse
import copy

# Third Party
import pytest
import yaml

# First Party
import aconfig
import alog

# Local
from gateway_operator import config, constants
from gateway_operator.__main__ import (
    add_library_config_args,
    make_deploy_manager,
    parse_resource_dir,
    run,
    update_library_config,
    wait_settled,
)
from gateway_operator.deploy_manager import DryRunDeployManager
from gateway_operator.test_helpers.helpers import library_config

log = alog.use_channel("TEST")

## Helpers #####################################################################


class FakePool:
    def __init__(self, completed):
        self.completed = completed
        self.wait_idle = mock.MagicMock()


def write_yaml(path, *docs):
    path.write_text(yaml.safe_dump_all(docs))
    return str(path)


## Library config args #########################################################


def test_add_library_config_args():
    """Every leaf of the config becomes a dotted flag of the matching type"""
    config_obj = aconfig.Config(
        {
            "retries": 3,
            "nested": {"image": "kong:3.6", "enabled": False, "items": ["a"]},
        },
        override_env_vars=False,
    )
    parser = argparse.ArgumentParser()
    setters = add_library_config_args(parser, config_obj=config_obj)
    assert setters == {
        "retries": ["retries"],
        "nested_image": ["nested", "image"],
        "nested_enabled": ["nested", "enabled"],
        "nested_items": ["nested", "items"],
    }

    args = parser.parse_args(
        [
            "--retries",
            "5",
            "--nested.image",
            "kong:3.7",
            "--nested.enabled",
            "--nested.items",
            "b",
            "c",
        ]
    )
    assert args.retries == 5
    assert args.nested_image == "kong:3.7"
    assert args.nested_enabled is True
    assert args.nested_items == ["b", "c"]

    defaults = parser.parse_args([])
    assert defaults.retries == 3
    assert defaults.nested_enabled is False


def test_update_library_config():
    """Parsed values are written back into the library config"""
    with library_config(
        conflict_requeue_seconds=config.conflict_requeue_seconds,
        controlplane=copy.deepcopy(config.controlplane),
    ):
        update_library_config(
            argparse.Namespace(
                conflict_requeue_seconds=0.5,
                controlplane_default_image="kong/kubernetes-ingress-controller:3.2",
            ),
            {
                "conflict_requeue_seconds": ["conflict_requeue_seconds"],
                "controlplane_default_image": ["controlplane", "default_image"],
            },
        )
        assert config.conflict_requeue_seconds == 0.5
        assert (
            config.controlplane.default_image
            == "kong/kubernetes-ingress-controller:3.2"
        )
    assert config.conflict_requeue_seconds == 0.2


## Resource dir ################################################################


def test_parse_resource_dir(tmp_path):
    """Every yaml document of every yaml file is read in file name order"""
    write_yaml(
        tmp_path / "b.yaml",
        {"kind": "Secret", "metadata": {"name": "two"}},
        None,
        {"kind": "Secret", "metadata": {"name": "three"}},
    )
    write_yaml(tmp_path / "a.yml", {"kind": "Secret", "metadata": {"name": "one"}})
    (tmp_path / "notes.txt").write_text("not yaml")
    resources = parse_resource_dir(str(tmp_path))
    assert [res["metadata"]["name"] for res in resources] == ["one", "two", "three"]


def test_parse_resource_dir_none():
    assert parse_resource_dir(None) == []


## Run #########################################################################


def test_make_deploy_manager_dry_run():
    with library_config(dry_run=True):
        deploy_manager = make_deploy_manager([{"kind": "Foo"}])
    assert isinstance(deploy_manager, DryRunDeployManager)


def test_cr_without_dry_run(tmp_path):
    cr_path = write_yaml(tmp_path / "cr.yaml", {"kind": "DataPlane"})
    with library_config(dry_run=False):
        with pytest.raises(AssertionError):
            run(argparse.Namespace(cr=cr_path, resource_dir=None))


def test_resource_dir_not_found():
    with library_config(dry_run=True):
        with pytest.raises(AssertionError):
            run(argparse.Namespace(cr=None, resource_dir="/does/not/exist"))


def test_wait_settled():
    """Waiting stops once no reconcile finished during the settle time"""
    pool = FakePool(completed=3)
    stop = mock.MagicMock()
    stop.is_set.return_value = False
    wait_settled(pool, stop, 0.01)
    pool.wait_idle.assert_called_once()
    stop.wait.assert_called_once_with(0.01)


@pytest.mark.timeout(60)
def test_dry_run_cr(tmp_path):
    """A CR applied in dry run mode is reconciled until it settles"""
    cr_path = write_yaml(
        tmp_path / "dataplane.yaml",
        {
            "apiVersion": constants.OPERATOR_API_VERSION,
            "kind": constants.KIND_DATAPLANE,
            "metadata": {"name": "proxies", "namespace": "default"},
            "spec": {},
        },
    )
    deploy_manager = DryRunDeployManager()
    with library_config(dry_run=True, watch_reconnect_seconds=0.2):
        with mock.patch(
            "gateway_operator.__main__.make_deploy_manager",
            return_value=deploy_manager,
        ), mock.patch("signal.signal"):
            run(argparse.Namespace(cr=cr_path, resource_dir=None))

    _, dataplane = deploy_manager.get_object_current_state(
        constants.KIND_DATAPLANE, "proxies", namespace="default"
    )
    assert dataplane["status"]["selector"]
    _, services = deploy_manager.filter_objects_current_state(
        "Service", namespace="default"
    )
    assert len(services) == 2
    _, deployments = deploy_manager.filter_objects_current_state(
        "Deployment", namespace="default"
    )
    assert len(deployments) == 1
